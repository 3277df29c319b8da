"""Roster document stores.

A store holds one JSON array of players under a single key and hands out an
integer version token with every read. Writers may pass the token back to get
compare-and-swap semantics; writers that don't are last-writer-wins.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .database import RosterDocument, engine as default_engine
from .roster import Player, dump_roster, parse_roster

ROSTER_STORE_NAME = "roster"
ROSTER_KEY = "players"
ROSTER_GCS_BUCKET = os.getenv("ROSTER_GCS_BUCKET")
ROSTER_GCS_CACHE_CONTROL = os.getenv("ROSTER_GCS_CACHE_CONTROL", "no-store")

logger = logging.getLogger(__name__)


class RosterStoreError(RuntimeError):
    """Base class for roster persistence failures."""


class StoreUnavailableError(RosterStoreError):
    """The backend is unreachable or not configured."""


class MalformedRosterError(RosterStoreError):
    """The stored document is not a valid roster."""


class VersionConflictError(RosterStoreError):
    """A conditional write lost against a newer document."""

    def __init__(self, expected: int, actual: int | None):
        super().__init__(f"Roster version {expected} is stale (current: {actual})")
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class RosterSnapshot:
    players: list[Player] = field(default_factory=list)
    version: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.players


def _decode(raw: str | bytes) -> list[Player]:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedRosterError("Stored roster is not valid JSON") from exc
    try:
        return parse_roster(payload)
    except ValueError as exc:
        raise MalformedRosterError(f"Invalid roster data: {exc}") from exc


def _encode(players: Iterable[Player]) -> str:
    return json.dumps(dump_roster(players))


class RosterStore:
    """Interface shared by the roster backends."""

    store_name: str = ROSTER_STORE_NAME
    key: str = ROSTER_KEY

    def get(self) -> RosterSnapshot | None:
        raise NotImplementedError

    def set(self, players: Iterable[Player], *, expected_version: int | None = None) -> int:
        raise NotImplementedError


class DatabaseRosterStore(RosterStore):
    """Keep the roster as a row of the ``roster_document`` table."""

    def __init__(self, bind: Engine | None = None, *, store_name: str = ROSTER_STORE_NAME, key: str = ROSTER_KEY):
        self.engine = bind or default_engine
        self.store_name = store_name
        self.key = key

    def _select(self):
        return select(RosterDocument).where(
            RosterDocument.store == self.store_name,
            RosterDocument.key == self.key,
        )

    def get(self) -> RosterSnapshot | None:
        try:
            with Session(self.engine) as session:
                document = session.exec(self._select()).first()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Roster database unavailable: {exc}") from exc
        if document is None:
            return None
        return RosterSnapshot(players=_decode(document.body), version=document.version)

    def _find(self, session: Session) -> RosterDocument | None:
        return session.exec(self._select()).first()

    def _write(self, body: str, expected_version: int | None, now: datetime) -> int:
        with Session(self.engine) as session:
            document = self._find(session)
            if document is None:
                if expected_version not in (None, 0):
                    raise VersionConflictError(expected_version, None)
                session.add(RosterDocument(store=self.store_name, key=self.key, body=body, version=1, updated_at=now))
                session.commit()
                return 1

            if expected_version is None:
                session.execute(
                    update(RosterDocument)
                    .where(RosterDocument.id == document.id)
                    .values(body=body, version=RosterDocument.version + 1, updated_at=now)
                )
                session.commit()
                return session.exec(
                    select(RosterDocument.version).where(RosterDocument.id == document.id)
                ).one()

            new_version = expected_version + 1
            result = session.execute(
                update(RosterDocument)
                .where(
                    RosterDocument.id == document.id,
                    RosterDocument.version == expected_version,
                )
                .values(body=body, version=new_version, updated_at=now)
            )
            if result.rowcount != 1:
                session.rollback()
                raise VersionConflictError(expected_version, document.version)
            session.commit()
            return new_version

    def set(self, players: Iterable[Player], *, expected_version: int | None = None) -> int:
        body = _encode(players)
        now = datetime.now(timezone.utc)
        try:
            try:
                return self._write(body, expected_version, now)
            except IntegrityError as exc:
                # Another writer created the document between our read and insert.
                if expected_version is not None:
                    raise VersionConflictError(expected_version, None) from exc
                logger.info("Roster document created concurrently; retrying as an update")
                return self._write(body, None, now)
        except IntegrityError as exc:
            raise VersionConflictError(expected_version or 0, None) from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Roster database unavailable: {exc}") from exc


class GcsRosterStore(RosterStore):
    """Keep the roster as ``<store>/<key>.json`` in a Cloud Storage bucket.

    The object generation doubles as the version token.
    """

    def __init__(
        self,
        bucket_name: str | None = None,
        *,
        client: Any = None,
        store_name: str = ROSTER_STORE_NAME,
        key: str = ROSTER_KEY,
    ):
        self.bucket_name = bucket_name or ROSTER_GCS_BUCKET
        if not self.bucket_name:
            raise StoreUnavailableError("ROSTER_GCS_BUCKET is not configured.")
        self._client = client
        self.store_name = store_name
        self.key = key

    @property
    def object_name(self) -> str:
        return f"{self.store_name}/{self.key}.json"

    def _blob(self):
        if self._client is None:
            try:
                from google.cloud import storage
            except ImportError as exc:  # pragma: no cover - dependency absent in some envs
                raise StoreUnavailableError(
                    "google-cloud-storage is required to keep the roster in GCS."
                ) from exc
            self._client = storage.Client()
        return self._client.bucket(self.bucket_name).blob(self.object_name)

    def get(self) -> RosterSnapshot | None:
        from google.api_core import exceptions as gcs_errors

        blob = self._blob()
        try:
            raw = blob.download_as_bytes()
        except gcs_errors.NotFound:
            return None
        except gcs_errors.GoogleAPIError as exc:
            raise StoreUnavailableError(f"Roster bucket unavailable: {exc}") from exc
        return RosterSnapshot(players=_decode(raw), version=int(blob.generation or 0))

    def set(self, players: Iterable[Player], *, expected_version: int | None = None) -> int:
        from google.api_core import exceptions as gcs_errors

        blob = self._blob()
        blob.cache_control = ROSTER_GCS_CACHE_CONTROL
        try:
            blob.upload_from_string(
                _encode(players),
                content_type="application/json",
                if_generation_match=expected_version,
            )
        except gcs_errors.PreconditionFailed as exc:
            raise VersionConflictError(expected_version or 0, None) from exc
        except gcs_errors.GoogleAPIError as exc:
            raise StoreUnavailableError(f"Roster bucket unavailable: {exc}") from exc
        return int(blob.generation or 0)


def roster_store_from_env() -> RosterStore:
    """Return the GCS store when a bucket is configured, else the database store."""
    if ROSTER_GCS_BUCKET:
        logger.info("Keeping the roster in gs://%s", ROSTER_GCS_BUCKET)
        return GcsRosterStore(ROSTER_GCS_BUCKET)
    return DatabaseRosterStore()
