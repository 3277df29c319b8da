"""Client-side roster synchronization.

``RosterSyncEngine`` keeps an in-memory roster that callers read and mutate
synchronously, mirrors every change to a local cache file, and pushes the
roster to the server after a quiet period. Two rules protect the remote
document: nothing is pushed before a non-empty roster has been loaded, and an
empty roster is never pushed.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Sequence

import httpx

from .roster import (
    Player,
    RsvpStatus,
    add_player,
    dump_roster,
    finalize_no_replies,
    parse_roster,
    remove_player,
    reset_statuses,
    set_status,
    update_player,
)

LOCAL_CACHE_KEY = "skateapp_players_v3"
LEGACY_CACHE_KEY = "skateapp_players"
SAVE_DELAY_SECONDS = 2.0
ADMIN_PASSWORD = os.getenv("SKATEAPP_ADMIN_PASSWORD", "puck")

RosterOperation = Callable[[Sequence[Player]], list[Player]]

logger = logging.getLogger(__name__)


# ============ ADMIN GATE ============

@dataclass(frozen=True)
class AdminCapability:
    """Proof that the caller passed the admin gate. Pass it explicitly."""

    granted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AdminGate:
    """Shared-password gate for roster administration.

    This is a convenience lock for a single trusted group, not authentication.
    """

    def __init__(self, password: str = ADMIN_PASSWORD):
        self._password = password

    def unlock(self, attempt: str) -> AdminCapability:
        if not hmac.compare_digest(attempt.encode("utf-8"), self._password.encode("utf-8")):
            raise PermissionError("Invalid admin password")
        return AdminCapability()


def _require_admin(admin: AdminCapability | None) -> None:
    if not isinstance(admin, AdminCapability):
        raise PermissionError("Administrator privileges are required")


# ============ LOCAL CACHE ============

class LocalCache:
    """JSON files standing in for the browser's local storage."""

    def __init__(self, directory: Path | str, *, key: str = LOCAL_CACHE_KEY, legacy_key: str = LEGACY_CACHE_KEY):
        self.directory = Path(directory)
        self.key = key
        self.legacy_key = legacy_key

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    @property
    def path(self) -> Path:
        return self._path(self.key)

    def _read(self, path: Path) -> list[Player]:
        return parse_roster(json.loads(path.read_text(encoding="utf-8")))

    def load(self) -> list[Player] | None:
        """Return the cached roster, or ``None`` when nothing usable is stored."""
        if not self.path.exists():
            self._migrate_legacy()
        if not self.path.exists():
            return None
        try:
            return self._read(self.path)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable roster cache %s: %s", self.path, exc)
            return None

    def save(self, players: Iterable[Player]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_suffix(".tmp")
        staging.write_text(json.dumps(dump_roster(players)), encoding="utf-8")
        staging.replace(self.path)

    def _migrate_legacy(self) -> None:
        # Older entries predate role and feesPaid; parsing fills the defaults.
        legacy = self._path(self.legacy_key)
        if not legacy.exists():
            return
        try:
            players = self._read(legacy)
        except (OSError, ValueError) as exc:
            logger.warning("Skipping migration of unreadable legacy cache %s: %s", legacy, exc)
            return
        self.save(players)
        legacy.unlink()
        logger.info("Migrated %s cached players from %s to %s", len(players), self.legacy_key, self.key)


# ============ DEBOUNCE ============

class Debouncer:
    """Run ``action`` once the triggers stop for ``delay`` seconds.

    Re-scheduling cancels the pending timer but never an action already running.
    """

    def __init__(self, delay: float, action: Callable[[], Awaitable[None]]):
        self.delay = delay
        self._action = action
        self._timer: asyncio.TimerHandle | None = None
        self._running: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def busy(self) -> bool:
        return bool(self._running)

    def schedule(self) -> None:
        loop = asyncio.get_running_loop()
        self.cancel()
        self._timer = loop.call_later(self.delay, self._fire)

    def cancel(self) -> bool:
        if self._timer is None:
            return False
        self._timer.cancel()
        self._timer = None
        return True

    def _fire(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self._action())
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def flush(self) -> None:
        """Fire a pending action now and wait for every running one."""
        if self.cancel():
            self._fire()
        while self._running:
            await asyncio.gather(*list(self._running))


# ============ REMOTE ============

class RemoteRosterError(RuntimeError):
    """The roster service could not be read or written."""


class RemoteConflictError(RemoteRosterError):
    """The roster service rejected a write made against a stale version."""


def _version_from(response: httpx.Response) -> int | None:
    etag = response.headers.get("etag")
    if not etag:
        return None
    try:
        return int(etag.removeprefix("W/").strip('"'))
    except ValueError:
        return None


class RosterClient:
    """Thin httpx wrapper around ``GET``/``POST /roster``."""

    def __init__(self, base_url: str = "", *, client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def fetch(self) -> tuple[list[Player], int | None]:
        try:
            response = await self._client.get("/roster")
        except httpx.HTTPError as exc:
            raise RemoteRosterError(f"GET /roster failed: {exc}") from exc
        if not response.is_success:
            raise RemoteRosterError(f"GET /roster returned {response.status_code}")
        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            raise RemoteRosterError(f"GET /roster returned non-JSON content ({content_type or 'none'})")
        try:
            players = parse_roster(response.json())
        except ValueError as exc:
            raise RemoteRosterError(f"GET /roster returned an invalid roster: {exc}") from exc
        return players, _version_from(response)

    async def save(self, players: Sequence[Player], *, expected_version: int | None = None) -> int | None:
        headers = {"If-Match": f'"{expected_version}"'} if expected_version is not None else {}
        try:
            response = await self._client.post("/roster", json=dump_roster(players), headers=headers)
        except httpx.HTTPError as exc:
            raise RemoteRosterError(f"POST /roster failed: {exc}") from exc
        if response.status_code == 409:
            raise RemoteConflictError("Remote roster changed since it was loaded")
        if not response.is_success:
            raise RemoteRosterError(f"POST /roster returned {response.status_code}")
        return _version_from(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ============ ENGINE ============

class RosterSyncEngine:
    """Owns the client's roster: local cache first, debounced remote saves."""

    def __init__(self, remote: RosterClient, cache: LocalCache, *, save_delay: float = SAVE_DELAY_SECONDS):
        self.remote = remote
        self.cache = cache
        self.loaded = False
        self._load_attempted = False
        self._players: list[Player] = []
        self._version: int | None = None
        self._unsaved: list[RosterOperation] = []
        self._save_lock = asyncio.Lock()
        self._debouncer = Debouncer(save_delay, self._save_remote)

    async def __aenter__(self) -> "RosterSyncEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def players(self) -> list[Player]:
        return list(self._players)

    @property
    def save_pending(self) -> bool:
        return self._debouncer.pending or self._debouncer.busy

    # ---- loading ----

    async def load(self) -> list[Player]:
        """Remote first, cache as fallback; ``loaded`` only for a non-empty roster."""
        remote_players: list[Player] = []
        try:
            remote_players, version = await self.remote.fetch()
        except RemoteRosterError as exc:
            logger.error("Failed to load roster from cloud: %s", exc)
            version = None
        self._load_attempted = True

        if remote_players:
            self._players = remote_players
            self._version = version
            self._unsaved = []
            self.loaded = True
            self._mirror()
            return self.players

        cached = self.cache.load()
        if cached:
            logger.warning("Using %s players from the local cache", len(cached))
            self._players = cached
            self._version = None
            self.loaded = True
        else:
            self.loaded = False
        return self.players

    # ---- mutations ----

    def register(self, player: Player) -> None:
        """Public self-registration; no admin rights needed."""
        self._apply(partial(add_player, player=player))

    def add_player(self, player: Player, *, admin: AdminCapability) -> None:
        _require_admin(admin)
        self._apply(partial(add_player, player=player))

    def set_status(self, player_id: str, status: RsvpStatus | str, *, admin: AdminCapability) -> None:
        _require_admin(admin)
        self._apply(partial(set_status, player_id=player_id, status=status))

    def reset_all_statuses(self, *, admin: AdminCapability) -> None:
        _require_admin(admin)
        self._apply(reset_statuses)

    def finalize_no_replies(self, *, admin: AdminCapability) -> None:
        _require_admin(admin)
        self._apply(finalize_no_replies)

    def update_player(self, player_id: str, *, admin: AdminCapability, **changes: Any) -> None:
        _require_admin(admin)
        self._apply(partial(update_player, player_id=player_id, **changes))

    def delete_player(self, player_id: str, *, admin: AdminCapability) -> None:
        _require_admin(admin)
        self._apply(partial(remove_player, player_id=player_id))

    def replace_roster(self, players: Iterable[Player], *, admin: AdminCapability) -> None:
        _require_admin(admin)
        replacement = list(players)
        self._apply(lambda _current: list(replacement))

    def _apply(self, operation: RosterOperation) -> None:
        # Domain errors surface here, before any state changes.
        self._players = operation(self._players)
        self._unsaved.append(operation)
        self._mirror()
        self._request_save()

    def _mirror(self) -> None:
        # The cache may hold an earlier session's roster until load() has read it.
        if not self._load_attempted:
            logger.debug("Roster not loaded yet; local cache left untouched")
            return
        try:
            self.cache.save(self._players)
        except OSError as exc:
            logger.warning("Failed to update local roster cache: %s", exc)

    def _request_save(self) -> None:
        if not self.loaded:
            logger.debug("Roster not loaded yet; remote save skipped")
            return
        if not self._players:
            logger.warning("Refusing to schedule a remote save of an empty roster")
            return
        self._debouncer.schedule()

    # ---- remote persistence ----

    async def _save_remote(self) -> None:
        async with self._save_lock:
            if not self.loaded or not self._players:
                logger.warning("Remote save skipped: roster not loaded or empty")
                return
            if self._version is None and not await self._refresh_from_remote():
                return
            try:
                await self._push()
            except RemoteConflictError:
                logger.warning("Remote roster changed underneath us; replaying local changes")
                if not await self._refresh_from_remote():
                    return
                try:
                    await self._push()
                except RemoteRosterError as exc:
                    logger.error("Failed to save roster to cloud after replay: %s", exc)
            except RemoteRosterError as exc:
                logger.error("Failed to save roster to cloud: %s", exc)

    async def _push(self) -> None:
        if not self._players:
            logger.warning("Remote save skipped: roster is empty")
            return
        snapshot = list(self._players)
        included = len(self._unsaved)
        version = await self.remote.save(snapshot, expected_version=self._version)
        self._version = version
        del self._unsaved[:included]
        logger.info("Roster saved to cloud (%s players, version %s)", len(snapshot), version)

    async def _refresh_from_remote(self) -> bool:
        try:
            remote_players, version = await self.remote.fetch()
        except RemoteRosterError as exc:
            logger.error("Could not refresh roster before saving: %s", exc)
            return False
        if remote_players:
            self._rebase(remote_players, version)
        else:
            self._version = version
        return True

    def _rebase(self, base: Sequence[Player], version: int | None) -> None:
        players = list(base)
        kept: list[RosterOperation] = []
        for operation in self._unsaved:
            try:
                players = operation(players)
            except (LookupError, ValueError) as exc:
                logger.warning("Dropping local change that no longer applies: %s", exc)
                continue
            kept.append(operation)
        self._unsaved = kept
        self._players = players
        self._version = version
        self._mirror()

    async def flush(self) -> None:
        """Push a pending save now and wait until no save is running."""
        await self._debouncer.flush()

    async def close(self) -> None:
        await self.flush()
        await self.remote.aclose()
