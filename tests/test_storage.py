import pytest
from sqlmodel import Session, select

from skateapp.database import RosterDocument, build_engine
from skateapp.roster import Player, seed_roster
from skateapp.storage import (
    DatabaseRosterStore,
    GcsRosterStore,
    MalformedRosterError,
    StoreUnavailableError,
    VersionConflictError,
)


def _roster(*emails):
    return [Player(id=str(index), name=f"P{index}", email=email) for index, email in enumerate(emails, 1)]


def test_missing_document_reads_as_none(store):
    assert store.get() is None


def test_first_write_creates_version_one(store):
    assert store.set(_roster("a@example.com")) == 1
    snapshot = store.get()
    assert snapshot.version == 1
    assert [player.email for player in snapshot.players] == ["a@example.com"]


def test_conditional_write_bumps_version(store):
    version = store.set(_roster("a@example.com"), expected_version=0)
    version = store.set(_roster("a@example.com", "b@example.com"), expected_version=version)
    assert version == 2
    assert len(store.get().players) == 2


def test_stale_version_is_rejected(store):
    store.set(seed_roster())
    store.set(_roster("a@example.com"), expected_version=1)
    with pytest.raises(VersionConflictError) as excinfo:
        store.set(_roster("b@example.com"), expected_version=1)
    assert excinfo.value.expected == 1
    assert excinfo.value.actual == 2
    assert store.get().players[0].email == "a@example.com"


def test_insert_only_write_conflicts_when_document_exists(store):
    store.set(seed_roster())
    with pytest.raises(VersionConflictError):
        store.set(_roster("late@example.com"), expected_version=0)


def test_expected_version_against_missing_document(store):
    with pytest.raises(VersionConflictError):
        store.set(_roster("a@example.com"), expected_version=3)


def test_unconditional_write_is_last_writer_wins(store):
    store.set(seed_roster())
    assert store.set(_roster("a@example.com")) == 2
    assert store.set(_roster("b@example.com")) == 3
    assert store.get().players[0].email == "b@example.com"


def test_empty_roster_is_stored_as_is(store):
    store.set(seed_roster())
    store.set([])
    snapshot = store.get()
    assert snapshot.is_empty
    assert snapshot.version == 2


class RacedInsertStore(DatabaseRosterStore):
    """The first lookup misses a document another writer creates right then."""

    def __init__(self, engine):
        super().__init__(engine)
        self.rival = DatabaseRosterStore(engine)
        self.raced = False

    def _find(self, session):
        if not self.raced:
            self.raced = True
            self.rival.set(_roster("rival@example.com"))
            return None
        return super()._find(session)


def test_racing_first_insert_without_version_becomes_update(engine):
    store = RacedInsertStore(engine)
    assert store.set(_roster("mine@example.com")) == 2
    snapshot = store.get()
    assert snapshot.version == 2
    assert [player.email for player in snapshot.players] == ["mine@example.com"]


def test_racing_first_insert_with_version_conflicts(engine):
    store = RacedInsertStore(engine)
    with pytest.raises(VersionConflictError):
        store.set(_roster("mine@example.com"), expected_version=0)
    assert store.get().players[0].email == "rival@example.com"


def test_stores_are_isolated_by_key(engine):
    players = DatabaseRosterStore(engine)
    archive = DatabaseRosterStore(engine, key="archive")
    players.set(_roster("a@example.com"))
    assert archive.get() is None


def test_malformed_document_raises(store, engine):
    store.set(seed_roster())
    with Session(engine) as session:
        document = session.exec(select(RosterDocument)).one()
        document.body = '{"not": "a list"}'
        session.add(document)
        session.commit()
    with pytest.raises(MalformedRosterError):
        store.get()


def test_unreachable_database_raises_unavailable(tmp_path):
    missing = build_engine(f"sqlite:///{tmp_path / 'no-such-dir' / 'roster.sqlite3'}")
    store = DatabaseRosterStore(missing)
    with pytest.raises(StoreUnavailableError):
        store.get()
    with pytest.raises(StoreUnavailableError):
        store.set(seed_roster())
    missing.dispose()


def test_gcs_store_requires_bucket(monkeypatch):
    monkeypatch.setattr("skateapp.storage.ROSTER_GCS_BUCKET", None)
    with pytest.raises(StoreUnavailableError):
        GcsRosterStore()


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket = bucket
        self.name = name
        self.generation = None
        self.cache_control = None

    def download_as_bytes(self):
        from google.api_core import exceptions as gcs_errors

        if self.name not in self.bucket.objects:
            raise gcs_errors.NotFound("missing")
        body, generation = self.bucket.objects[self.name]
        self.generation = generation
        return body

    def upload_from_string(self, data, content_type=None, if_generation_match=None):
        from google.api_core import exceptions as gcs_errors

        current = self.bucket.objects.get(self.name, (None, 0))[1]
        if if_generation_match is not None and if_generation_match != current:
            raise gcs_errors.PreconditionFailed("generation mismatch")
        self.generation = current + 1
        self.bucket.objects[self.name] = (data.encode("utf-8"), self.generation)


class FakeBucket:
    def __init__(self):
        self.objects = {}

    def blob(self, name):
        return FakeBlob(self, name)


class FakeClient:
    def __init__(self):
        self.buckets = {}

    def bucket(self, name):
        return self.buckets.setdefault(name, FakeBucket())


def test_gcs_store_uses_generation_as_version():
    pytest.importorskip("google.api_core")
    client = FakeClient()
    store = GcsRosterStore("skate-bucket", client=client)
    assert store.get() is None
    assert store.set(seed_roster(), expected_version=0) == 1
    snapshot = store.get()
    assert snapshot.version == 1
    assert len(snapshot.players) == 15
    assert "roster/players.json" in client.buckets["skate-bucket"].objects

    assert store.set(_roster("a@example.com"), expected_version=1) == 2
    with pytest.raises(VersionConflictError):
        store.set(_roster("b@example.com"), expected_version=1)
