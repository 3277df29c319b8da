import pytest
import pytest_asyncio
import httpx

from skateapp import create_app
from skateapp.database import build_engine, init_db
from skateapp.notifications import Mailer, MailerError
from skateapp.storage import DatabaseRosterStore
from skateapp.suggestions import FallbackSuggester


class RecordingMailer(Mailer):
    """Collects outgoing mail; ``fail_batches`` lists 1-based batch numbers to reject."""

    def __init__(self, sender="SkateApp <team@example.com>", fail_batches=()):
        self.sender = sender
        self.fail_batches = set(fail_batches)
        self.sent = []
        self.batches = []

    async def send(self, message):
        self.sent.append(message)
        return f"email-{len(self.sent)}"

    async def send_batch(self, messages):
        self.batches.append(list(messages))
        if len(self.batches) in self.fail_batches:
            raise MailerError("provider rejected batch")
        self.sent.extend(messages)
        return [f"email-{index}" for index, _ in enumerate(messages)]


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'roster.sqlite3'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return DatabaseRosterStore(engine)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def app(store, mailer):
    return create_app(
        store=store,
        mailer=mailer,
        suggester=FallbackSuggester(),
        admin_secret="let-me-in",
    )


@pytest_asyncio.fixture
async def async_client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
