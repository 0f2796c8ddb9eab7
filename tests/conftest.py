import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from taskboard.config import Settings
from taskboard.db import Card, Database, Lane
from taskboard.errors import LineApiError
from taskboard.events import EventBus
from taskboard.line import LineProfile
from taskboard.main import create_app
from taskboard.storage import Store

CHANNEL_SECRET = "test-channel-secret"


class FakeMessenger:
    """Records outgoing LINE messages instead of calling the API."""

    def __init__(self):
        self.pushed = []
        self.replied = []
        self.fail_push = False

    def push_message(self, to, text):
        if self.fail_push:
            raise LineApiError("LINE push failed", {"status": 500})
        self.pushed.append((to, text))

    def reply_message(self, reply_token, text):
        self.replied.append((reply_token, text))


class FakeLoginClient:
    def __init__(self):
        self.profiles = {}

    def authorize_url(self, state):
        return f"https://access.line.me/oauth2/v2.1/authorize?state={state}"

    def exchange_code(self, code):
        if code not in self.profiles:
            raise LineApiError("LINE token exchange failed", {"status": 400})
        return f"token-{code}"

    def get_profile(self, access_token):
        return self.profiles[access_token[len("token-"):]]


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def store(database, events):
    return Store(database, events)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        session_secret="test-session-secret",
        app_url="http://localhost:3000",
        line_channel_secret=CHANNEL_SECRET,
        line_channel_access_token="test-token",
    )


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def login_client():
    return FakeLoginClient()


@pytest.fixture
def app(settings, database, messenger, login_client):
    return create_app(settings, database=database, messenger=messenger, login_client=login_client)


@pytest.fixture
def client(app):
    return TestClient(app)


def login(client, login_client, chat_id="U-alice", name="Alice"):
    login_client.profiles[chat_id] = LineProfile(chat_id, name, f"https://example.com/{chat_id}.png")
    response = client.get("/v1/auth/line/callback", params={"code": chat_id}, follow_redirects=False)
    assert response.status_code == 302
    return client.get("/v1/auth/me").json()


@pytest.fixture
def auth_client(client, login_client):
    login(client, login_client)
    return client


def card_orders(database, lane_id):
    """``[(title, order), ...]`` for a lane, by order."""
    with database.transaction() as session:
        rows = session.execute(
            select(Card.title, Card.order).where(Card.lane_id == lane_id).order_by(Card.order)
        ).all()
    return [tuple(r) for r in rows]


def lane_orders(database, board_id):
    with database.transaction() as session:
        rows = session.execute(
            select(Lane.title, Lane.order).where(Lane.board_id == board_id).order_by(Lane.order)
        ).all()
    return [tuple(r) for r in rows]
