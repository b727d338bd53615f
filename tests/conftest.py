"""
Shared test fixtures for the Meta Hub automation backend.
"""
import os
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

# Force test settings before any app import
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-not-for-prod")
os.environ.setdefault("META_APP_SECRET", "test-app-secret")
os.environ.setdefault("META_WEBHOOK_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

# Import Base and ALL models so they register with metadata
from metahub.persistence.database import Base
import metahub.persistence.models  # noqa: F401  registers all models
from metahub.errors import ChannelSendFailed
from metahub.persistence.models import (
    AIReplySettings,
    Channel,
    ChannelConnection,
    EventType,
    MemberRole,
    Thread,
    ThreadStatus,
    Workspace,
    WorkspaceMember,
)
from metahub.providers.base import ProviderError, ProviderReply
from metahub.webhooks.events import InboundEvent

PHONE_NUMBER_ID = "1065550100"
CUSTOMER_WA_ID = "15550001111"


@pytest.fixture(scope="session")
def db_engine():
    """Create a test SQLite engine, shared across the session."""
    engine = create_engine(
        "sqlite:///test.db",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(db_engine):
    """Per-test DB session with automatic rollback."""
    connection = db_engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection)
    yield session
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture()
def session_factory(db_session):
    """Fresh sessions on the test connection, for components that open their own."""
    connection = db_session.get_bind()
    return lambda: Session(bind=connection)


@pytest.fixture()
def workspace(db_session):
    ws = Workspace(id=uuid.uuid4(), slug=f"ws-{uuid.uuid4().hex[:8]}", name="Acme Support")
    db_session.add(ws)
    db_session.commit()
    return ws


@pytest.fixture()
def owner(db_session, workspace):
    member = WorkspaceMember(workspace_id=workspace.id, user_id="user-owner", role=MemberRole.owner)
    db_session.add(member)
    db_session.commit()
    return member


@pytest.fixture()
def agent_member(db_session, workspace):
    member = WorkspaceMember(workspace_id=workspace.id, user_id="user-agent", role=MemberRole.member)
    db_session.add(member)
    db_session.commit()
    return member


@pytest.fixture()
def connection(db_session, workspace):
    conn = ChannelConnection(
        workspace_id=workspace.id,
        channel=Channel.whatsapp,
        external_account_id=PHONE_NUMBER_ID,
        business_account_id="waba-1",
        access_token="graph-token",
    )
    db_session.add(conn)
    db_session.commit()
    return conn


@pytest.fixture()
def thread(db_session, workspace, connection):
    item = Thread(
        workspace_id=workspace.id,
        channel=Channel.whatsapp,
        external_id=CUSTOMER_WA_ID,
        account_id=PHONE_NUMBER_ID,
        contact_name="Dana",
        status=ThreadStatus.open,
    )
    db_session.add(item)
    db_session.commit()
    return item


@pytest.fixture()
def ai_settings(db_session, workspace):
    row = AIReplySettings(
        workspace_id=workspace.id,
        enabled=True,
        model="gpt-4o-mini",
        cooldown_seconds=0,
        handoff_keywords=["human", "agent"],
        sandbox_whitelist=[],
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture()
def make_event(workspace):
    def _make(
        text: str | None = "Hello, is my order shipped?",
        message_id: str | None = None,
        timestamp: datetime | None = None,
        event_type: EventType = EventType.message,
        sender: str = CUSTOMER_WA_ID,
        status: str | None = None,
    ) -> InboundEvent:
        return InboundEvent(
            provider="meta",
            channel=Channel.whatsapp,
            workspace_id=workspace.id,
            thread_id=sender,
            external_message_id=message_id or f"wamid.{uuid.uuid4().hex}",
            sender_id=sender,
            timestamp=timestamp or datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc),
            raw_payload={},
            event_type=event_type,
            account_id=PHONE_NUMBER_ID,
            text=text,
            contact_name="Dana",
            status=status,
        )

    return _make


class FakeSender:
    """Records outbound sends instead of calling the Graph API."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    def send_text(self, target, text: str) -> str:
        if self.fail:
            raise ChannelSendFailed("Graph API error 500: boom")
        self.sent.append((target.recipient_id, text))
        return f"wamid.out.{len(self.sent)}"

    def send_template(self, target, template_name: str, language: str = "en_US", components=None) -> str:
        if self.fail:
            raise ChannelSendFailed("Graph API error 500: boom")
        self.sent.append((target.recipient_id, f"template:{template_name}"))
        return f"wamid.out.{len(self.sent)}"


class FakeProvider:
    provider_type = "OpenAI"

    def __init__(self, text: str = "Your order ships tomorrow.", error: Exception | None = None, usage=(12, 8)):
        self.text = text
        self.error = error
        self.usage = usage
        self.prompts = []

    def call(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return ProviderReply(text=self.text, tokens_in=self.usage[0], tokens_out=self.usage[1], model="gpt-4o-mini")

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return 0.0


@pytest.fixture()
def sender():
    return FakeSender()


@pytest.fixture()
def failing_sender():
    return FakeSender(fail=True)


@pytest.fixture()
def provider():
    return FakeProvider()


@pytest.fixture()
def failing_provider():
    return FakeProvider(error=ProviderError("OpenAI API error 400: bad request"))


@pytest.fixture()
def api_client(db_session):
    """FastAPI test client bound to the per-test session."""
    from fastapi.testclient import TestClient
    from metahub.main import app
    from metahub.persistence.database import get_db
    from metahub.services.rate_limit_store import InMemoryRateLimitStore

    app.dependency_overrides[get_db] = lambda: db_session
    app.state.rate_limits = InMemoryRateLimitStore()
    yield TestClient(app)
    app.dependency_overrides.clear()
    del app.state.rate_limits


@pytest.fixture()
def auth_headers(workspace):
    from metahub.auth.security import create_access_token

    def _headers(user_id: str = "user-owner", workspace_id=None) -> dict:
        return {
            "Authorization": f"Bearer {create_access_token(user_id)}",
            "X-Workspace-ID": str(workspace_id or workspace.id),
        }

    return _headers
