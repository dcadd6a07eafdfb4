"""Shared fixtures: a fresh SQLite database per test and an in-memory source."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fakes import FakeSource
from kb_governance.db.database import create_engine, create_session_maker, init_db
from kb_governance.governance.issues import IssueLifecycleManager
from kb_governance.governance.sla import GovernanceSlaService
from kb_governance.sync.classification import MenuClassifier
from kb_governance.sync.mirror import ArticleMirror
from kb_governance.sync.orchestrator import SyncOrchestrator
from kb_governance.sync.sync_issues import SyncIssueRecorder


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return create_session_maker(db_engine)


@pytest.fixture
def sla() -> GovernanceSlaService:
    return GovernanceSlaService(
        sla_days={"ERROR": 3, "WARN": 15, "INFO": 30},
        timezone_name="America/Sao_Paulo",
    )


@pytest.fixture
def lifecycle(session_maker, sla) -> IssueLifecycleManager:
    return IssueLifecycleManager(session_maker=session_maker, sla=sla)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def mirror(source, lifecycle, session_maker) -> ArticleMirror:
    return ArticleMirror(
        source=source,
        lifecycle=lifecycle,
        session_maker=session_maker,
        classifier=MenuClassifier(source_system="MOVIDESK", default_system_code="GENERAL"),
        sync_issues=SyncIssueRecorder(session_maker=session_maker),
    )


@pytest.fixture
def orchestrator(mirror, session_maker) -> SyncOrchestrator:
    return SyncOrchestrator(
        mirror=mirror,
        session_maker=session_maker,
        page_size=10,
        parallel=False,
        run_governance=False,
    )


@pytest_asyncio.fixture
async def client(monkeypatch, source, lifecycle, orchestrator, session_maker):
    """API client wired to the test database and the fake source."""
    from kb_governance.api import dependencies, health
    from kb_governance.main import app

    monkeypatch.setattr(dependencies, "_source", source)
    monkeypatch.setattr(dependencies, "_lifecycle", lifecycle)
    monkeypatch.setattr(dependencies, "_orchestrator", orchestrator)
    monkeypatch.setattr(health, "async_session_maker", session_maker)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
