from __future__ import annotations

import os
import sys
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure `backend/browserops` is importable as `browserops` when tests run in container.
sys.path.append(str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("BROWSEROPS_DATABASE_URL", "sqlite+pysqlite:///:memory:")

from browserops.adapters import ExecutionEnvelope
from browserops.db import get_db
from browserops.main import app, get_adapter_factory
from browserops.models import Base, ProviderExecution, Task, TaskStatus


class FakeAdapter:
    """Returns queued envelopes in order (the last one repeats) and remembers every request."""

    def __init__(self, *envelopes: ExecutionEnvelope) -> None:
        self.envelopes = list(envelopes) or [ExecutionEnvelope(status="success", result={"ok": True})]
        self.requests = []
        self.providers = []

    def factory(self, provider: str):
        self.providers.append(provider)
        return self

    @property
    def provider(self) -> str:
        return self.providers[-1] if self.providers else "fake"

    def execute(self, request, recorder) -> ExecutionEnvelope:
        self.requests.append(request)
        if len(self.envelopes) > 1:
            return self.envelopes.pop(0)
        return self.envelopes[0]


@pytest.fixture()
def db_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    db_file = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite+pysqlite:///{db_file}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture()
def db(db_session_factory) -> Generator[Session, None, None]:
    session = db_session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_task(db_session_factory):
    """Insert a task row directly. Returns its id as a string."""

    def _make(**overrides) -> str:
        values = {
            "session_id": "session-1",
            "user_id": "user-1",
            "task_name": "task",
            "status": TaskStatus.pending,
        }
        values.update(overrides)
        with db_session_factory() as session:
            task = Task(**values)
            session.add(task)
            session.commit()
            session.refresh(task)
            return str(task.id)

    return _make


@pytest.fixture()
def add_history(db_session_factory):
    """Append execution-history rows for a provider, oldest first."""

    def _add(provider: str, statuses: list[str], duration_ms: int | None = 100, error: str | None = None) -> None:
        start = datetime.now(timezone.utc) - timedelta(hours=1)
        with db_session_factory() as session:
            for i, status in enumerate(statuses):
                session.add(ProviderExecution(
                    provider=provider,
                    status=status,
                    duration_ms=duration_ms,
                    error=error if status == "failed" else None,
                    created_at=start + timedelta(seconds=i),
                ))
            session.commit()

    return _add


@pytest.fixture()
def queue_spy(monkeypatch) -> list[tuple]:
    calls: list[tuple] = []

    def fake_enqueue(fn, *args, **kwargs):
        calls.append((fn, None, args, kwargs))
        return None

    def fake_enqueue_at(when, fn, *args, **kwargs):
        calls.append((fn, when, args, kwargs))
        return None

    monkeypatch.setattr("browserops.worker.queue.enqueue", fake_enqueue)
    monkeypatch.setattr("browserops.worker.queue.enqueue_at", fake_enqueue_at)
    return calls


@pytest.fixture()
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture()
def client(db_session_factory, monkeypatch, queue_spy, fake_adapter) -> Generator[TestClient, None, None]:
    def override_get_db():
        db: Session = db_session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_adapter_factory] = lambda: fake_adapter.factory
    monkeypatch.setattr("browserops.jobs.SessionLocal", db_session_factory)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
