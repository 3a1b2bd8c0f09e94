import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# keep data and log files out of the user's home directory
os.environ.setdefault("FLOWSYNC_DATA_DIR", tempfile.mkdtemp(prefix="flowsync-tests-"))

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, create_engine  # noqa: E402

from core.settings import SyncQueueSettings  # noqa: E402
from services.operation_store import OperationStore  # noqa: E402
from storage.db import init_db  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture()
def session_factory(engine):
    def factory():
        return Session(engine)

    return factory


@pytest.fixture()
def settings():
    return SyncQueueSettings()


@pytest.fixture()
def store(session_factory, settings, clock):
    return OperationStore(session_factory, settings=settings, clock=clock)
