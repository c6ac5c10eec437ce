"""Shared fixtures: a throwaway SQLite database per test and a controllable clock."""
import os
import tempfile

# Settings are read at import time; point them somewhere harmless first.
_scratch = tempfile.mkdtemp(prefix="controller-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_scratch}/app.db")
os.environ.setdefault("ARTIFACTS_DIR", os.path.join(_scratch, "artifacts"))
os.environ.setdefault("WORKSPACES_DIR", os.path.join(_scratch, "workspaces"))
os.environ.setdefault("CALLBACK_BASE_URL", "http://controller.test")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from app.core.artifacts import ArtifactStore
from app.core.handshake import HandshakeService
from app.db.session import Base
from app.db import models  # noqa
from app.db.models import Pipeline
from tests.helpers import FakeClock, make_definition


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'controller.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = ArtifactStore(tmp_path / "artifacts")
    s.ensure()
    return s


@pytest.fixture
def make_pipeline(db, clock):
    def _make(timeout_seconds=300, definition=None):
        hs = HandshakeService(db, clock).create(timeout_seconds=timeout_seconds)
        definition = definition or make_definition()
        pipeline = Pipeline(name=definition.name, definition=definition.model_dump(mode="json"), handshake_id=hs.id)
        db.add(pipeline)
        db.commit()
        db.refresh(pipeline)
        return pipeline
    return _make
