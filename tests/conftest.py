"""Shared fixtures: every test gets its own SQLite file under tmp_path."""

import pytest

from faultline.db import PipelineDB
from faultline.monitor import HealthMonitor
from faultline.store import ErrorStore


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "faultline.db")


@pytest.fixture
async def db(db_path):
    pipeline_db = PipelineDB(db_path)
    await pipeline_db.init()
    yield pipeline_db
    await pipeline_db.close()


@pytest.fixture
def store(db):
    return ErrorStore(db)


@pytest.fixture
def monitor(db, store):
    return HealthMonitor(db, store, agent_ids=[])
