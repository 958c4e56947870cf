"""
Shared pytest fixtures for backend/app tests.

This module provides common fixtures for testing backend/app components:
- An in-memory stand-in for the redis.asyncio client
- A fake SQLAlchemy async engine that records commits and rollbacks
- An in-memory relational assignment store
- Test data fixtures (projects, threat models, subjects)
"""

import fnmatch
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError

# Add backend/app to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "backend" / "app"))

os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "1")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "project-assignments-test")

from services.relational_store import row_to_record  # noqa: E402

PROJECT_UUID = "0f8fad5b-d9cb-469f-a165-70867728950e"
THREAT_MODEL_UUID = "7c9e6679-7425-40de-944b-e07fc1f90ae7"


# ============================================================================
# Redis Fake
# ============================================================================


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.commands = []
        return False

    def hset(self, key, mapping=None):
        self.commands.append(("hset", key, mapping))
        return self

    def sadd(self, key, *members):
        self.commands.append(("sadd", key, members))
        return self

    async def execute(self):
        self.redis._check("execute")
        results = []
        for command, key, payload in self.commands:
            if command == "hset":
                results.append(await self.redis.hset(key, mapping=payload))
            else:
                results.append(await self.redis.sadd(key, *payload))
        self.redis.pipelines_executed += 1
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis (decode_responses=True) for the services."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.calls = []
        self.fail_commands = set()
        self.pipelines_executed = 0

    def _check(self, command):
        self.calls.append(command)
        if command in self.fail_commands:
            raise RedisConnectionError(f"{command} failed")

    async def get(self, key):
        self._check("get")
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    async def set(self, key, value, ex=None):
        self._check("set")
        self.data[key] = str(value)
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check("delete")
        removed = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def exists(self, key):
        self._check("exists")
        return int(key in self.data)

    async def smembers(self, key):
        self._check("smembers")
        return set(self.data.get(key, set()))

    async def sadd(self, key, *members):
        self._check("sadd")
        current = self.data.setdefault(key, set())
        added = len(set(members) - current)
        current.update(members)
        return added

    async def srem(self, key, *members):
        self._check("srem")
        current = self.data.get(key, set())
        removed = len(current & set(members))
        current.difference_update(members)
        return removed

    async def hgetall(self, key):
        self._check("hgetall")
        return dict(self.data.get(key, {}))

    async def hset(self, key, mapping=None):
        self._check("hset")
        current = self.data.setdefault(key, {})
        added = len(set(mapping) - set(current))
        current.update({k: str(v) for k, v in mapping.items()})
        return added

    async def scan_iter(self, match=None, count=None):
        self._check("scan_iter")
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        return None


# ============================================================================
# SQLAlchemy Fakes
# ============================================================================


class FakeConnection:
    def __init__(self, engine):
        self.engine = engine

    @asynccontextmanager
    async def begin_nested(self):
        try:
            yield self
        except Exception:
            self.engine.savepoint_rollbacks += 1
            raise


class FakeEngine:
    """Records transaction outcomes the way AsyncEngine.begin() would produce them."""

    def __init__(self):
        self.commits = 0
        self.rollbacks = 0
        self.savepoint_rollbacks = 0
        self.fail_on_commit = False

    @asynccontextmanager
    async def connect(self):
        yield FakeConnection(self)

    @asynccontextmanager
    async def begin(self):
        try:
            yield FakeConnection(self)
        except Exception:
            self.rollbacks += 1
            raise
        if self.fail_on_commit:
            self.rollbacks += 1
            raise OperationalError("COMMIT", {}, Exception("connection lost"))
        self.commits += 1


class FakeRelationalStore:
    """In-memory RelationalAssignmentStore with the same method signatures."""

    def __init__(self, projects=(), threat_models=None):
        self.projects = set(projects)
        self.threat_models = dict(threat_models or {})
        self.assignments = {}
        self.assign_calls = []
        self.exists_calls = 0
        self.fail_insert = False

    async def project_exists(self, conn, project_id):
        self.exists_calls += 1
        return project_id in self.projects

    async def existing_threat_models(self, conn, threat_model_ids):
        return [tm_id for tm_id in threat_model_ids if tm_id in self.threat_models]

    async def assign_batch(self, conn, project_id, threat_model_ids, assigned_by):
        self.assign_calls.append(list(threat_model_ids))
        if self.fail_insert:
            raise OperationalError("INSERT", {}, Exception("insert failed"))
        inserted = []
        for tm_id in threat_model_ids:
            key = (project_id, tm_id)
            if key in self.assignments:
                continue
            self.assignments[key] = {
                "assigned_by": assigned_by,
                "assigned_at": datetime.now(timezone.utc),
            }
            inserted.append(tm_id)
        return inserted

    async def remove(self, conn, project_id, threat_model_id):
        return self.assignments.pop((project_id, threat_model_id), None) is not None

    async def list_for_project(self, conn, project_id, status=None):
        records = []
        for (pid, tm_id), assignment in self.assignments.items():
            row = self.threat_models[tm_id]
            if pid != project_id or (status and row.get("status") != status):
                continue
            records.append(row_to_record({**row, **assignment}))
        return sorted(records, key=lambda r: r.sort_key(), reverse=True)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def sample_threat_models():
    """Threat model rows keyed by ID, shaped like threat_model.threat_models."""
    return {
        5: {
            "id": 5,
            "name": "Payments API",
            "status": "Draft",
            "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        },
        6: {
            "id": 6,
            "name": "Identity Service",
            "status": "Approved",
            "created_at": datetime(2024, 3, 1, tzinfo=timezone.utc),
        },
        THREAT_MODEL_UUID: {
            "id": THREAT_MODEL_UUID,
            "title": "Customer Portal",
            "status": "Draft",
            "created_at": datetime(2024, 2, 1, tzinfo=timezone.utc),
        },
    }


@pytest.fixture
def fake_relational_store(sample_threat_models):
    return FakeRelationalStore(projects={42, PROJECT_UUID}, threat_models=sample_threat_models)


@pytest.fixture
def sample_subject(fake_redis):
    """Seed an AI-generated subject the way the generation workflow writes it."""

    def _seed(subject_id, title="Generated analysis", created_at="2024-06-01T00:00:00Z", response=None):
        fake_redis.data[f"subject:{subject_id}:title"] = title
        fake_redis.data[f"subject:{subject_id}:model"] = "llama3.3:latest"
        fake_redis.data[f"subject:{subject_id}:createdAt"] = created_at
        if response is not None:
            fake_redis.data[f"subject:{subject_id}:response"] = response
        return subject_id

    return _seed


@pytest.fixture
def sample_response_text():
    return (
        "## Overview\nSystem summary.\n"
        "## Threat: SQL injection\nDetails.\n"
        "## Threat: Session fixation\nDetails.\n"
        "## Threat: Privilege escalation\nDetails.\n"
    )
