from __future__ import annotations

import pytest

from review_engine.job_store import InMemoryJobStore, SqliteJobStore
from review_engine.repositories.audit_logs import InMemoryAuditLogsRepository
from review_engine.runtime import (
    ReviewRuntime,
    _create_audit_trail_for_runtime,
    _create_job_store_for_runtime,
)


def _raise_runtime(_environ=None):
    raise RuntimeError("backend init failed")


def test_runtime_job_store_falls_back_to_memory_when_true_stack_not_required(monkeypatch):
    monkeypatch.setattr("review_engine.runtime.create_job_store_from_env", _raise_runtime)
    store = _create_job_store_for_runtime({"REVIEW_REQUIRE_TRUESTACK": "false"})
    assert isinstance(store, InMemoryJobStore)


def test_runtime_job_store_does_not_fallback_when_true_stack_required(monkeypatch):
    monkeypatch.setattr("review_engine.runtime.create_job_store_from_env", _raise_runtime)
    with pytest.raises(RuntimeError, match="backend init failed"):
        _create_job_store_for_runtime({"REVIEW_REQUIRE_TRUESTACK": "true"})


def test_runtime_audit_trail_falls_back_to_memory(monkeypatch):
    monkeypatch.setattr("review_engine.runtime.create_audit_trail_from_env", _raise_runtime)
    trail = _create_audit_trail_for_runtime({})
    assert isinstance(trail.repository, InMemoryAuditLogsRepository)


def test_runtime_audit_trail_does_not_fallback_when_true_stack_required(monkeypatch):
    monkeypatch.setattr("review_engine.runtime.create_audit_trail_from_env", _raise_runtime)
    with pytest.raises(RuntimeError, match="backend init failed"):
        _create_audit_trail_for_runtime({"REVIEW_REQUIRE_TRUESTACK": "1"})


def test_runtime_from_env_wires_one_store_through_services(tmp_path):
    runtime = ReviewRuntime.from_env(
        {
            "REVIEW_JOB_STORE_BACKEND": "sqlite",
            "REVIEW_JOB_STORE_SQLITE_PATH": str(tmp_path / "jobs.sqlite3"),
            "REVIEW_BULK_MAX_ITEMS": "10",
        }
    )
    assert runtime.settings.bulk_max_items == 10
    assert runtime.engine.job_store is runtime.job_store
    assert runtime.engine.settings is runtime.settings
    assert isinstance(runtime.job_store, SqliteJobStore)
