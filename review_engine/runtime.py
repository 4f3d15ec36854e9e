from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from review_engine.audit import CurationAuditTrail, create_audit_trail_from_env
from review_engine.bulk_operations import BulkOperationCoordinator
from review_engine.job_store import BaseJobStore, InMemoryJobStore, create_job_store_from_env
from review_engine.repositories.audit_logs import InMemoryAuditLogsRepository
from review_engine.review_metrics import ReviewMetricsAggregator
from review_engine.review_workflow import ReviewWorkflowEngine
from review_engine.runtime_profile import true_stack_required
from review_engine.settings import ReviewSettings

logger = logging.getLogger(__name__)


def _create_job_store_for_runtime(environ: Mapping[str, str] | None = None) -> BaseJobStore:
    env = os.environ if environ is None else environ
    try:
        return create_job_store_from_env(env)
    except RuntimeError as exc:
        if true_stack_required(env):
            raise
        logger.warning("job_store_fallback reason=%s fallback=memory", exc)
        return InMemoryJobStore()


def _create_audit_trail_for_runtime(environ: Mapping[str, str] | None = None) -> CurationAuditTrail:
    env = os.environ if environ is None else environ
    try:
        return create_audit_trail_from_env(env)
    except RuntimeError as exc:
        if true_stack_required(env):
            raise
        logger.warning("audit_backend_fallback reason=%s fallback=memory", exc)
        return CurationAuditTrail(InMemoryAuditLogsRepository())


@dataclass
class ReviewRuntime:
    """Object graph behind the HTTP surface: one store, one audit trail, three services."""

    settings: ReviewSettings
    job_store: BaseJobStore
    audit_trail: CurationAuditTrail
    engine: ReviewWorkflowEngine
    bulk: BulkOperationCoordinator
    metrics: ReviewMetricsAggregator

    @classmethod
    def build(
        cls,
        *,
        settings: ReviewSettings | None = None,
        job_store: BaseJobStore | None = None,
        audit_trail: CurationAuditTrail | None = None,
    ) -> "ReviewRuntime":
        resolved_settings = settings or ReviewSettings()
        store = job_store if job_store is not None else InMemoryJobStore()
        trail = audit_trail if audit_trail is not None else CurationAuditTrail()
        engine = ReviewWorkflowEngine(job_store=store, audit_trail=trail, settings=resolved_settings)
        return cls(
            settings=resolved_settings,
            job_store=store,
            audit_trail=trail,
            engine=engine,
            bulk=BulkOperationCoordinator(engine=engine, settings=resolved_settings),
            metrics=ReviewMetricsAggregator(job_store=store, settings=resolved_settings),
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ReviewRuntime":
        env = os.environ if environ is None else environ
        return cls.build(
            settings=ReviewSettings.from_env(env),
            job_store=_create_job_store_for_runtime(env),
            audit_trail=_create_audit_trail_for_runtime(env),
        )
