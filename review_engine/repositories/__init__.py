from review_engine.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository

__all__ = [
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
]
