"""Data access layer: repository interfaces and shared persistence models."""

from shared.dal.models import AuditEvent, Pool, PoolCommit, PoolHealth, Settlement, Winner
from shared.dal.pool_repository import PoolRepository

__all__ = [
    "AuditEvent",
    "Pool",
    "PoolCommit",
    "PoolHealth",
    "PoolRepository",
    "Settlement",
    "Winner",
]
