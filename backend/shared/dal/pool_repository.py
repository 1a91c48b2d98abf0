"""Abstract interface for squares pool persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shared.dal.models import AuditEvent, Pool, PoolCommit, PoolHealth, Winner


class PoolRepository(ABC):
    """Abstract interface for pool persistence.

    The pool aggregate is versioned. Winners, settlements and audit events are
    append-only and only ever written through commit() or append_audit().
    """

    @abstractmethod
    async def create_pool(self, pool: Pool) -> None: ...

    @abstractmethod
    async def get_pool(self, pool_id: str) -> Pool | None: ...

    @abstractmethod
    async def delete_pool(self, pool_id: str) -> None: ...

    @abstractmethod
    async def list_active_pools(self) -> list[Pool]:
        """Locked pools with a feed game id that are not finished or suspended."""

    @abstractmethod
    async def commit(self, plan: PoolCommit) -> bool:
        """Apply a commit atomically.

        Returns False, with nothing written, when the stored version differs
        from ``plan.pool.version`` or a settlement key already exists.
        """

    @abstractmethod
    async def get_settled_keys(self, pool_id: str) -> set[tuple[str, int, int]]: ...

    @abstractmethod
    async def get_winners(self, pool_id: str) -> list[Winner]: ...

    @abstractmethod
    async def get_audit_events(self, pool_id: str, limit: int = 100) -> list[AuditEvent]: ...

    @abstractmethod
    async def append_audit(self, pool_id: str, event: AuditEvent) -> None: ...

    @abstractmethod
    async def get_health(self, pool_id: str) -> PoolHealth | None: ...

    @abstractmethod
    async def set_health(self, pool_id: str, health: PoolHealth) -> None: ...
