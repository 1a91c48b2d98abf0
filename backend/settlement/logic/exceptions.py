"""Typed domain exceptions for the settlement engine.

Every failure the engine can name is a subclass of SettlementError. The
poller and SettlementService catch them at the task boundary and convert
them into audit events and pool health; the HTTP layer maps the rest to
status codes.
"""


class SettlementError(Exception):
    """Base exception for settlement engine failures."""


class FeedUnavailableError(SettlementError):
    """The score feed could not be reached (timeout, transport error, non-2xx).

    Transient: the poller retries with bounded exponential backoff.
    """


class MalformedPayloadError(SettlementError):
    """The feed answered but a critical field is missing or has the wrong type.

    The payload is dropped and audited; it is never retried or patched with defaults.
    """


class SettlementConflictError(SettlementError):
    """The pool kept changing underneath the writer after every allowed retry."""

    def __init__(self, pool_id: str, attempts: int) -> None:
        self.pool_id = pool_id
        self.attempts = attempts
        super().__init__(f"pool {pool_id}: settlement conflict persisted after {attempts} attempts")


class ConfigurationError(SettlementError):
    """Pool configuration prevents settlement (missing axis numbers, invalid rules or payouts)."""


class AxisNumbersLockedError(ConfigurationError):
    """Axis numbers cannot be (re)assigned once money or winners are attached to them."""


class PersistenceFailureError(SettlementError):
    """The database rejected a write for a reason other than a version conflict."""


class PoolNotFoundError(SettlementError):
    def __init__(self, pool_id: str) -> None:
        self.pool_id = pool_id
        super().__init__(f"pool {pool_id} not found")


class SnapshotRejectedError(SettlementError):
    """A snapshot would move the game backwards (score, period or status) and was ignored."""
