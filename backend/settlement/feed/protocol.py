"""Abstract score feed interface."""

from abc import ABC, abstractmethod

from settlement.logic.types import FeedSnapshot


class ScoreFeed(ABC):
    """
    Source of game snapshots for the poller.

    The abstraction lets poller and pipeline tests script feed behaviour
    without HTTP.
    """

    @abstractmethod
    async def fetch(self, league: str, game_id: str) -> FeedSnapshot:
        """Fetch the current state of a game.

        Raises FeedUnavailableError for transient failures and
        MalformedPayloadError when the response cannot be trusted.
        """
        ...

    async def aclose(self) -> None:  # noqa: B027
        """Release network resources. No-op by default."""
