"""Storage and notification collaborator interfaces.

The matching core never talks to a database directly. It reads candidate
pools and applies compare-and-swap status changes through ``MatchStore``,
and hands one ``MatchEvent`` per successful transition to an
``EventPublisher``. Both Firestore and in-memory backends implement the two
protocols on a single object.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from changematch.config import config
from changematch.models.exchange import (
    ExchangeRequest,
    Match,
    MatchEvent,
    MatchStatus,
    RequestStatus,
)
from changematch.utils.logging_config import logger


class MatchStore(Protocol):
    def get_open_requests_near(
        self, spatial_key_bucket: str, limit: int = 100
    ) -> list[ExchangeRequest]:
        """Open requests whose spatial key starts with the bucket."""

    def get_request(self, request_id: str) -> Optional[ExchangeRequest]:
        ...

    def save_request(self, request: ExchangeRequest) -> None:
        ...

    def get_match(self, match_id: str) -> Optional[Match]:
        ...

    def create_match(self, match: Match) -> None:
        ...

    def list_matches_between(
        self, requester_id: str, counterpart_id: str
    ) -> list[Match]:
        """Matches proposed by ``requester_id`` to ``counterpart_id``."""

    def cas_update_request_status(
        self, request_id: str, expected: RequestStatus, next_status: RequestStatus
    ) -> bool:
        """Set status only if it currently equals ``expected``."""

    def cas_update_match_status(
        self,
        match_id: str,
        expected: MatchStatus,
        next_status: MatchStatus,
        updates: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Set status (and extra fields) only if it currently equals ``expected``."""


class EventPublisher(Protocol):
    def publish_event(self, event: MatchEvent) -> None:
        ...


_store = None


def get_store():
    """Return the process-wide store for the configured backend."""
    global _store

    if _store is not None:
        return _store

    if config.STORAGE_BACKEND == "memory":
        from changematch.tools.memory_store import InMemoryStore

        _store = InMemoryStore()
    else:
        from changematch.tools.firestore_tools import FirestoreStore

        _store = FirestoreStore()

    logger.info("Storage backend initialized: %s", config.STORAGE_BACKEND)
    return _store


def reset_store() -> None:
    """Drop the cached store so the next ``get_store`` builds a fresh one."""
    global _store
    _store = None
