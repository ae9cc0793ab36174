"""In-process store for local runs and tests.

Every read returns a copy and every status change happens under one lock,
which gives the same compare-and-swap guarantees as the Firestore
transactions.
"""

from __future__ import annotations

import threading
from typing import Any, Optional

from changematch.models.exchange import (
    ExchangeRequest,
    Match,
    MatchEvent,
    MatchStatus,
    RequestStatus,
)
from changematch.utils.logging_config import logger


class InMemoryStore:
    """Dict-backed ``MatchStore`` and ``EventPublisher``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests: dict[str, ExchangeRequest] = {}
        self._matches: dict[str, Match] = {}
        self.events: list[MatchEvent] = []

    def get_open_requests_near(
        self, spatial_key_bucket: str, limit: int = 100
    ) -> list[ExchangeRequest]:
        bucket = spatial_key_bucket.lower()
        with self._lock:
            found = [
                request.model_copy(deep=True)
                for request in self._requests.values()
                if request.status == RequestStatus.OPEN
                and request.spatial_key.startswith(bucket)
            ]
        return found[:limit]

    def get_request(self, request_id: str) -> Optional[ExchangeRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            return request.model_copy(deep=True) if request else None

    def save_request(self, request: ExchangeRequest) -> None:
        with self._lock:
            self._requests[request.id] = request.model_copy(deep=True)

    def get_match(self, match_id: str) -> Optional[Match]:
        with self._lock:
            match = self._matches.get(match_id)
            return match.model_copy(deep=True) if match else None

    def create_match(self, match: Match) -> None:
        with self._lock:
            self._matches[match.id] = match.model_copy(deep=True)

    def list_matches_between(
        self, requester_id: str, counterpart_id: str
    ) -> list[Match]:
        with self._lock:
            return [
                match.model_copy(deep=True)
                for match in self._matches.values()
                if match.requester_id == requester_id
                and match.counterpart_id == counterpart_id
            ]

    def cas_update_request_status(
        self, request_id: str, expected: RequestStatus, next_status: RequestStatus
    ) -> bool:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status != expected:
                return False
            self._requests[request_id] = request.model_copy(
                update={"status": next_status}
            )
            return True

    def cas_update_match_status(
        self,
        match_id: str,
        expected: MatchStatus,
        next_status: MatchStatus,
        updates: Optional[dict[str, Any]] = None,
    ) -> bool:
        with self._lock:
            match = self._matches.get(match_id)
            if match is None or match.status != expected:
                return False
            self._matches[match_id] = match.model_copy(
                update={**(updates or {}), "status": next_status}
            )
            return True

    def publish_event(self, event: MatchEvent) -> None:
        with self._lock:
            self.events.append(event)
        logger.debug(
            "Match event %s: %s -> %s",
            event.match_id,
            event.from_state.value if event.from_state else None,
            event.to_state.value,
        )
