"""Base classes for LangGraph graphs to share common behavior."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable

from langgraph.graph import StateGraph

from changematch.config import config
from changematch.models.exchange import ExchangeRequest, RequestStatus
from changematch.utils.errors import FirestoreUnavailableError
from changematch.utils.geohash import covering_keys, search_precision
from changematch.utils.logging_config import logger


def _with_state(state: dict, **updates) -> dict:
    """Return a new state dict with updates applied."""

    return {**state, **updates}


class BaseGraph(ABC):
    """Abstract base class for all LangGraph implementations.

    Centralizes logging and provides a consistent compile pattern so graph
    subclasses focus on node logic rather than boilerplate.
    """

    def __init__(self, timeout: int = 30):
        self.timeout = timeout
        self.logger = logger

    @abstractmethod
    def build_graph(self) -> StateGraph:
        """Build and return the StateGraph instance."""

    def _log_node_execution(self, node_name: str, state: dict) -> None:
        """Log node execution start with minimal state context."""

        self.logger.debug("Executing node: %s", node_name)

    def _log_node_error(self, node_name: str, error: Exception) -> None:
        """Log node execution error without leaking user data."""

        self.logger.error("Node %s failed: %s", node_name, str(error))

    def compile(self):
        """Build and compile the graph for execution.

        ``timeout`` bounds every superstep; a node running past it raises
        ``TimeoutError`` out of ``invoke``.
        """

        graph = self.build_graph()
        compiled = graph.compile()
        compiled.step_timeout = self.timeout
        return compiled


class CandidatePoolGraph(BaseGraph):
    """Graph base with the two nodes every request-centric graph starts with:
    load the requester's request, then pull open requests from the spatial
    key buckets around it."""

    def __init__(
        self,
        store,
        timeout: int = 30,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        super().__init__(timeout=timeout)
        self.store = store
        self.clock = clock

    def _radius(self, state: dict) -> float:
        return float(state.get("max_distance_km") or config.MAX_DISTANCE_KM)

    def node_fetch_request(self, state: dict) -> dict:
        """Load the requester's request."""

        try:
            self._log_node_execution("fetch_request", state)
            request = self.store.get_request(state["request_id"])
            if request is None:
                return _with_state(
                    state, error=f"Request not found: {state['request_id']}"
                )
            if request.status != RequestStatus.OPEN:
                return _with_state(
                    state,
                    error=f"Request {request.id} is {request.status.value}, not open",
                )
            return _with_state(state, request=request.to_document())
        except FirestoreUnavailableError as exc:
            self._log_node_error("fetch_request", exc)
            return _with_state(
                state,
                error="Firestore unavailable. Returning empty matches.",
            )

    def node_query_candidates(self, state: dict) -> dict:
        """Query open requests in the request's cell and its neighbors.

        The bucket length is shortened until one cell spans the search
        radius, so the 3x3 block of buckets covers the whole radius.
        """

        if state.get("error"):
            return state

        try:
            self._log_node_execution("query_candidates", state)
            request = ExchangeRequest.model_validate(state["request"])
            precision = search_precision(
                self._radius(state),
                request.location.latitude,
                max_precision=len(request.spatial_key),
            )
            buckets = sorted(covering_keys(request.spatial_key[:precision]))

            seen: set[str] = {request.id}
            candidates: list[dict] = []
            for bucket in buckets:
                for candidate in self.store.get_open_requests_near(
                    bucket, limit=config.MAX_CANDIDATES
                ):
                    if candidate.id in seen:
                        continue
                    seen.add(candidate.id)
                    candidates.append(candidate.to_document())

            self.logger.debug(
                "query_candidates buckets=%s candidates=%s", buckets, len(candidates)
            )
            return _with_state(state, buckets=buckets, candidates=candidates)
        except FirestoreUnavailableError as exc:
            self._log_node_error("query_candidates", exc)
            return _with_state(
                state,
                error="Failed to query candidates. Returning empty matches.",
                candidates=[],
            )
