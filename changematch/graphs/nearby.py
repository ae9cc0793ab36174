"""Nearby listing graph: other users' open requests around the requester,
nearest first, regardless of reciprocity."""

from __future__ import annotations

from langgraph.graph import StateGraph

from changematch.config import config
from changematch.graphs.base_graph import CandidatePoolGraph, _with_state
from changematch.models.exchange import ExchangeRequest
from changematch.state import NearbyState
from changematch.tools.storage import get_store
from changematch.utils.geo import distance_km


class NearbyGraph(CandidatePoolGraph):
    def build_graph(self) -> StateGraph:
        graph = StateGraph(NearbyState)

        graph.add_node("fetch_request", self.node_fetch_request)
        graph.add_node("query_candidates", self.node_query_candidates)
        graph.add_node("finalize_response", self.node_finalize_response)

        graph.set_entry_point("fetch_request")
        graph.add_edge("fetch_request", "query_candidates")
        graph.add_edge("query_candidates", "finalize_response")
        graph.set_finish_point("finalize_response")
        return graph

    def node_finalize_response(self, state: NearbyState) -> NearbyState:
        """Measure, cut at the radius and sort by distance."""

        if state.get("error"):
            return _with_state(
                state,
                nearby=[],
                response_metadata={"success": False, "error": state.get("error")},
            )

        request = ExchangeRequest.model_validate(state["request"])
        radius = self._radius(state)
        limit = int(state.get("limit") or config.MAX_CANDIDATES)

        nearby: list[dict] = []
        for doc in state.get("candidates", []):
            candidate = ExchangeRequest.model_validate(doc)
            if candidate.owner_id == request.owner_id:
                continue
            dist = distance_km(request.location, candidate.location)
            if dist > radius:
                continue
            nearby.append({**doc, "distanceKm": round(dist, 3)})

        nearby.sort(key=lambda item: item["distanceKm"])

        return _with_state(
            state,
            nearby=nearby[:limit],
            response_metadata={
                "success": True,
                "error": None,
                "total_candidates": len(state.get("candidates", [])),
                "in_range": len(nearby),
            },
        )


def create_nearby_graph(store=None):
    """Build and compile the nearby graph for server usage."""

    graph_builder = NearbyGraph(
        store if store is not None else get_store(), timeout=config.GRAPH_TIMEOUT
    )
    return graph_builder.compile()
