"""Reciprocal matching graph: spatial lookup, exact-mirror filter, ranking."""

from __future__ import annotations

from langgraph.graph import StateGraph

from changematch.config import config
from changematch.graphs.base_graph import CandidatePoolGraph, _with_state
from changematch.models.exchange import ExchangeRequest
from changematch.state import MatchingState
from changematch.tools.scoring_tools import ScoringWeights, filter_reciprocal, rank
from changematch.tools.storage import get_store


class MatchingGraph(CandidatePoolGraph):
    """Multi-step matching graph using deterministic reciprocity and scoring."""

    def build_graph(self) -> StateGraph:
        graph = StateGraph(MatchingState)

        graph.add_node("fetch_request", self.node_fetch_request)
        graph.add_node("query_candidates", self.node_query_candidates)
        graph.add_node("filter_candidates", self.node_filter_candidates)
        graph.add_node("rank_candidates", self.node_rank_candidates)
        graph.add_node("finalize_response", self.node_finalize_response)

        graph.set_entry_point("fetch_request")
        graph.add_edge("fetch_request", "query_candidates")
        graph.add_edge("query_candidates", "filter_candidates")
        graph.add_edge("filter_candidates", "rank_candidates")
        graph.add_edge("rank_candidates", "finalize_response")
        graph.set_finish_point("finalize_response")

        return graph

    def node_filter_candidates(self, state: MatchingState) -> MatchingState:
        """Keep exact reciprocal candidates within the radius."""

        if state.get("error"):
            return state

        try:
            self._log_node_execution("filter_candidates", state)
            request = ExchangeRequest.model_validate(state["request"])
            candidates = [
                ExchangeRequest.model_validate(doc)
                for doc in state.get("candidates", [])
            ]
            filtered = filter_reciprocal(request, candidates, self._radius(state))
            return _with_state(
                state, filtered_candidates=[c.to_document() for c in filtered]
            )
        except Exception as exc:
            self._log_node_error("filter_candidates", exc)
            return _with_state(
                state,
                error="Filtering failed. Returning empty matches.",
                filtered_candidates=[],
            )

    def node_rank_candidates(self, state: MatchingState) -> MatchingState:
        """Score filtered candidates and keep the best ones."""

        if state.get("error"):
            return state

        try:
            self._log_node_execution("rank_candidates", state)
            request = ExchangeRequest.model_validate(state["request"])
            candidates = [
                ExchangeRequest.model_validate(doc)
                for doc in state.get("filtered_candidates", [])
            ]
            limit = int(state.get("limit") or config.TOP_MATCHES)
            ranked = rank(
                request,
                candidates,
                now=self.clock(),
                weights=ScoringWeights.from_config(),
            )
            return _with_state(
                state, ranked=[score.to_document() for score in ranked[:limit]]
            )
        except Exception as exc:
            self._log_node_error("rank_candidates", exc)
            return _with_state(
                state,
                error="Ranking failed. Returning empty matches.",
                ranked=[],
            )

    def node_finalize_response(self, state: MatchingState) -> MatchingState:
        """Join scores back to candidate details and build metadata."""

        if state.get("error"):
            return _with_state(
                state,
                final_matches=[],
                response_metadata={
                    "success": False,
                    "error": state.get("error"),
                    "total_candidates": len(state.get("candidates", [])),
                    "filtered_count": 0,
                },
            )

        by_id = {doc["id"]: doc for doc in state.get("filtered_candidates", [])}
        final_matches: list[dict] = []
        for scored in state.get("ranked", []):
            candidate = by_id.get(scored["requestId"], {})
            final_matches.append(
                {
                    "requestId": scored["requestId"],
                    "ownerId": candidate.get("ownerId"),
                    "offerAmount": candidate.get("offerAmount"),
                    "offerDenomination": candidate.get("offerDenomination"),
                    "needAmount": candidate.get("needAmount"),
                    "needDenomination": candidate.get("needDenomination"),
                    "location": candidate.get("location"),
                    "trustSignals": candidate.get("trustSignals"),
                    "createdAt": candidate.get("createdAt"),
                    "distanceKm": round(scored["distanceKm"], 3),
                    "score": round(scored["score"], 2),
                }
            )

        metadata = {
            "success": True,
            "error": None,
            "buckets": state.get("buckets", []),
            "total_candidates": len(state.get("candidates", [])),
            "filtered_count": len(state.get("filtered_candidates", [])),
        }

        return _with_state(
            state, final_matches=final_matches, response_metadata=metadata
        )


def create_matching_graph(store=None):
    """Build and compile the matching graph for server usage."""

    graph_builder = MatchingGraph(
        store if store is not None else get_store(), timeout=config.GRAPH_TIMEOUT
    )
    return graph_builder.compile()
