"""Shared LangGraph state definitions.

All graph states are TypedDicts so state is explicit, serializable, and
consistent across graph nodes.
"""

from __future__ import annotations

from typing import TypedDict

JsonDict = dict[str, object]
JsonList = list[JsonDict]


class MatchingState(TypedDict, total=False):
    """State for the reciprocal matching graph.

    Fields are optional at runtime because nodes populate them progressively.
    Requests are stored as JSON documents (camelCase keys) so every field
    stays serializable for LangGraph persistence/debugging.
    """

    # The requester's own open request.
    request_id: str
    # Request document loaded from storage.
    request: JsonDict
    # Search radius; falls back to config.MAX_DISTANCE_KM.
    max_distance_km: float
    # How many ranked candidates to return; falls back to config.TOP_MATCHES.
    limit: int
    # Spatial key buckets scanned for candidates.
    buckets: list[str]
    # Open requests found in the buckets.
    candidates: JsonList
    # Exact reciprocal candidates within range.
    filtered_candidates: JsonList
    # CandidateScore documents, best first.
    ranked: JsonList
    # Final matches returned to the caller.
    final_matches: JsonList
    # Error string if any node fails.
    error: str
    # Response metadata for observability.
    response_metadata: JsonDict


class NearbyState(TypedDict, total=False):
    """State for the nearby listing graph (dashboard browse)."""

    request_id: str
    request: JsonDict
    max_distance_km: float
    limit: int
    buckets: list[str]
    candidates: JsonList
    # Other users' open requests in range, nearest first.
    nearby: JsonList
    error: str
    response_metadata: JsonDict
