"""Domain models for exchange requests, matches and lifecycle events.

Models serialize to storage with camelCase keys (``ownerId``,
``offerAmount``) while Python code uses snake_case attributes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Denomination(str, Enum):
    """Physical currency unit being exchanged."""

    BILL = "bill"
    COIN = "coin"

    @classmethod
    def _missing_(cls, value):
        # Older posts were written with the plural form.
        if isinstance(value, str) and value.lower() == "coins":
            return cls.COIN
        return None


class RequestStatus(str, Enum):
    OPEN = "open"
    MATCHED = "matched"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MatchStatus(str, Enum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    EXPIRED = "expired"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


TERMINAL_MATCH_STATUSES = frozenset(
    {
        MatchStatus.DECLINED,
        MatchStatus.EXPIRED,
        MatchStatus.COMPLETED,
        MatchStatus.CANCELLED,
        MatchStatus.NO_SHOW,
    }
)


class _StorageModel(BaseModel):
    """Base model that reads and writes camelCase document fields."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_document(self) -> dict:
        """Serialize to a JSON-friendly dict keyed by storage field names."""

        return self.model_dump(mode="json", by_alias=True)


class Coordinate(_StorageModel):
    """Immutable latitude/longitude pair in degrees."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class TrustSignals(_StorageModel):
    """Counterpart reputation used only as ranking input."""

    verified: bool = False
    rating: float = Field(0.0, ge=0.0, le=5.0)
    completed_count: int = Field(0, ge=0)


class ExchangeRequest(_StorageModel):
    """An open "give X, need Y" post."""

    id: str
    owner_id: str
    offer_amount: float = Field(..., gt=0)
    offer_denomination: Denomination
    need_amount: float = Field(..., gt=0)
    need_denomination: Denomination
    location: Coordinate
    spatial_key: str
    status: RequestStatus = RequestStatus.OPEN
    created_at: datetime
    trust_signals: TrustSignals = Field(default_factory=TrustSignals)
    notes: Optional[str] = None


class CandidateScore(_StorageModel):
    """Ranking result for one candidate. Recomputed per query, never stored."""

    request_id: str
    distance_km: float
    score: float


class Match(_StorageModel):
    """A proposed pairing of two reciprocal requests."""

    id: str
    requester_id: str
    counterpart_id: str
    request_a_id: str
    request_b_id: str
    status: MatchStatus = MatchStatus.PROPOSED
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    # Completing participant id -> star rating. Completion is terminal, so
    # the map holds one entry: the rating from whoever completed the match.
    ratings: dict[str, float] = Field(default_factory=dict)
    duration_minutes: Optional[int] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    no_show_reported_by: Optional[str] = None
    no_show_reason: Optional[str] = None

    @property
    def participants(self) -> tuple[str, str]:
        return (self.requester_id, self.counterpart_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_MATCH_STATUSES


class MatchEvent(_StorageModel):
    """Record emitted once per successful lifecycle transition."""

    match_id: str
    from_state: Optional[MatchStatus] = None
    to_state: MatchStatus
    actor_id: str
    timestamp: datetime
