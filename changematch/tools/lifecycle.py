"""Match lifecycle state machine.

    proposed  -> accepted | declined | expired | cancelled
    accepted  -> confirmed | cancelled
    confirmed -> completed | cancelled | no_show

declined, expired, completed, cancelled and no_show are terminal.

Every transition is a single compare-and-swap on the match status against
the store, conditioned on the status that was just read. A lost race is
retried against fresh state a bounded number of times. Each successful
transition publishes exactly one ``MatchEvent``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from changematch.config import config
from changematch.models.exchange import (
    ExchangeRequest,
    Match,
    MatchEvent,
    MatchStatus,
    RequestStatus,
)
from changematch.tools.scoring_tools import is_reciprocal
from changematch.utils.errors import (
    ConflictError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    ReciprocityViolationError,
    UnauthorizedError,
)
from changematch.utils.geo import distance_km
from changematch.utils.logging_config import logger

SYSTEM_ACTOR = "system"

ALLOWED_TRANSITIONS: dict[MatchStatus, frozenset[MatchStatus]] = {
    MatchStatus.PROPOSED: frozenset(
        {
            MatchStatus.ACCEPTED,
            MatchStatus.DECLINED,
            MatchStatus.EXPIRED,
            MatchStatus.CANCELLED,
        }
    ),
    MatchStatus.ACCEPTED: frozenset({MatchStatus.CONFIRMED, MatchStatus.CANCELLED}),
    MatchStatus.CONFIRMED: frozenset(
        {MatchStatus.COMPLETED, MatchStatus.CANCELLED, MatchStatus.NO_SHOW}
    ),
}

MIN_RATING = 1
MAX_RATING = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchLifecycle:
    """Applies lifecycle transitions through a ``MatchStore``.

    Args:
        store: Storage collaborator with compare-and-swap status updates.
        publisher: Receives one event per transition. Defaults to ``store``.
        max_distance_km: Distance bound for ``propose``.
        cooldown_minutes: Minimum gap between proposals from the same
            requester to the same counterpart.
        max_retries: Attempts before a lost race surfaces as ConflictError.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        store,
        publisher=None,
        *,
        max_distance_km: Optional[float] = None,
        cooldown_minutes: Optional[float] = None,
        max_retries: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.publisher = publisher if publisher is not None else store
        self.max_distance_km = (
            config.MAX_DISTANCE_KM if max_distance_km is None else max_distance_km
        )
        self.cooldown = timedelta(
            minutes=config.MATCH_COOLDOWN_MINUTES
            if cooldown_minutes is None
            else cooldown_minutes
        )
        self.max_retries = config.CAS_MAX_RETRIES if max_retries is None else max_retries
        self.clock = clock

    # ------------------------------------------------------------------
    # Proposal
    # ------------------------------------------------------------------

    def propose(self, request_a_id: str, request_b_id: str) -> Match:
        """Pair two reciprocal open requests. The owner of A is the requester."""

        request_a = self._load_request(request_a_id)
        request_b = self._load_request(request_b_id)

        for request in (request_a, request_b):
            if request.status != RequestStatus.OPEN:
                raise ConflictError(f"Request {request.id} is no longer available")

        self._check_reciprocity(request_a, request_b)

        now = self.clock()
        self._check_cooldown(request_a.owner_id, request_b.owner_id, now)

        if not self.store.cas_update_request_status(
            request_a.id, RequestStatus.OPEN, RequestStatus.MATCHED
        ):
            raise ConflictError(f"Request {request_a.id} is no longer available")

        if not self.store.cas_update_request_status(
            request_b.id, RequestStatus.OPEN, RequestStatus.MATCHED
        ):
            self._rollback_request(request_a.id)
            raise ConflictError(f"Request {request_b.id} is no longer available")

        match = Match(
            id=uuid.uuid4().hex,
            requester_id=request_a.owner_id,
            counterpart_id=request_b.owner_id,
            request_a_id=request_a.id,
            request_b_id=request_b.id,
            status=MatchStatus.PROPOSED,
            created_at=now,
        )
        try:
            self.store.create_match(match)
        except Exception:
            self._rollback_request(request_a.id)
            self._rollback_request(request_b.id)
            raise

        logger.info(
            "Match %s proposed: %s -> %s", match.id, request_a.id, request_b.id
        )
        self._emit(match.id, None, MatchStatus.PROPOSED, request_a.owner_id, now)
        return match

    def _check_reciprocity(
        self, request_a: ExchangeRequest, request_b: ExchangeRequest
    ) -> None:
        if not is_reciprocal(request_a, request_b):
            raise ReciprocityViolationError(
                f"Requests {request_a.id} and {request_b.id} are not an exact reciprocal pair"
            )
        dist = distance_km(request_a.location, request_b.location)
        if dist > self.max_distance_km:
            raise ReciprocityViolationError(
                f"Requests are {dist:.2f} km apart, limit is {self.max_distance_km} km"
            )

    def _check_cooldown(self, requester_id: str, counterpart_id: str, now: datetime) -> None:
        if self.cooldown <= timedelta(0):
            return
        cutoff = now - self.cooldown
        for previous in self.store.list_matches_between(requester_id, counterpart_id):
            if previous.created_at > cutoff:
                raise ConflictError(
                    "A request to this user was sent moments ago; try again shortly"
                )

    def _rollback_request(self, request_id: str) -> None:
        if not self.store.cas_update_request_status(
            request_id, RequestStatus.MATCHED, RequestStatus.OPEN
        ):
            logger.warning("Rollback of request %s found it no longer matched", request_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def accept(self, match_id: str, actor_id: str) -> Match:
        """Counterpart accepts; confirmation follows immediately.

        A match left in ``accepted`` by an earlier call that failed between
        the two steps is picked up at the confirmation step.
        """

        def only_counterpart(match: Match) -> None:
            if actor_id != match.counterpart_id:
                raise UnauthorizedError("Only the invited participant can accept")

        if self._load_match(match_id).status != MatchStatus.ACCEPTED:
            self._transition(
                match_id, actor_id, MatchStatus.ACCEPTED, authorize=only_counterpart
            )
        else:
            logger.info("Match %s already accepted; resuming confirmation", match_id)
        return self._transition(
            match_id,
            actor_id,
            MatchStatus.CONFIRMED,
            authorize=only_counterpart,
            updates=lambda match, now: {"confirmed_at": now},
        )

    def decline(self, match_id: str, actor_id: str) -> Match:
        match = self._transition(match_id, actor_id, MatchStatus.DECLINED)
        self._release_requests(match, RequestStatus.OPEN)
        return match

    def complete(self, match_id: str, actor_id: str, rating: float) -> Match:
        """Mark a confirmed exchange done and record the actor's rating.

        Only the participant who completes the match rates it; the other
        participant gets NotFoundError because the match is already closed.
        """

        if (
            isinstance(rating, bool)
            or not isinstance(rating, (int, float))
            or not MIN_RATING <= rating <= MAX_RATING
        ):
            raise InvalidInputError(
                f"rating must be between {MIN_RATING} and {MAX_RATING}, got {rating!r}"
            )

        def completion_fields(match: Match, now: datetime) -> dict:
            started = match.confirmed_at or match.created_at
            return {
                "completed_at": now,
                "closed_at": now,
                "ratings": {**match.ratings, actor_id: rating},
                "duration_minutes": round((now - started).total_seconds() / 60),
            }

        match = self._transition(
            match_id, actor_id, MatchStatus.COMPLETED, updates=completion_fields
        )
        self._release_requests(match, RequestStatus.COMPLETED)
        return match

    def cancel(self, match_id: str, actor_id: str, reason: str = "") -> Match:
        match = self._transition(
            match_id,
            actor_id,
            MatchStatus.CANCELLED,
            updates=lambda match, now: {
                "cancelled_by": actor_id,
                "cancel_reason": reason,
                "closed_at": now,
            },
        )
        self._release_requests(match, RequestStatus.OPEN)
        return match

    def report_no_show(self, match_id: str, actor_id: str, reason: str = "") -> Match:
        """Close a confirmed match as a no-show.

        Requests stay as they are; the reliability penalty for the other
        participant is applied outside this service.
        """

        return self._transition(
            match_id,
            actor_id,
            MatchStatus.NO_SHOW,
            updates=lambda match, now: {
                "no_show_reported_by": actor_id,
                "no_show_reason": reason,
                "closed_at": now,
            },
        )

    def expire(self, match_id: str) -> Match:
        """Expire an unanswered proposal. Called by the external deadline sweep."""

        match = self._transition(
            match_id,
            SYSTEM_ACTOR,
            MatchStatus.EXPIRED,
            authorize=lambda match: None,
            updates=lambda match, now: {"closed_at": now},
        )
        self._release_requests(match, RequestStatus.OPEN)
        return match

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        match_id: str,
        actor_id: str,
        target: MatchStatus,
        *,
        authorize: Optional[Callable[[Match], None]] = None,
        updates: Optional[Callable[[Match, datetime], dict]] = None,
    ) -> Match:
        """Read, check, compare-and-swap; retry on a lost race."""

        for attempt in range(1, self.max_retries + 1):
            match = self._load_match(match_id)
            if match.is_terminal:
                raise NotFoundError(f"Match {match_id} is already {match.status.value}")

            if authorize is None:
                self._require_participant(match, actor_id)
            else:
                authorize(match)

            if target not in ALLOWED_TRANSITIONS.get(match.status, frozenset()):
                raise InvalidTransitionError(
                    f"Cannot move match {match_id} from {match.status.value} to {target.value}"
                )

            now = self.clock()
            fields = updates(match, now) if updates else {}
            if self.store.cas_update_match_status(match.id, match.status, target, fields):
                logger.info(
                    "Match %s: %s -> %s by %s",
                    match.id,
                    match.status.value,
                    target.value,
                    actor_id,
                )
                self._emit(match.id, match.status, target, actor_id, now)
                return match.model_copy(update={**fields, "status": target})

            logger.warning(
                "Lost race on match %s (%s -> %s), attempt %s/%s",
                match_id,
                match.status.value,
                target.value,
                attempt,
                self.max_retries,
            )

        raise ConflictError(f"Match {match_id} is no longer available")

    def _require_participant(self, match: Match, actor_id: str) -> None:
        if actor_id not in match.participants:
            raise UnauthorizedError("Only participants can change this match")

    def _release_requests(self, match: Match, target: RequestStatus) -> None:
        """Move both requests out of ``matched``; leave any that already moved on."""

        for request_id in self._request_ids(match):
            if not self.store.cas_update_request_status(
                request_id, RequestStatus.MATCHED, target
            ):
                logger.info(
                    "Request %s was not matched; left unchanged (match %s)",
                    request_id,
                    match.id,
                )

    @staticmethod
    def _request_ids(match: Match) -> Iterable[str]:
        return (match.request_a_id, match.request_b_id)

    def _load_request(self, request_id: str) -> ExchangeRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")
        return request

    def _load_match(self, match_id: str) -> Match:
        match = self.store.get_match(match_id)
        if match is None:
            raise NotFoundError(f"Match {match_id} not found")
        return match

    def _emit(
        self,
        match_id: str,
        from_state: Optional[MatchStatus],
        to_state: MatchStatus,
        actor_id: str,
        timestamp: datetime,
    ) -> None:
        event = MatchEvent(
            match_id=match_id,
            from_state=from_state,
            to_state=to_state,
            actor_id=actor_id,
            timestamp=timestamp,
        )
        try:
            self.publisher.publish_event(event)
        except Exception as exc:
            # The transition is already committed; delivery is best effort.
            logger.error("Failed to publish event for match %s: %s", match_id, str(exc))
