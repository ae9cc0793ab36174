"""
Unit tests for the match lifecycle state machine.

Runs against the in-memory store with a fixed clock so every transition,
request release, and published event can be asserted exactly.
"""

import pytest

from conftest import MANILA, make_request, offset_km
from changematch.models.exchange import MatchStatus, RequestStatus
from changematch.tools.lifecycle import SYSTEM_ACTOR, MatchLifecycle
from changematch.tools.memory_store import InMemoryStore
from changematch.utils.errors import (
    ConflictError,
    FirestoreUnavailableError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    ReciprocityViolationError,
    UnauthorizedError,
)


@pytest.fixture
def lifecycle(store, clock):
    return MatchLifecycle(store, clock=clock, max_distance_km=5.0, cooldown_minutes=2)


@pytest.fixture
def pair(store):
    """Alice has a 1000 bill and needs coins; Bob 300 m away has the mirror."""
    a = make_request("alice", offer=(1000, "bill"), need=(1000, "coin"))
    b = make_request(
        "bob",
        offer=(1000, "coin"),
        need=(1000, "bill"),
        at=offset_km(*MANILA, north_km=0.3),
    )
    store.save_request(a)
    store.save_request(b)
    return a, b


@pytest.fixture
def proposed(lifecycle, pair):
    a, b = pair
    return lifecycle.propose(a.id, b.id)


@pytest.fixture
def confirmed(lifecycle, proposed):
    return lifecycle.accept(proposed.id, "bob")


def _status(store, request_id):
    return store.get_request(request_id).status


class TestPropose:
    def test_creates_proposed_match_and_locks_requests(self, lifecycle, store, pair, clock):
        a, b = pair
        match = lifecycle.propose(a.id, b.id)

        assert match.status == MatchStatus.PROPOSED
        assert match.requester_id == "alice"
        assert match.counterpart_id == "bob"
        assert match.created_at == clock.now
        assert store.get_match(match.id) == match
        assert _status(store, a.id) == RequestStatus.MATCHED
        assert _status(store, b.id) == RequestStatus.MATCHED

    def test_emits_creation_event(self, lifecycle, store, pair):
        a, b = pair
        match = lifecycle.propose(a.id, b.id)

        assert len(store.events) == 1
        event = store.events[0]
        assert event.match_id == match.id
        assert event.from_state is None
        assert event.to_state == MatchStatus.PROPOSED
        assert event.actor_id == "alice"

    def test_matched_request_conflicts(self, lifecycle, store, pair):
        a, b = pair
        lifecycle.propose(a.id, b.id)
        carol = make_request("carol", offer=(1000, "coin"), need=(1000, "bill"))
        store.save_request(carol)

        with pytest.raises(ConflictError):
            lifecycle.propose(carol.id, a.id)
        assert _status(store, carol.id) == RequestStatus.OPEN

    def test_not_reciprocal(self, lifecycle, store):
        a = make_request("alice", offer=(1000, "bill"), need=(1000, "coin"))
        b = make_request("bob", offer=(500, "coin"), need=(1000, "bill"))
        store.save_request(a)
        store.save_request(b)

        with pytest.raises(ReciprocityViolationError):
            lifecycle.propose(a.id, b.id)
        assert _status(store, a.id) == RequestStatus.OPEN
        assert store.events == []

    def test_same_owner_rejected(self, lifecycle, store):
        a = make_request("alice", offer=(1000, "bill"), need=(1000, "coin"))
        b = make_request("alice", offer=(1000, "coin"), need=(1000, "bill"))
        store.save_request(a)
        store.save_request(b)

        with pytest.raises(ReciprocityViolationError):
            lifecycle.propose(a.id, b.id)

    def test_too_far_rejected(self, lifecycle, store):
        a = make_request("alice", offer=(1000, "bill"), need=(1000, "coin"))
        b = make_request(
            "bob", offer=(1000, "coin"), need=(1000, "bill"), at=offset_km(*MANILA, east_km=6)
        )
        store.save_request(a)
        store.save_request(b)

        with pytest.raises(ReciprocityViolationError):
            lifecycle.propose(a.id, b.id)

    def test_missing_request(self, lifecycle, pair):
        a, _ = pair
        with pytest.raises(NotFoundError):
            lifecycle.propose(a.id, "nope")

    def test_cooldown_between_same_pair(self, lifecycle, store, pair, clock):
        a, b = pair
        first = lifecycle.propose(a.id, b.id)
        lifecycle.decline(first.id, "bob")

        clock.advance(minutes=1)
        with pytest.raises(ConflictError):
            lifecycle.propose(a.id, b.id)
        assert _status(store, a.id) == RequestStatus.OPEN

        clock.advance(minutes=2)
        second = lifecycle.propose(a.id, b.id)
        assert second.status == MatchStatus.PROPOSED

    def test_second_request_lost_race_rolls_back_first(self, store, pair, clock):
        a, b = pair

        class RacingStore(InMemoryStore):
            def cas_update_request_status(self, request_id, expected, next_status):
                if request_id == b.id and next_status == RequestStatus.MATCHED:
                    return False
                return super().cas_update_request_status(request_id, expected, next_status)

        racing = RacingStore()
        racing.save_request(a)
        racing.save_request(b)
        lifecycle = MatchLifecycle(racing, clock=clock, max_distance_km=5.0)

        with pytest.raises(ConflictError):
            lifecycle.propose(a.id, b.id)
        assert _status(racing, a.id) == RequestStatus.OPEN
        assert racing.events == []

    def test_first_request_lost_race_touches_nothing(self, pair, clock):
        a, b = pair

        class RacingStore(InMemoryStore):
            def cas_update_request_status(self, request_id, expected, next_status):
                if request_id == a.id and next_status == RequestStatus.MATCHED:
                    return False
                return super().cas_update_request_status(request_id, expected, next_status)

        racing = RacingStore()
        racing.save_request(a)
        racing.save_request(b)
        lifecycle = MatchLifecycle(racing, clock=clock, max_distance_km=5.0)

        with pytest.raises(ConflictError):
            lifecycle.propose(a.id, b.id)
        assert _status(racing, a.id) == RequestStatus.OPEN
        assert _status(racing, b.id) == RequestStatus.OPEN
        assert racing.list_matches_between("alice", "bob") == []
        assert racing.events == []

    def test_back_to_back_proposals_for_same_request(self, lifecycle, store, pair):
        """Two requesters target Bob's post; only the first proposal lands."""
        a, b = pair
        carol = make_request("carol", offer=(1000, "bill"), need=(1000, "coin"))
        store.save_request(carol)

        first = lifecycle.propose(a.id, b.id)
        with pytest.raises(ConflictError):
            lifecycle.propose(carol.id, b.id)

        assert store.get_match(first.id).status == MatchStatus.PROPOSED
        assert _status(store, b.id) == RequestStatus.MATCHED
        assert _status(store, carol.id) == RequestStatus.OPEN
        assert store.list_matches_between("carol", "bob") == []

    def test_stale_read_loses_at_compare_and_swap(self, pair, clock):
        """Both proposals read Bob's post as open; the CAS lets only one win."""
        a, b = pair
        carol = make_request("carol", offer=(1000, "bill"), need=(1000, "coin"))

        class StaleReadStore(InMemoryStore):
            def get_request(self, request_id):
                request = super().get_request(request_id)
                if request is not None:
                    request = request.model_copy(update={"status": RequestStatus.OPEN})
                return request

        racing = StaleReadStore()
        for request in (a, b, carol):
            racing.save_request(request)
        lifecycle = MatchLifecycle(racing, clock=clock, max_distance_km=5.0)

        lifecycle.propose(a.id, b.id)
        with pytest.raises(ConflictError):
            lifecycle.propose(carol.id, b.id)

        stored = InMemoryStore.get_request
        assert stored(racing, carol.id).status == RequestStatus.OPEN
        assert stored(racing, b.id).status == RequestStatus.MATCHED
        assert len(racing.events) == 1


class TestAccept:
    def test_counterpart_accept_confirms(self, lifecycle, store, proposed, clock):
        clock.advance(minutes=3)
        match = lifecycle.accept(proposed.id, "bob")

        assert match.status == MatchStatus.CONFIRMED
        assert match.confirmed_at == clock.now
        assert store.get_match(proposed.id).status == MatchStatus.CONFIRMED
        assert [(e.from_state, e.to_state) for e in store.events[1:]] == [
            (MatchStatus.PROPOSED, MatchStatus.ACCEPTED),
            (MatchStatus.ACCEPTED, MatchStatus.CONFIRMED),
        ]

    def test_requester_cannot_accept(self, lifecycle, store, proposed):
        with pytest.raises(UnauthorizedError):
            lifecycle.accept(proposed.id, "alice")
        assert store.get_match(proposed.id).status == MatchStatus.PROPOSED

    def test_stranger_cannot_accept(self, lifecycle, proposed):
        with pytest.raises(UnauthorizedError):
            lifecycle.accept(proposed.id, "mallory")

    def test_accept_twice_is_invalid(self, lifecycle, confirmed):
        with pytest.raises(InvalidTransitionError):
            lifecycle.accept(confirmed.id, "bob")

    def test_retry_after_failed_confirmation_completes_accept(self, pair, clock):
        """Storage fails between the two steps; the next accept confirms."""
        a, b = pair

        class FailingOnceStore(InMemoryStore):
            failed = False

            def cas_update_match_status(self, match_id, expected, next_status, updates=None):
                if next_status == MatchStatus.CONFIRMED and not self.failed:
                    self.failed = True
                    raise FirestoreUnavailableError("deadline exceeded")
                return super().cas_update_match_status(match_id, expected, next_status, updates)

        flaky = FailingOnceStore()
        flaky.save_request(a)
        flaky.save_request(b)
        lifecycle = MatchLifecycle(flaky, clock=clock, max_distance_km=5.0)
        match = lifecycle.propose(a.id, b.id)

        with pytest.raises(FirestoreUnavailableError):
            lifecycle.accept(match.id, "bob")
        assert flaky.get_match(match.id).status == MatchStatus.ACCEPTED

        confirmed = lifecycle.accept(match.id, "bob")
        assert confirmed.status == MatchStatus.CONFIRMED
        assert confirmed.confirmed_at == clock.now
        assert [(e.from_state, e.to_state) for e in flaky.events[1:]] == [
            (MatchStatus.PROPOSED, MatchStatus.ACCEPTED),
            (MatchStatus.ACCEPTED, MatchStatus.CONFIRMED),
        ]

    def test_only_counterpart_can_finish_a_half_accepted_match(self, lifecycle, store, proposed):
        store.cas_update_match_status(proposed.id, MatchStatus.PROPOSED, MatchStatus.ACCEPTED)

        with pytest.raises(UnauthorizedError):
            lifecycle.accept(proposed.id, "alice")
        assert store.get_match(proposed.id).status == MatchStatus.ACCEPTED


class TestDecline:
    def test_releases_both_requests(self, lifecycle, store, pair, proposed):
        a, b = pair
        match = lifecycle.decline(proposed.id, "bob")

        assert match.status == MatchStatus.DECLINED
        assert _status(store, a.id) == RequestStatus.OPEN
        assert _status(store, b.id) == RequestStatus.OPEN

    def test_terminal_match_is_not_found(self, lifecycle, proposed):
        lifecycle.decline(proposed.id, "bob")
        with pytest.raises(NotFoundError):
            lifecycle.decline(proposed.id, "bob")

    def test_decline_after_confirmation_is_invalid(self, lifecycle, confirmed):
        with pytest.raises(InvalidTransitionError):
            lifecycle.decline(confirmed.id, "alice")

    def test_missing_match(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.decline("missing", "bob")


class TestComplete:
    def test_complete_confirmed_match(self, lifecycle, store, pair, confirmed, clock):
        a, b = pair
        clock.advance(minutes=30)
        match = lifecycle.complete(confirmed.id, "alice", 5)

        assert match.status == MatchStatus.COMPLETED
        assert match.completed_at == clock.now
        assert match.closed_at == clock.now
        assert match.ratings == {"alice": 5}
        assert match.duration_minutes == 30
        assert _status(store, a.id) == RequestStatus.COMPLETED
        assert _status(store, b.id) == RequestStatus.COMPLETED

        stored = store.get_match(confirmed.id)
        assert stored.status == MatchStatus.COMPLETED
        assert stored.ratings == {"alice": 5}

    def test_second_participant_cannot_rate_after_completion(self, lifecycle, store, confirmed):
        lifecycle.complete(confirmed.id, "alice", 5)

        with pytest.raises(NotFoundError):
            lifecycle.complete(confirmed.id, "bob", 3)
        assert store.get_match(confirmed.id).ratings == {"alice": 5}

    def test_complete_outside_confirmed_fails(self, lifecycle, store, proposed):
        with pytest.raises(InvalidTransitionError):
            lifecycle.complete(proposed.id, "alice", 4)
        assert store.get_match(proposed.id).status == MatchStatus.PROPOSED

    @pytest.mark.parametrize("rating", [0, 6, -1, 5.5, True, "5", None])
    def test_invalid_rating_mutates_nothing(self, lifecycle, store, confirmed, rating):
        events_before = len(store.events)
        with pytest.raises(InvalidInputError):
            lifecycle.complete(confirmed.id, "alice", rating)
        assert store.get_match(confirmed.id).status == MatchStatus.CONFIRMED
        assert len(store.events) == events_before

    def test_fractional_rating_accepted(self, lifecycle, confirmed):
        assert lifecycle.complete(confirmed.id, "bob", 4.5).ratings == {"bob": 4.5}

    def test_stranger_cannot_complete(self, lifecycle, confirmed):
        with pytest.raises(UnauthorizedError):
            lifecycle.complete(confirmed.id, "mallory", 5)


class TestCancelAndNoShow:
    def test_cancel_records_reason_and_releases(self, lifecycle, store, pair, confirmed, clock):
        a, b = pair
        match = lifecycle.cancel(confirmed.id, "alice", reason="Running late")

        assert match.status == MatchStatus.CANCELLED
        assert match.cancelled_by == "alice"
        assert match.cancel_reason == "Running late"
        assert match.closed_at == clock.now
        assert _status(store, a.id) == RequestStatus.OPEN
        assert _status(store, b.id) == RequestStatus.OPEN

    def test_cancel_proposed(self, lifecycle, proposed):
        assert lifecycle.cancel(proposed.id, "alice").status == MatchStatus.CANCELLED

    def test_no_show_only_from_confirmed(self, lifecycle, proposed):
        with pytest.raises(InvalidTransitionError):
            lifecycle.report_no_show(proposed.id, "alice")

    def test_no_show_keeps_requests_matched(self, lifecycle, store, pair, confirmed):
        a, b = pair
        match = lifecycle.report_no_show(confirmed.id, "alice", reason="Never arrived")

        assert match.status == MatchStatus.NO_SHOW
        assert match.no_show_reported_by == "alice"
        assert match.no_show_reason == "Never arrived"
        assert _status(store, a.id) == RequestStatus.MATCHED
        assert _status(store, b.id) == RequestStatus.MATCHED


class TestExpire:
    def test_system_expires_proposal(self, lifecycle, store, pair, proposed):
        a, _ = pair
        match = lifecycle.expire(proposed.id)

        assert match.status == MatchStatus.EXPIRED
        assert store.events[-1].actor_id == SYSTEM_ACTOR
        assert _status(store, a.id) == RequestStatus.OPEN

    def test_confirmed_match_cannot_expire(self, lifecycle, confirmed):
        with pytest.raises(InvalidTransitionError):
            lifecycle.expire(confirmed.id)


class TestConcurrency:
    def test_lost_race_is_retried(self, store, pair, clock):
        """A competing writer moves the match first; the retry sees fresh state."""
        a, b = pair

        class InterferingStore(InMemoryStore):
            interfered = False

            def cas_update_match_status(self, match_id, expected, next_status, updates=None):
                if not self.interfered and next_status == MatchStatus.DECLINED:
                    self.interfered = True
                    return False
                return super().cas_update_match_status(match_id, expected, next_status, updates)

        racing = InterferingStore()
        racing.save_request(a)
        racing.save_request(b)
        lifecycle = MatchLifecycle(racing, clock=clock, max_distance_km=5.0, max_retries=3)
        match = lifecycle.propose(a.id, b.id)

        declined = lifecycle.decline(match.id, "bob")
        assert declined.status == MatchStatus.DECLINED
        assert racing.interfered

    def test_retries_are_bounded(self, store, pair, clock):
        a, b = pair

        class AlwaysLosingStore(InMemoryStore):
            attempts = 0

            def cas_update_match_status(self, match_id, expected, next_status, updates=None):
                self.attempts += 1
                return False

        racing = AlwaysLosingStore()
        racing.save_request(a)
        racing.save_request(b)
        lifecycle = MatchLifecycle(racing, clock=clock, max_distance_km=5.0, max_retries=3)
        match = lifecycle.propose(a.id, b.id)

        with pytest.raises(ConflictError):
            lifecycle.decline(match.id, "bob")
        assert racing.attempts == 3
        assert racing.get_match(match.id).status == MatchStatus.PROPOSED
        assert _status(racing, a.id) == RequestStatus.MATCHED

    def test_competing_decline_after_accept(self, lifecycle, store, proposed):
        """Whoever commits first wins; the loser sees an invalid move."""
        lifecycle.accept(proposed.id, "bob")
        with pytest.raises(ConflictError):
            lifecycle.decline(proposed.id, "bob")


class TestEvents:
    def test_one_event_per_transition(self, lifecycle, store, confirmed):
        lifecycle.complete(confirmed.id, "alice", 5)
        assert [e.to_state for e in store.events] == [
            MatchStatus.PROPOSED,
            MatchStatus.ACCEPTED,
            MatchStatus.CONFIRMED,
            MatchStatus.COMPLETED,
        ]

    def test_publisher_failure_does_not_undo_transition(self, store, pair, clock):
        a, b = pair

        class BrokenPublisher:
            def publish_event(self, event):
                raise RuntimeError("broker down")

        lifecycle = MatchLifecycle(store, BrokenPublisher(), clock=clock, max_distance_km=5.0)
        match = lifecycle.propose(a.id, b.id)
        assert store.get_match(match.id).status == MatchStatus.PROPOSED
        assert store.events == []
