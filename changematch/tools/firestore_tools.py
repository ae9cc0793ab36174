"""Firestore-backed storage collaborator.

These helpers centralize document mapping, error handling, and logging so the
lifecycle state machine and graph nodes stay focused on matching logic.
Status changes run inside Firestore transactions, which gives the
compare-and-swap semantics the lifecycle relies on.
"""

from __future__ import annotations

import os
from typing import Any, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from pydantic import ValidationError
from pydantic.alias_generators import to_camel
from pydantic_core import to_jsonable_python

from changematch.models.exchange import (
    ExchangeRequest,
    Match,
    MatchEvent,
    MatchStatus,
    RequestStatus,
)
from changematch.utils.errors import FirestoreUnavailableError
from changematch.utils.logging_config import logger

REQUESTS_COLLECTION = "requests"
MATCHES_COLLECTION = "matches"
EVENTS_COLLECTION = "matchEvents"

# Upper bound for prefix range queries on spatialKey.
_PREFIX_END = "\uf8ff"

_db: firestore.Client | None = None


def get_db() -> firestore.Client:
    """Get a Firestore client, initializing Firebase lazily."""
    global _db

    if _db is not None:
        return _db

    try:
        if not firebase_admin._apps:
            cred_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
            if not cred_path:
                raise RuntimeError(
                    "GOOGLE_APPLICATION_CREDENTIALS is not set"
                )

            cred = credentials.Certificate(cred_path)
            firebase_admin.initialize_app(cred)

        _db = firestore.client()
        return _db

    except Exception as exc:
        logger.error("Failed to initialize Firestore: %s", exc)
        raise FirestoreUnavailableError(str(exc)) from exc


def _request_from_doc(doc) -> ExchangeRequest | None:
    """Parse a request document, skipping malformed ones."""

    data = doc.to_dict() or {}
    data.setdefault("id", doc.id)
    try:
        return ExchangeRequest.model_validate(data)
    except ValidationError as exc:
        logger.warning("Skipping malformed request %s: %s", doc.id, exc)
        return None


def _match_from_doc(doc) -> Match | None:
    data = doc.to_dict() or {}
    data.setdefault("id", doc.id)
    try:
        return Match.model_validate(data)
    except ValidationError as exc:
        logger.warning("Skipping malformed match %s: %s", doc.id, exc)
        return None


def _to_document_fields(updates: dict[str, Any]) -> dict[str, Any]:
    """Convert snake_case model updates into storage field names and values."""

    return {to_camel(key): to_jsonable_python(value) for key, value in updates.items()}


def _cas_status(
    collection: str,
    doc_id: str,
    expected: str,
    next_status: str,
    updates: Optional[dict[str, Any]] = None,
) -> bool:
    """Transactionally set ``status`` when it currently equals ``expected``."""

    db = get_db()
    ref = db.collection(collection).document(doc_id)
    fields = {**(updates or {}), "status": next_status}

    @firestore.transactional
    def _apply(transaction) -> bool:
        snapshot = ref.get(transaction=transaction)
        if not snapshot.exists:
            return False
        if (snapshot.to_dict() or {}).get("status") != expected:
            return False
        transaction.update(ref, fields)
        return True

    return _apply(db.transaction())


class FirestoreStore:
    """``MatchStore`` and ``EventPublisher`` backed by Cloud Firestore."""

    def get_open_requests_near(
        self, spatial_key_bucket: str, limit: int = 100
    ) -> list[ExchangeRequest]:
        """Query open requests inside a spatial key bucket.

        Uses a range on spatialKey so that any bucket length works as a
        prefix. The status filter runs in the query, before the limit, so
        closed requests in a busy bucket cannot crowd out open ones.

        Note: Requires a composite index on (status, spatialKey).
        """

        bucket = spatial_key_bucket.lower()
        try:
            query = (
                get_db().collection(REQUESTS_COLLECTION)
                .where("status", "==", RequestStatus.OPEN.value)
                .where("spatialKey", ">=", bucket)
                .where("spatialKey", "<=", bucket + _PREFIX_END)
                .limit(limit)
            )
            requests = [_request_from_doc(doc) for doc in query.stream()]
            return [
                r for r in requests
                if r is not None and r.status == RequestStatus.OPEN
            ]
        except Exception as exc:
            logger.error("Failed to query requests near %s: %s", bucket, str(exc))
            raise FirestoreUnavailableError(str(exc)) from exc

    def get_request(self, request_id: str) -> Optional[ExchangeRequest]:
        try:
            doc = get_db().collection(REQUESTS_COLLECTION).document(request_id).get()
            if not doc.exists:
                return None
            return _request_from_doc(doc)
        except Exception as exc:
            logger.error("Failed to fetch request: %s", str(exc))
            raise FirestoreUnavailableError(str(exc)) from exc

    def save_request(self, request: ExchangeRequest) -> None:
        try:
            get_db().collection(REQUESTS_COLLECTION).document(request.id).set(
                request.to_document()
            )
        except Exception as exc:
            logger.error("Failed to save request: %s", str(exc))
            raise FirestoreUnavailableError(str(exc)) from exc

    def get_match(self, match_id: str) -> Optional[Match]:
        try:
            doc = get_db().collection(MATCHES_COLLECTION).document(match_id).get()
            if not doc.exists:
                return None
            return _match_from_doc(doc)
        except Exception as exc:
            logger.error("Failed to fetch match: %s", str(exc))
            raise FirestoreUnavailableError(str(exc)) from exc

    def create_match(self, match: Match) -> None:
        try:
            get_db().collection(MATCHES_COLLECTION).document(match.id).set(
                match.to_document()
            )
        except Exception as exc:
            logger.error("Failed to save match: %s", str(exc))
            raise FirestoreUnavailableError(str(exc)) from exc

    def list_matches_between(
        self, requester_id: str, counterpart_id: str
    ) -> list[Match]:
        """Matches from requester to counterpart.

        Note: Uses single-field index on requesterId; the counterpart filter
        is applied in memory.
        """

        try:
            query = (
                get_db().collection(MATCHES_COLLECTION)
                .where("requesterId", "==", requester_id)
            )
            matches = [_match_from_doc(doc) for doc in query.stream()]
            return [
                m for m in matches
                if m is not None and m.counterpart_id == counterpart_id
            ]
        except Exception as exc:
            logger.error("Failed to list matches: %s", str(exc))
            raise FirestoreUnavailableError(str(exc)) from exc

    def cas_update_request_status(
        self, request_id: str, expected: RequestStatus, next_status: RequestStatus
    ) -> bool:
        try:
            return _cas_status(
                REQUESTS_COLLECTION, request_id, expected.value, next_status.value
            )
        except FirestoreUnavailableError:
            raise
        except Exception as exc:
            logger.error("Failed to update request status: %s", str(exc))
            raise FirestoreUnavailableError(str(exc)) from exc

    def cas_update_match_status(
        self,
        match_id: str,
        expected: MatchStatus,
        next_status: MatchStatus,
        updates: Optional[dict[str, Any]] = None,
    ) -> bool:
        try:
            return _cas_status(
                MATCHES_COLLECTION,
                match_id,
                expected.value,
                next_status.value,
                _to_document_fields(updates or {}),
            )
        except FirestoreUnavailableError:
            raise
        except Exception as exc:
            logger.error("Failed to update match status: %s", str(exc))
            raise FirestoreUnavailableError(str(exc)) from exc

    def publish_event(self, event: MatchEvent) -> None:
        """Write the event where the notification service picks it up."""

        try:
            get_db().collection(EVENTS_COLLECTION).add(event.to_document())
        except Exception as exc:
            logger.error("Failed to publish match event: %s", str(exc))
            raise FirestoreUnavailableError(str(exc)) from exc
