"""Durable event store: the append-only rating log plus small per-user records.

The rating log is the single source of truth.  Everything else held here
(preference model, pending predictions, derived analysis) is either
reproducible from the log or an audit trail.

Two backends are provided:

* :class:`InMemoryEventStore`: thread-safe, process-local; used by tests and
  single-node deployments.
* :class:`GrpcEventStore`: talks to a remote ``taste.EventStore`` service with
  generic unary calls carrying ``google.protobuf.Struct`` payloads.
"""

from __future__ import annotations

import abc
import copy
import logging
import threading
from dataclasses import replace
from typing import Any, Callable

import grpc
from google.protobuf.struct_pb2 import Struct

from taste_engine.exceptions import MalformedStateError, TasteEngineError
from taste_engine.models import (
    PredictionCounters,
    Prediction,
    PredictionHistoryEntry,
    PreferenceModel,
    RatingEvent,
)
from taste_engine.preference import decipher_for
from taste_engine.wire import dict_to_struct, struct_to_dict

logger = logging.getLogger(__name__)

MAX_READ_LIMIT = 500

CounterUpdate = Callable[[PreferenceModel], PreferenceModel]


def _check_limit(limit: int) -> int:
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit!r}")
    return min(limit, MAX_READ_LIMIT)


class EventStore(abc.ABC):
    """Abstract persistence backend used by the engine."""

    # ------------------------------------------------------------------
    # Rating log
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def append_event(self, event: RatingEvent) -> None:
        """Append *event* to its user's log."""

    @abc.abstractmethod
    def read_events(self, user_id: str, limit: int = MAX_READ_LIMIT) -> list[RatingEvent]:
        """Return the latest *limit* (at most 500) events, oldest first."""

    @abc.abstractmethod
    def count_events(self, user_id: str) -> int:
        """Return the total number of events logged for *user_id*."""

    # ------------------------------------------------------------------
    # Preference model
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def load_preference_model(self, user_id: str) -> PreferenceModel | None:
        """Return the stored model, or ``None`` if the user has none yet."""

    @abc.abstractmethod
    def save_preference_model(self, model: PreferenceModel) -> PreferenceModel:
        """Replace the learned fields of the stored model.

        Stored counters always win over ``model.counters``; decipher progress
        is re-derived from the merged record.

        Returns:
            The record as stored.
        """

    @abc.abstractmethod
    def update_counters(self, user_id: str, fn: CounterUpdate) -> PreferenceModel:
        """Atomically apply *fn* to the stored model and persist its counters.

        Only ``counters`` and ``decipher_progress`` of *fn*'s result are
        written.  A user without a stored model starts from a default one.

        Returns:
            The record as stored.
        """

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def put_pending_prediction(self, prediction: Prediction) -> None:
        """Remember *prediction* until its outcome is recorded."""

    @abc.abstractmethod
    def pop_pending_prediction(self, user_id: str, prediction_id: str) -> Prediction | None:
        """Remove and return a pending prediction, or ``None`` if unknown."""

    @abc.abstractmethod
    def append_prediction_history(self, entry: PredictionHistoryEntry) -> None:
        """Append an immutable audit record."""

    @abc.abstractmethod
    def read_prediction_history(
        self, user_id: str, limit: int = MAX_READ_LIMIT
    ) -> list[dict[str, Any]]:
        """Return the latest *limit* audit records as dicts, oldest first."""

    # ------------------------------------------------------------------
    # Derived analysis
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def load_analysis(self, user_id: str) -> dict[str, Any] | None:
        """Return the serialised derived state, or ``None``."""

    @abc.abstractmethod
    def save_analysis(self, user_id: str, analysis: dict[str, Any]) -> None:
        """Replace the serialised derived state."""


def _parse_stored_model(user_id: str, raw: dict[str, Any] | None) -> PreferenceModel | None:
    """Parse a stored model for a write path; a corrupt record is dropped."""
    if raw is None:
        return None
    try:
        return PreferenceModel.from_dict(raw)
    except MalformedStateError as exc:
        logger.warning("Overwriting malformed preference model for user %s: %s", user_id, exc)
        return None


def merge_learned_fields(
    stored: PreferenceModel | None, fresh: PreferenceModel
) -> PreferenceModel:
    """Return *fresh* carrying *stored*'s counters, with decipher progress re-derived."""
    merged = replace(fresh)
    if stored is not None:
        merged.counters = replace(stored.counters)
    merged.decipher_progress = decipher_for(merged)
    return merged


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryEventStore(EventStore):
    """Thread-safe process-local store.

    Records are kept in serialised (dict) form so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._events: dict[str, list[dict[str, Any]]] = {}
        self._models: dict[str, dict[str, Any]] = {}
        self._pending: dict[tuple[str, str], dict[str, Any]] = {}
        self._history: dict[str, list[dict[str, Any]]] = {}
        self._analysis: dict[str, dict[str, Any]] = {}

    def append_event(self, event: RatingEvent) -> None:
        with self._lock:
            self._events.setdefault(event.user_id, []).append(event.to_dict())

    def read_events(self, user_id: str, limit: int = MAX_READ_LIMIT) -> list[RatingEvent]:
        limit = _check_limit(limit)
        with self._lock:
            raw = list(self._events.get(user_id, [])[-limit:])
        return [RatingEvent.from_dict(item) for item in raw]

    def count_events(self, user_id: str) -> int:
        with self._lock:
            return len(self._events.get(user_id, []))

    def load_preference_model(self, user_id: str) -> PreferenceModel | None:
        with self._lock:
            raw = self._models.get(user_id)
        return None if raw is None else PreferenceModel.from_dict(raw)

    def save_preference_model(self, model: PreferenceModel) -> PreferenceModel:
        with self._lock:
            stored = _parse_stored_model(model.user_id, self._models.get(model.user_id))
            merged = merge_learned_fields(stored, model)
            self._models[model.user_id] = merged.to_dict()
            return merged

    def update_counters(self, user_id: str, fn: CounterUpdate) -> PreferenceModel:
        with self._lock:
            current = _parse_stored_model(user_id, self._models.get(user_id))
            if current is None:
                current = PreferenceModel(user_id=user_id)
            updated = fn(replace(current, counters=replace(current.counters)))
            current.counters = replace(updated.counters)
            current.decipher_progress = updated.decipher_progress
            self._models[user_id] = current.to_dict()
            return current

    def put_pending_prediction(self, prediction: Prediction) -> None:
        with self._lock:
            self._pending[(prediction.user_id, prediction.prediction_id)] = prediction.to_dict()

    def pop_pending_prediction(self, user_id: str, prediction_id: str) -> Prediction | None:
        with self._lock:
            raw = self._pending.pop((user_id, prediction_id), None)
        return None if raw is None else Prediction.from_dict(raw)

    def append_prediction_history(self, entry: PredictionHistoryEntry) -> None:
        with self._lock:
            self._history.setdefault(entry.user_id, []).append(entry.to_dict())

    def read_prediction_history(
        self, user_id: str, limit: int = MAX_READ_LIMIT
    ) -> list[dict[str, Any]]:
        limit = _check_limit(limit)
        with self._lock:
            return copy.deepcopy(self._history.get(user_id, [])[-limit:])

    def load_analysis(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            return copy.deepcopy(self._analysis.get(user_id))

    def save_analysis(self, user_id: str, analysis: dict[str, Any]) -> None:
        with self._lock:
            self._analysis[user_id] = copy.deepcopy(analysis)


# ---------------------------------------------------------------------------
# Remote backend
# ---------------------------------------------------------------------------


class StoreConflictError(TasteEngineError):
    """A versioned counter update kept losing to concurrent writers."""


class GrpcEventStore(EventStore):
    """Store backed by a remote ``taste.EventStore`` gRPC service.

    Every method maps to one unary RPC whose request and response are
    ``Struct`` messages built from the dataclasses' ``to_dict()`` output.
    Counter updates use optimistic concurrency: the model is read with its
    ``version`` and written back with ``expected_version``; a rejected write
    is retried.

    Args:
        channel: An open :class:`grpc.Channel` to the store service.
        timeout: Per-call deadline in seconds.
        max_retries: Attempts for a conflicting counter update.
    """

    SERVICE = "taste.EventStore"
    METHODS = (
        "AppendEvent",
        "ReadEvents",
        "CountEvents",
        "LoadPreferenceModel",
        "SavePreferenceModel",
        "CompareAndSetCounters",
        "PutPendingPrediction",
        "PopPendingPrediction",
        "AppendPredictionHistory",
        "ReadPredictionHistory",
        "LoadAnalysis",
        "SaveAnalysis",
    )

    def __init__(
        self, channel: grpc.Channel, timeout: float = 10.0, max_retries: int = 5
    ) -> None:
        self._timeout = timeout
        self._max_retries = max_retries
        self._calls = {
            name: channel.unary_unary(
                f"/{self.SERVICE}/{name}",
                request_serializer=Struct.SerializeToString,
                response_deserializer=Struct.FromString,
            )
            for name in self.METHODS
        }

    def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._calls[method](dict_to_struct(payload), timeout=self._timeout)
        return struct_to_dict(response)

    def append_event(self, event: RatingEvent) -> None:
        self._call("AppendEvent", {"event": event.to_dict()})

    def read_events(self, user_id: str, limit: int = MAX_READ_LIMIT) -> list[RatingEvent]:
        response = self._call(
            "ReadEvents", {"user_id": user_id, "limit": _check_limit(limit)}
        )
        return [RatingEvent.from_dict(item) for item in response.get("events", [])]

    def count_events(self, user_id: str) -> int:
        return int(self._call("CountEvents", {"user_id": user_id}).get("count", 0))

    def _load_versioned(self, user_id: str) -> tuple[dict[str, Any] | None, int]:
        response = self._call("LoadPreferenceModel", {"user_id": user_id})
        return response.get("model"), int(response.get("version", 0))

    def load_preference_model(self, user_id: str) -> PreferenceModel | None:
        raw = self._load_versioned(user_id)[0]
        return None if raw is None else PreferenceModel.from_dict(raw)

    def save_preference_model(self, model: PreferenceModel) -> PreferenceModel:
        # The service keeps its stored counters; only learned fields travel.
        response = self._call("SavePreferenceModel", {"model": model.to_dict()})
        stored = response.get("model")
        if stored is None:
            return merge_learned_fields(None, model)
        return PreferenceModel.from_dict(stored)

    def update_counters(self, user_id: str, fn: CounterUpdate) -> PreferenceModel:
        for attempt in range(1, self._max_retries + 1):
            raw, version = self._load_versioned(user_id)
            current = _parse_stored_model(user_id, raw)
            if current is None:
                current = PreferenceModel(user_id=user_id)
            updated = fn(replace(current, counters=replace(current.counters)))
            response = self._call(
                "CompareAndSetCounters",
                {
                    "user_id": user_id,
                    "expected_version": version,
                    "counters": updated.counters.to_dict(),
                    "decipher_progress": updated.decipher_progress,
                },
            )
            if response.get("applied"):
                current.counters = PredictionCounters.from_dict(updated.counters.to_dict())
                current.decipher_progress = updated.decipher_progress
                return current
            logger.debug(
                "Counter update for %s lost a race (attempt %d/%d).",
                user_id,
                attempt,
                self._max_retries,
            )
        raise StoreConflictError(
            f"Counter update for {user_id!r} conflicted {self._max_retries} times"
        )

    def put_pending_prediction(self, prediction: Prediction) -> None:
        self._call("PutPendingPrediction", {"prediction": prediction.to_dict()})

    def pop_pending_prediction(self, user_id: str, prediction_id: str) -> Prediction | None:
        response = self._call(
            "PopPendingPrediction", {"user_id": user_id, "prediction_id": prediction_id}
        )
        raw = response.get("prediction")
        return None if raw is None else Prediction.from_dict(raw)

    def append_prediction_history(self, entry: PredictionHistoryEntry) -> None:
        self._call("AppendPredictionHistory", {"entry": entry.to_dict()})

    def read_prediction_history(
        self, user_id: str, limit: int = MAX_READ_LIMIT
    ) -> list[dict[str, Any]]:
        response = self._call(
            "ReadPredictionHistory", {"user_id": user_id, "limit": _check_limit(limit)}
        )
        return list(response.get("entries", []))

    def load_analysis(self, user_id: str) -> dict[str, Any] | None:
        return self._call("LoadAnalysis", {"user_id": user_id}).get("analysis")

    def save_analysis(self, user_id: str, analysis: dict[str, Any]) -> None:
        self._call("SaveAnalysis", {"user_id": user_id, "analysis": analysis})
