"""gRPC servicer: the entry point for all inbound calls to ``taste.TasteService``.

Requests and responses are ``google.protobuf.Struct`` messages, so the
service is registered with generic method handlers rather than generated
stubs (see :func:`add_taste_service_to_server`).
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

import grpc
from google.protobuf.struct_pb2 import Struct

from taste_engine.engine import TasteEngine
from taste_engine.exceptions import MalformedStateError, PredictionNotFoundError
from taste_engine.models import FeatureVector, RatingEvent
from taste_engine.wire import dict_to_struct, parse_rfc3339, struct_to_dict

logger = logging.getLogger(__name__)

SERVICE_NAME = "taste.TasteService"

_DEFAULT_PREDICT_WARN_THRESHOLD_MS = 250.0


class TasteServicer:
    """Implements ``taste.TasteService`` on top of a :class:`TasteEngine`.

    Every handler takes a ``Struct`` request and returns a ``Struct``.  Bad
    input maps to ``INVALID_ARGUMENT``, an unknown prediction to
    ``NOT_FOUND`` and anything unexpected to ``INTERNAL``.

    Args:
        engine: The :class:`~taste_engine.engine.TasteEngine`.
        predict_warn_threshold_ms: Predictions slower than this are logged
            at WARNING.
        clock: Returns the current time; injectable for tests.
    """

    METHODS = (
        "RecordRating",
        "Predict",
        "RecordOutcome",
        "GetPatterns",
        "GetDriftAlerts",
        "AcknowledgeDriftAlert",
        "GetConsolidatedTastes",
        "GetPreferenceModel",
        "Recompute",
    )

    def __init__(
        self,
        engine: TasteEngine,
        predict_warn_threshold_ms: float = _DEFAULT_PREDICT_WARN_THRESHOLD_MS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._predict_warn_threshold_ms = predict_warn_threshold_ms
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Ratings and recompute
    # ------------------------------------------------------------------

    def RecordRating(self, request: Struct, context: Any) -> Struct:
        """Append one rating.

        Request keys: ``user_id``, ``item_id``, ``rating`` and optionally
        ``timestamp`` (RFC 3339), ``descriptor_tags``, ``feature_vector``,
        ``genres``, ``artist``, ``item_age_years``.
        """

        def handle(data: dict[str, Any]) -> dict[str, Any]:
            now = self._clock()
            raw_fv = data.get("feature_vector")
            event = RatingEvent(
                user_id=_required(data, "user_id"),
                item_id=_required(data, "item_id"),
                rating=float(_required(data, "rating")),
                timestamp=_parse_time(data.get("timestamp"), now),
                descriptor_tags=frozenset(data.get("descriptor_tags") or ()),
                feature_vector=FeatureVector.from_dict(raw_fv) if raw_fv else None,
                genres=tuple(data.get("genres") or ()),
                artist=str(data.get("artist") or ""),
                item_age_years=float(data.get("item_age_years") or 0.0),
            )
            stored = self._engine.record_rating(event, now)
            return {"event": stored.to_dict(), "has_features": stored.feature_vector is not None}

        return self._invoke("RecordRating", request, context, handle)

    def Recompute(self, request: Struct, context: Any) -> Struct:
        """Force a full recompute for ``user_id``."""

        def handle(data: dict[str, Any]) -> dict[str, Any]:
            return {"summary": self._engine.recompute(_required(data, "user_id"), self._clock())}

        return self._invoke("Recompute", request, context, handle)

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def Predict(self, request: Struct, context: Any) -> Struct:
        """Predict a rating from ``feature_vector`` and/or ``item_id``."""

        def handle(data: dict[str, Any]) -> dict[str, Any]:
            user_id = _required(data, "user_id")
            raw_fv = data.get("feature_vector")
            start_ms = time.monotonic() * 1000
            try:
                prediction = self._engine.predict(
                    user_id,
                    self._clock(),
                    feature_vector=FeatureVector.from_dict(raw_fv) if raw_fv else None,
                    item_id=data.get("item_id") or None,
                )
            finally:
                elapsed_ms = time.monotonic() * 1000 - start_ms
                if elapsed_ms > self._predict_warn_threshold_ms:
                    logger.warning(
                        "Predict for user=%r took %.1fms (threshold: %.0fms)",
                        user_id,
                        elapsed_ms,
                        self._predict_warn_threshold_ms,
                    )
                else:
                    logger.debug("Predict for user=%r took %.1fms", user_id, elapsed_ms)
            return {"prediction": prediction.to_dict()}

        return self._invoke("Predict", request, context, handle)

    def RecordOutcome(self, request: Struct, context: Any) -> Struct:
        """Report the realised rating for a pending prediction."""

        def handle(data: dict[str, Any]) -> dict[str, Any]:
            outcome = self._engine.record_outcome(
                _required(data, "user_id"),
                _required(data, "prediction_id"),
                float(_required(data, "actual_rating")),
                data.get("actual_descriptors") or (),
                self._clock(),
            )
            return {"outcome": outcome.to_dict()}

        return self._invoke("RecordOutcome", request, context, handle)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def GetPatterns(self, request: Struct, context: Any) -> Struct:
        def handle(data: dict[str, Any]) -> dict[str, Any]:
            patterns = self._engine.get_patterns(_required(data, "user_id"))
            return {"patterns": [p.to_dict() for p in patterns]}

        return self._invoke("GetPatterns", request, context, handle)

    def GetDriftAlerts(self, request: Struct, context: Any) -> Struct:
        def handle(data: dict[str, Any]) -> dict[str, Any]:
            alerts = self._engine.get_drift_alerts(
                _required(data, "user_id"),
                significant_only=bool(data.get("significant_only", False)),
            )
            return {"alerts": [a.to_dict() for a in alerts]}

        return self._invoke("GetDriftAlerts", request, context, handle)

    def AcknowledgeDriftAlert(self, request: Struct, context: Any) -> Struct:
        def handle(data: dict[str, Any]) -> dict[str, Any]:
            acknowledged = self._engine.acknowledge_drift_alert(
                _required(data, "user_id"), _required(data, "alert_id")
            )
            return {"acknowledged": acknowledged}

        return self._invoke("AcknowledgeDriftAlert", request, context, handle)

    def GetConsolidatedTastes(self, request: Struct, context: Any) -> Struct:
        def handle(data: dict[str, Any]) -> dict[str, Any]:
            tastes = self._engine.get_consolidated_tastes(_required(data, "user_id"))
            return {"tastes": [t.to_dict() for t in tastes]}

        return self._invoke("GetConsolidatedTastes", request, context, handle)

    def GetPreferenceModel(self, request: Struct, context: Any) -> Struct:
        def handle(data: dict[str, Any]) -> dict[str, Any]:
            model = self._engine.get_preference_model(_required(data, "user_id"))
            return {"model": model.to_dict() if model is not None else None}

        return self._invoke("GetPreferenceModel", request, context, handle)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _invoke(
        self,
        method: str,
        request: Struct,
        context: Any,
        handle: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> Struct:
        data = struct_to_dict(request)
        try:
            return dict_to_struct(handle(data))
        except PredictionNotFoundError as exc:
            context.set_code(grpc.StatusCode.NOT_FOUND)
            context.set_details(str(exc))
        except (ValueError, MalformedStateError) as exc:
            context.set_code(grpc.StatusCode.INVALID_ARGUMENT)
            context.set_details(str(exc))
        except Exception:
            logger.exception(
                "Unexpected error in %s for user=%r", method, data.get("user_id")
            )
            context.set_code(grpc.StatusCode.INTERNAL)
            context.set_details(f"Internal error in {method}.")
        return Struct()


def add_taste_service_to_server(servicer: TasteServicer, server: grpc.Server) -> None:
    """Register every ``taste.TasteService`` method of *servicer* with *server*."""
    handlers = {
        name: grpc.unary_unary_rpc_method_handler(
            getattr(servicer, name),
            request_deserializer=Struct.FromString,
            response_serializer=Struct.SerializeToString,
        )
        for name in TasteServicer.METHODS
    }
    server.add_generic_rpc_handlers(
        (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
    )


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def _required(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise ValueError(f"{key} must be provided")
    return value


def _parse_time(value: Any, default: datetime) -> datetime:
    """Parse an optional RFC 3339 request timestamp."""
    if not value:
        return default
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be an RFC 3339 string, got {value!r}")
    return parse_rfc3339(value)
