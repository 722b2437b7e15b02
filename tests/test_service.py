"""Tests for TasteServicer (gRPC service layer)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import grpc
import pytest
from google.protobuf.struct_pb2 import Struct

from taste_engine.exceptions import PredictionNotFoundError
from taste_engine.models import Prediction, RatingEvent
from taste_engine.service import SERVICE_NAME, TasteServicer, add_taste_service_to_server
from taste_engine.wire import dict_to_struct, struct_to_dict

TS = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_context() -> MagicMock:
    """Return a mock gRPC context."""
    ctx = MagicMock()
    ctx.set_code = MagicMock()
    ctx.set_details = MagicMock()
    return ctx


def _make_servicer(engine=None, **kwargs) -> TasteServicer:
    if engine is None:
        engine = MagicMock()
        engine.record_rating.side_effect = lambda event, now: event
    return TasteServicer(engine=engine, clock=lambda: TS, **kwargs)


def _prediction() -> Prediction:
    return Prediction(
        prediction_id="p1",
        user_id="u1",
        predicted_rating=7.0,
        range_min=5.0,
        range_max=9.0,
        suggested_descriptors=[],
        confidence=0.3,
        reasoning=["Taking an educated guess"],
        created_at=TS,
    )


# ---------------------------------------------------------------------------
# RecordRating
# ---------------------------------------------------------------------------


class TestRecordRating:
    def test_calls_engine(self) -> None:
        servicer = _make_servicer()
        request = dict_to_struct(
            {"user_id": "u1", "item_id": "t1", "rating": 8, "descriptor_tags": ["lush"]}
        )
        response = struct_to_dict(servicer.RecordRating(request, _make_context()))
        event, now = servicer._engine.record_rating.call_args.args
        assert isinstance(event, RatingEvent)
        assert event.rating == 8.0
        assert event.descriptor_tags == frozenset({"lush"})
        assert event.timestamp == TS
        assert now == TS
        assert response["event"]["item_id"] == "t1"
        assert response["has_features"] is False

    def test_rfc3339_timestamp(self) -> None:
        servicer = _make_servicer()
        later = (TS + timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%SZ")
        request = dict_to_struct(
            {"user_id": "u1", "item_id": "t1", "rating": 5, "timestamp": later}
        )
        servicer.RecordRating(request, _make_context())
        event = servicer._engine.record_rating.call_args.args[0]
        assert event.timestamp == TS + timedelta(hours=1)

    def test_feature_vector_in_request(self) -> None:
        servicer = _make_servicer()
        fv = {"energy": 0.5, "valence": 0.5, "danceability": 0.5, "acousticness": 0.5,
              "tempo": 100}
        request = dict_to_struct(
            {"user_id": "u1", "item_id": "t1", "rating": 5, "feature_vector": fv}
        )
        response = struct_to_dict(servicer.RecordRating(request, _make_context()))
        assert response["has_features"] is True

    @pytest.mark.parametrize(
        "payload",
        [
            {"item_id": "t1", "rating": 5},
            {"user_id": "", "item_id": "t1", "rating": 5},
            {"user_id": "u1", "item_id": "t1", "rating": 11},
            {"user_id": "u1", "item_id": "t1", "rating": 5, "timestamp": "yesterday"},
            {"user_id": "u1", "item_id": "t1", "rating": 5, "feature_vector": {"energy": 1}},
        ],
    )
    def test_bad_request_sets_invalid_argument(self, payload: dict) -> None:
        servicer = _make_servicer()
        ctx = _make_context()
        result = servicer.RecordRating(dict_to_struct(payload), ctx)
        ctx.set_code.assert_called_once_with(grpc.StatusCode.INVALID_ARGUMENT)
        servicer._engine.record_rating.assert_not_called()
        assert result == Struct()

    def test_engine_error_sets_internal_status(self) -> None:
        servicer = _make_servicer()
        servicer._engine.record_rating.side_effect = RuntimeError("db error")
        ctx = _make_context()
        request = dict_to_struct({"user_id": "u1", "item_id": "t1", "rating": 5})
        result = servicer.RecordRating(request, ctx)
        ctx.set_code.assert_called_once_with(grpc.StatusCode.INTERNAL)
        assert result == Struct()


# ---------------------------------------------------------------------------
# Predictions
# ---------------------------------------------------------------------------


class TestPredict:
    def test_returns_prediction(self) -> None:
        servicer = _make_servicer()
        servicer._engine.predict.return_value = _prediction()
        request = dict_to_struct({"user_id": "u1", "item_id": "t1"})
        response = struct_to_dict(servicer.Predict(request, _make_context()))
        assert response["prediction"]["prediction_id"] == "p1"
        assert response["prediction"]["predicted_rating"] == 7
        servicer._engine.predict.assert_called_once_with(
            "u1", TS, feature_vector=None, item_id="t1"
        )

    def test_slow_prediction_logs_warning(self, caplog) -> None:
        servicer = _make_servicer(predict_warn_threshold_ms=-1)
        servicer._engine.predict.return_value = _prediction()
        with caplog.at_level(logging.WARNING, logger="taste_engine.service"):
            servicer.Predict(dict_to_struct({"user_id": "u1"}), _make_context())
        assert "threshold" in caplog.text

    def test_fast_prediction_does_not_warn(self, caplog) -> None:
        servicer = _make_servicer(predict_warn_threshold_ms=60_000)
        servicer._engine.predict.return_value = _prediction()
        with caplog.at_level(logging.WARNING, logger="taste_engine.service"):
            servicer.Predict(dict_to_struct({"user_id": "u1"}), _make_context())
        assert caplog.records == []


class TestRecordOutcome:
    def test_unknown_prediction_sets_not_found(self) -> None:
        servicer = _make_servicer()
        servicer._engine.record_outcome.side_effect = PredictionNotFoundError("u1", "p1")
        ctx = _make_context()
        request = dict_to_struct({"user_id": "u1", "prediction_id": "p1", "actual_rating": 7})
        result = servicer.RecordOutcome(request, ctx)
        ctx.set_code.assert_called_once_with(grpc.StatusCode.NOT_FOUND)
        assert result == Struct()

    def test_missing_rating_is_invalid(self) -> None:
        servicer = _make_servicer()
        ctx = _make_context()
        servicer.RecordOutcome(dict_to_struct({"user_id": "u1", "prediction_id": "p1"}), ctx)
        ctx.set_code.assert_called_once_with(grpc.StatusCode.INVALID_ARGUMENT)


# ---------------------------------------------------------------------------
# Read-only views
# ---------------------------------------------------------------------------


class TestViews:
    def test_drift_alerts_pass_significant_flag(self) -> None:
        servicer = _make_servicer()
        servicer._engine.get_drift_alerts.return_value = []
        request = dict_to_struct({"user_id": "u1", "significant_only": True})
        response = struct_to_dict(servicer.GetDriftAlerts(request, _make_context()))
        servicer._engine.get_drift_alerts.assert_called_once_with("u1", significant_only=True)
        assert response == {"alerts": []}

    def test_missing_preference_model_is_null(self) -> None:
        servicer = _make_servicer()
        servicer._engine.get_preference_model.return_value = None
        response = struct_to_dict(
            servicer.GetPreferenceModel(dict_to_struct({"user_id": "u1"}), _make_context())
        )
        assert response == {"model": None}

    def test_acknowledge(self) -> None:
        servicer = _make_servicer()
        servicer._engine.acknowledge_drift_alert.return_value = True
        request = dict_to_struct({"user_id": "u1", "alert_id": "drift_1"})
        response = struct_to_dict(servicer.AcknowledgeDriftAlert(request, _make_context()))
        assert response == {"acknowledged": True}


# ---------------------------------------------------------------------------
# Registration and end-to-end
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_registers_every_method(self) -> None:
        server = MagicMock()
        add_taste_service_to_server(_make_servicer(), server)
        (handlers,), _ = server.add_generic_rpc_handlers.call_args
        (generic,) = handlers
        for name in TasteServicer.METHODS:
            details = MagicMock(method=f"/{SERVICE_NAME}/{name}")
            assert generic.service(details) is not None
        assert generic.service(MagicMock(method=f"/{SERVICE_NAME}/Nope")) is None


class TestEndToEnd:
    def test_rate_predict_and_outcome(self, engine) -> None:
        servicer = _make_servicer(engine)
        for hour in range(5):
            stamp = (TS + timedelta(hours=hour)).strftime("%Y-%m-%dT%H:%M:%SZ")
            request = dict_to_struct(
                {"user_id": "u1", "item_id": f"t{hour}", "rating": 9, "timestamp": stamp}
            )
            ctx = _make_context()
            servicer.RecordRating(request, ctx)
            ctx.set_code.assert_not_called()

        patterns = struct_to_dict(
            servicer.GetPatterns(dict_to_struct({"user_id": "u1"}), _make_context())
        )["patterns"]
        assert [p["id"] for p in patterns] == ["polarized_taste"]

        prediction = struct_to_dict(
            servicer.Predict(dict_to_struct({"user_id": "u1"}), _make_context())
        )["prediction"]
        assert prediction["predicted_rating"] == 9

        outcome = struct_to_dict(
            servicer.RecordOutcome(
                dict_to_struct(
                    {
                        "user_id": "u1",
                        "prediction_id": prediction["prediction_id"],
                        "actual_rating": 9,
                    }
                ),
                _make_context(),
            )
        )["outcome"]
        assert outcome["match_quality"] == "perfect"
        assert outcome["current_streak"] == 1
