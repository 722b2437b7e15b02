"""Core domain dataclasses shared across all taste engine modules."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterator

from taste_engine.exceptions import MalformedStateError
from taste_engine.wire import from_iso, to_iso

# Feature names, in the order used everywhere a feature vector is iterated.
NORMALIZED_FEATURES = ("energy", "valence", "danceability", "acousticness")
RANGE_FEATURES = NORMALIZED_FEATURES + ("tempo",)
CORRELATION_FEATURES = RANGE_FEATURES + ("loudness",)

TEMPO_SCALE = 200.0          # BPM divisor that puts tempo on a ~[0, 1] scale
DEFAULT_LOUDNESS_DB = -10.0  # assumed loudness when the provider omits it


class PatternCategory(str, Enum):
    """Families of behavioural patterns."""

    RATING = "rating"
    DISCOVERY = "discovery"
    ENGAGEMENT = "engagement"
    SIGNATURE = "signature"


class PatternStatus(str, Enum):
    """Lifecycle states of a detected pattern."""

    EMERGING = "emerging"
    CONFIRMED = "confirmed"
    FADING = "fading"
    DORMANT = "dormant"


class TasteType(str, Enum):
    GENRE = "genre"
    ARTIST = "artist"
    DESCRIPTOR = "descriptor"


class Trend(str, Enum):
    STRENGTHENING = "strengthening"
    FADING = "fading"
    STABLE = "stable"


class RatingSkew(str, Enum):
    HARSH = "harsh"
    LENIENT = "lenient"
    BALANCED = "balanced"


class DriftType(str, Enum):
    """Kinds of behavioural change reported by the drift detector."""

    PATTERN_DISAPPEARANCE = "pattern_disappearance"
    PATTERN_EMERGENCE = "pattern_emergence"
    CONTRADICTION = "contradiction"
    EMOTIONAL_SHIFT = "emotional_shift"
    PREFERENCE_CHANGE = "preference_change"
    RATING_STYLE_SHIFT = "rating_style_shift"
    GENRE_EXPANSION = "genre_expansion"
    GENRE_CONTRACTION = "genre_contraction"


class MatchQuality(str, Enum):
    """Post-hoc classification of a prediction against the real rating."""

    PERFECT = "perfect"
    CLOSE = "close"
    MATCH = "match"
    SURPRISE = "surprise"
    MISS = "miss"


class NodeType(str, Enum):
    """Standard node vocabulary for the cognitive graph."""

    PATTERN = "pattern"
    EPISODE = "episode"


class EdgeType(str, Enum):
    """Standard edge vocabulary for the cognitive graph."""

    EXHIBITED_IN = "exhibited_in"
    REINFORCES = "reinforces"


@contextmanager
def malformed(structure: str) -> Iterator[None]:
    """Re-raise parsing errors inside the block as :class:`MalformedStateError`."""
    try:
        yield
    except MalformedStateError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise MalformedStateError(structure, repr(exc)) from exc


# ---------------------------------------------------------------------------
# Rating events and feature vectors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeatureVector:
    """Acoustic measurements for a single item.

    Attributes:
        energy: Normalised [0, 1].
        valence: Normalised [0, 1].
        danceability: Normalised [0, 1].
        acousticness: Normalised [0, 1].
        tempo: Beats per minute.
        loudness: Decibels, or ``None`` when the provider did not report it.
    """

    energy: float
    valence: float
    danceability: float
    acousticness: float
    tempo: float
    loudness: float | None = None

    def value(self, feature: str) -> float:
        """Return the raw value of *feature* (missing loudness → -10 dB)."""
        if feature == "loudness":
            return DEFAULT_LOUDNESS_DB if self.loudness is None else self.loudness
        return float(getattr(self, feature))

    def scaled(self, feature: str) -> float:
        """Return *feature* on the comparison scale (tempo divided by 200)."""
        if feature == "tempo":
            return self.tempo / TEMPO_SCALE
        return self.value(feature)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {f: float(getattr(self, f)) for f in RANGE_FEATURES}
        if self.loudness is not None:
            data["loudness"] = float(self.loudness)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureVector:
        """Build from a dict; extra provider keys (``key``, ``mode``…) are ignored."""
        with malformed("feature vector"):
            loudness = data.get("loudness")
            return cls(
                energy=float(data["energy"]),
                valence=float(data["valence"]),
                danceability=float(data["danceability"]),
                acousticness=float(data["acousticness"]),
                tempo=float(data["tempo"]),
                loudness=None if loudness is None else float(loudness),
            )


@dataclass(frozen=True)
class RatingEvent:
    """A single immutable rating in a user's append-only history.

    Attributes:
        user_id: The rating user.
        item_id: The rated item.
        rating: Score in [0, 10].
        timestamp: When the rating was submitted (UTC).
        descriptor_tags: Free-text mood/texture tags attached to the rating.
        feature_vector: Acoustic features, or ``None`` when unknown.
        genres: Genre labels of the item.
        artist: Primary artist name.
        item_age_years: Age of the item's release at rating time.
    """

    user_id: str
    item_id: str
    rating: float
    timestamp: datetime
    descriptor_tags: frozenset[str] = frozenset()
    feature_vector: FeatureVector | None = None
    genres: tuple[str, ...] = ()
    artist: str = ""
    item_age_years: float = 0.0

    def __post_init__(self) -> None:
        if not 0 <= self.rating <= 10:
            raise ValueError(f"Rating must be between 0 and 10, got {self.rating!r}")
        object.__setattr__(self, "descriptor_tags", frozenset(self.descriptor_tags))
        object.__setattr__(self, "genres", tuple(self.genres))

    def with_features(self, feature_vector: FeatureVector | None) -> RatingEvent:
        """Return a copy of this event carrying *feature_vector*."""
        return replace(self, feature_vector=feature_vector)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "item_id": self.item_id,
            "rating": float(self.rating),
            "timestamp": to_iso(self.timestamp),
            "descriptor_tags": sorted(self.descriptor_tags),
            "feature_vector": (
                self.feature_vector.to_dict() if self.feature_vector else None
            ),
            "genres": list(self.genres),
            "artist": self.artist,
            "item_age_years": float(self.item_age_years),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RatingEvent:
        with malformed("rating event"):
            fv = data.get("feature_vector")
            return cls(
                user_id=str(data["user_id"]),
                item_id=str(data["item_id"]),
                rating=float(data["rating"]),
                timestamp=from_iso(data["timestamp"]),
                descriptor_tags=frozenset(data.get("descriptor_tags") or ()),
                feature_vector=FeatureVector.from_dict(fv) if fv else None,
                genres=tuple(data.get("genres") or ()),
                artist=str(data.get("artist") or ""),
                item_age_years=float(data.get("item_age_years") or 0.0),
            )


# ---------------------------------------------------------------------------
# Preference model
# ---------------------------------------------------------------------------


@dataclass
class FeatureRange:
    """Learned preferred range for one acoustic feature.

    Attributes:
        min: Lower bound (10th percentile of liked items).
        max: Upper bound (90th percentile of liked items).
        sweet_spot: Rating-weighted mean value among liked items.
        weight: How much this feature drives ratings, in [0, 1].
    """

    min: float
    max: float
    sweet_spot: float
    weight: float

    @property
    def width(self) -> float:
        return self.max - self.min

    def to_dict(self) -> dict[str, float]:
        return {
            "min": float(self.min),
            "max": float(self.max),
            "sweet_spot": float(self.sweet_spot),
            "weight": float(self.weight),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureRange:
        with malformed("feature range"):
            return cls(
                min=float(data["min"]),
                max=float(data["max"]),
                sweet_spot=float(data["sweet_spot"]),
                weight=float(data["weight"]),
            )


def default_feature_range() -> FeatureRange:
    return FeatureRange(min=0.0, max=1.0, sweet_spot=0.5, weight=0.5)


def default_tempo_range() -> FeatureRange:
    return FeatureRange(min=60.0, max=180.0, sweet_spot=120.0, weight=0.3)


@dataclass
class FeatureCorrelations:
    """Pearson correlation between rating and each feature, in [-1, 1]."""

    energy: float = 0.0
    valence: float = 0.0
    danceability: float = 0.0
    acousticness: float = 0.0
    tempo: float = 0.0
    loudness: float = 0.0

    def get(self, feature: str) -> float:
        return float(getattr(self, feature))

    def mean_abs(self) -> float:
        """Mean absolute correlation over all six features."""
        return sum(abs(self.get(f)) for f in CORRELATION_FEATURES) / len(
            CORRELATION_FEATURES
        )

    def to_dict(self) -> dict[str, float]:
        return {f: self.get(f) for f in CORRELATION_FEATURES}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureCorrelations:
        with malformed("feature correlations"):
            return cls(**{f: float(data.get(f, 0.0)) for f in CORRELATION_FEATURES})


@dataclass
class PredictionCounters:
    """Monotonic prediction bookkeeping, updated only by realised outcomes."""

    total_predictions: int = 0
    correct_predictions: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    surprise_count: int = 0
    prediction_accuracy: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_predictions": self.total_predictions,
            "correct_predictions": self.correct_predictions,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "surprise_count": self.surprise_count,
            "prediction_accuracy": float(self.prediction_accuracy),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PredictionCounters:
        with malformed("prediction counters"):
            return cls(
                total_predictions=int(data.get("total_predictions", 0)),
                correct_predictions=int(data.get("correct_predictions", 0)),
                current_streak=int(data.get("current_streak", 0)),
                longest_streak=int(data.get("longest_streak", 0)),
                surprise_count=int(data.get("surprise_count", 0)),
                prediction_accuracy=float(data.get("prediction_accuracy", 0.0)),
            )


@dataclass
class PreferenceModel:
    """Per-user acoustic fingerprint.

    The feature ranges, correlations, descriptor map and context fields are
    replaced wholesale on every recompute.  :attr:`counters` belong to the
    outcome path and are carried over untouched; :attr:`decipher_progress`
    is re-derived by both paths from the current counters.

    Attributes:
        user_id: Owner of the model.
        energy: Preferred energy range.
        valence: Preferred valence range.
        danceability: Preferred danceability range.
        acousticness: Preferred acousticness range.
        tempo: Preferred tempo range, in BPM.
        correlations: Rating/feature correlations (six features).
        descriptor_feature_map: Descriptor → mean energy/valence/danceability,
            for descriptors used on at least three feature-bearing items.
        total_ratings: Number of events in the window the model was built from.
        mean_rating: Mean rating over that window (``None`` if empty).
        vibe_consistency: How consistently descriptors are reused, in [0, 1].
        computed_at: When the model was last recomputed.
        counters: Prediction counters.
        decipher_progress: Composite understanding score in [0, 100].
    """

    user_id: str
    energy: FeatureRange = field(default_factory=default_feature_range)
    valence: FeatureRange = field(default_factory=default_feature_range)
    danceability: FeatureRange = field(default_factory=default_feature_range)
    acousticness: FeatureRange = field(default_factory=default_feature_range)
    tempo: FeatureRange = field(default_factory=default_tempo_range)
    correlations: FeatureCorrelations = field(default_factory=FeatureCorrelations)
    descriptor_feature_map: dict[str, dict[str, float]] | None = None
    total_ratings: int = 0
    mean_rating: float | None = None
    vibe_consistency: float = 0.0
    computed_at: datetime | None = None
    counters: PredictionCounters = field(default_factory=PredictionCounters)
    decipher_progress: float = 0.0

    def feature_range(self, feature: str) -> FeatureRange:
        if feature not in RANGE_FEATURES:
            raise KeyError(feature)
        return getattr(self, feature)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"user_id": self.user_id}
        for feature in RANGE_FEATURES:
            data[feature] = self.feature_range(feature).to_dict()
        data.update(
            {
                "correlations": self.correlations.to_dict(),
                "descriptor_feature_map": self.descriptor_feature_map,
                "total_ratings": self.total_ratings,
                "mean_rating": self.mean_rating,
                "vibe_consistency": float(self.vibe_consistency),
                "computed_at": to_iso(self.computed_at),
                "counters": self.counters.to_dict(),
                "decipher_progress": float(self.decipher_progress),
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PreferenceModel:
        with malformed("preference model"):
            mapping = data.get("descriptor_feature_map")
            mean_rating = data.get("mean_rating")
            return cls(
                user_id=str(data["user_id"]),
                correlations=FeatureCorrelations.from_dict(data.get("correlations") or {}),
                descriptor_feature_map=(
                    {k: {f: float(v) for f, v in m.items()} for k, m in mapping.items()}
                    if mapping
                    else None
                ),
                total_ratings=int(data.get("total_ratings", 0)),
                mean_rating=None if mean_rating is None else float(mean_rating),
                vibe_consistency=float(data.get("vibe_consistency", 0.0)),
                computed_at=from_iso(data.get("computed_at")),
                counters=PredictionCounters.from_dict(data.get("counters") or {}),
                decipher_progress=float(data.get("decipher_progress", 0.0)),
                **{f: FeatureRange.from_dict(data[f]) for f in RANGE_FEATURES},
            )


# ---------------------------------------------------------------------------
# Patterns, episodes, consolidated tastes
# ---------------------------------------------------------------------------


@dataclass
class PatternState:
    """A named behavioural regularity with a lifecycle.

    Attributes:
        id: Stable pattern identifier (e.g. ``"critical_ear"``).
        name: Human-readable name.
        description: Short explanation of the evidence.
        category: Pattern family.
        status: Current lifecycle state.
        confidence: Detection confidence in [0, 1] (max over detections).
        first_detected: First time the detector fired.
        last_confirmed: Most recent time the detector fired.
        occurrence_count: Number of runs in which the detector fired.
        importance_score: Combined graph importance (or confidence fallback).
    """

    id: str
    name: str
    description: str
    category: PatternCategory
    status: PatternStatus
    confidence: float
    first_detected: datetime
    last_confirmed: datetime
    occurrence_count: int = 1
    importance_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "status": self.status.value,
            "confidence": float(self.confidence),
            "first_detected": to_iso(self.first_detected),
            "last_confirmed": to_iso(self.last_confirmed),
            "occurrence_count": self.occurrence_count,
            "importance_score": float(self.importance_score),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PatternState:
        with malformed("pattern state"):
            return cls(
                id=str(data["id"]),
                name=str(data["name"]),
                description=str(data.get("description", "")),
                category=PatternCategory(data["category"]),
                status=PatternStatus(data["status"]),
                confidence=float(data["confidence"]),
                first_detected=from_iso(data["first_detected"]),
                last_confirmed=from_iso(data["last_confirmed"]),
                occurrence_count=int(data.get("occurrence_count", 1)),
                importance_score=float(data.get("importance_score", 0.0)),
            )


@dataclass
class Episode:
    """A burst of temporally clustered rating activity.

    Attributes:
        id: Deterministic id derived from the start time.
        start_time: Timestamp of the first member event.
        end_time: Timestamp of the last member event.
        member_events: Item ids of the member events, in time order.
        patterns_detected: Pattern ids exhibited by the history up to the end
            of this episode.
        emotional_tone: ``(avg_rating - 5) / 5``, in [-1, 1].
        genre_focus: Up to five most frequent genres.
        artist_focus: Up to three most frequent artists.
        avg_rating: Mean rating of member events.
        rating_variance: Population variance of member ratings.
    """

    id: str
    start_time: datetime
    end_time: datetime
    member_events: list[str]
    patterns_detected: list[str]
    emotional_tone: float
    genre_focus: list[str]
    artist_focus: list[str]
    avg_rating: float
    rating_variance: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "member_events": list(self.member_events),
            "patterns_detected": list(self.patterns_detected),
            "emotional_tone": float(self.emotional_tone),
            "genre_focus": list(self.genre_focus),
            "artist_focus": list(self.artist_focus),
            "avg_rating": float(self.avg_rating),
            "rating_variance": float(self.rating_variance),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Episode:
        with malformed("episode"):
            return cls(
                id=str(data["id"]),
                start_time=from_iso(data["start_time"]),
                end_time=from_iso(data["end_time"]),
                member_events=[str(e) for e in data["member_events"]],
                patterns_detected=[str(p) for p in data.get("patterns_detected", [])],
                emotional_tone=float(data["emotional_tone"]),
                genre_focus=[str(g) for g in data.get("genre_focus", [])],
                artist_focus=[str(a) for a in data.get("artist_focus", [])],
                avg_rating=float(data["avg_rating"]),
                rating_variance=float(data["rating_variance"]),
            )


@dataclass
class ConsolidatedTaste:
    """A genre, artist or descriptor the user reliably rates well."""

    name: str
    type: TasteType
    trend: Trend
    recent_avg: float
    older_avg: float
    total_reviews: int
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "trend": self.trend.value,
            "recent_avg": float(self.recent_avg),
            "older_avg": float(self.older_avg),
            "total_reviews": self.total_reviews,
            "confidence": float(self.confidence),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsolidatedTaste:
        with malformed("consolidated taste"):
            return cls(
                name=str(data["name"]),
                type=TasteType(data["type"]),
                trend=Trend(data["trend"]),
                recent_avg=float(data["recent_avg"]),
                older_avg=float(data["older_avg"]),
                total_reviews=int(data["total_reviews"]),
                confidence=float(data["confidence"]),
            )


# ---------------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------------


@dataclass
class ListeningSignature:
    """Seven-dimensional activation profile of listening modes, each in [0, 1]."""

    discovery: float = 0.0
    comfort: float = 0.0
    deep_dive: float = 0.0
    reactive: float = 0.0
    emotional: float = 0.0
    social: float = 0.0
    aesthetic: float = 0.0

    DIMENSIONS = (
        "discovery",
        "comfort",
        "deep_dive",
        "reactive",
        "emotional",
        "social",
        "aesthetic",
    )

    def to_dict(self) -> dict[str, float]:
        return {d: float(getattr(self, d)) for d in self.DIMENSIONS}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ListeningSignature:
        with malformed("listening signature"):
            return cls(**{d: float(data[d]) for d in cls.DIMENSIONS})


@dataclass
class RatingStyle:
    """Summary of how a user distributes ratings."""

    mean: float
    std_dev: float
    skew: RatingSkew

    def to_dict(self) -> dict[str, Any]:
        return {"mean": float(self.mean), "std_dev": float(self.std_dev), "skew": self.skew.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RatingStyle:
        with malformed("rating style"):
            return cls(
                mean=float(data["mean"]),
                std_dev=float(data["std_dev"]),
                skew=RatingSkew(data["skew"]),
            )


@dataclass
class DriftAlert:
    """A detected behavioural change.

    Attributes:
        id: Deterministic id (``drift_<sequence>``).
        type: Kind of change.
        description: Human-readable summary.
        magnitude: Significance in [0, 1].
        old_value: Previous value (any JSON-safe value).
        new_value: Current value (any JSON-safe value).
        affected_patterns: Pattern ids involved, if any.
        detected_at: When the change was detected.
        acknowledged: Whether a caller has dismissed the alert.
    """

    id: str
    type: DriftType
    description: str
    magnitude: float
    old_value: Any
    new_value: Any
    affected_patterns: list[str]
    detected_at: datetime
    acknowledged: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "magnitude": float(self.magnitude),
            "old_value": self.old_value,
            "new_value": self.new_value,
            "affected_patterns": list(self.affected_patterns),
            "detected_at": to_iso(self.detected_at),
            "acknowledged": self.acknowledged,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DriftAlert:
        with malformed("drift alert"):
            return cls(
                id=str(data["id"]),
                type=DriftType(data["type"]),
                description=str(data.get("description", "")),
                magnitude=float(data["magnitude"]),
                old_value=data.get("old_value"),
                new_value=data.get("new_value"),
                affected_patterns=[str(p) for p in data.get("affected_patterns", [])],
                detected_at=from_iso(data["detected_at"]),
                acknowledged=bool(data.get("acknowledged", False)),
            )


# ---------------------------------------------------------------------------
# Predictions
# ---------------------------------------------------------------------------


@dataclass
class Prediction:
    """An ephemeral rating prediction for an item of interest.

    Attributes:
        prediction_id: Handle used to report the realised rating later.
        user_id: The user the prediction is for.
        predicted_rating: Predicted score in [0, 10], one decimal.
        range_min: Lower bound of the plausible range.
        range_max: Upper bound of the plausible range.
        suggested_descriptors: Up to five descriptors matching the features.
        confidence: Confidence in [0.1, 0.95].
        reasoning: One to three short explanation phrases.
        created_at: When the prediction was made.
        item_id: The item, when known.
        feature_vector: Features the prediction was based on, if any.
    """

    prediction_id: str
    user_id: str
    predicted_rating: float
    range_min: float
    range_max: float
    suggested_descriptors: list[str]
    confidence: float
    reasoning: list[str]
    created_at: datetime
    item_id: str | None = None
    feature_vector: FeatureVector | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "prediction_id": self.prediction_id,
            "user_id": self.user_id,
            "item_id": self.item_id,
            "predicted_rating": float(self.predicted_rating),
            "range_min": float(self.range_min),
            "range_max": float(self.range_max),
            "suggested_descriptors": list(self.suggested_descriptors),
            "confidence": float(self.confidence),
            "reasoning": list(self.reasoning),
            "created_at": to_iso(self.created_at),
            "feature_vector": self.feature_vector.to_dict() if self.feature_vector else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Prediction:
        with malformed("prediction"):
            fv = data.get("feature_vector")
            return cls(
                prediction_id=str(data["prediction_id"]),
                user_id=str(data["user_id"]),
                item_id=data.get("item_id"),
                predicted_rating=float(data["predicted_rating"]),
                range_min=float(data["range_min"]),
                range_max=float(data["range_max"]),
                suggested_descriptors=list(data.get("suggested_descriptors", [])),
                confidence=float(data["confidence"]),
                reasoning=list(data.get("reasoning", [])),
                created_at=from_iso(data["created_at"]),
                feature_vector=FeatureVector.from_dict(fv) if fv else None,
            )


@dataclass
class PredictionOutcome:
    """Result of comparing a prediction with the realised rating."""

    prediction_id: str
    predicted_rating: float
    actual_rating: float
    difference: float
    match_quality: MatchQuality
    is_match: bool
    is_surprise: bool
    is_perfect: bool
    descriptor_match_count: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    decipher_progress: float = 0.0
    streak_message: str | None = None
    decipher_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "prediction_id": self.prediction_id,
            "predicted_rating": float(self.predicted_rating),
            "actual_rating": float(self.actual_rating),
            "difference": float(self.difference),
            "match_quality": self.match_quality.value,
            "is_match": self.is_match,
            "is_surprise": self.is_surprise,
            "is_perfect": self.is_perfect,
            "descriptor_match_count": self.descriptor_match_count,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "decipher_progress": float(self.decipher_progress),
            "streak_message": self.streak_message,
            "decipher_message": self.decipher_message,
        }


@dataclass(frozen=True)
class PredictionHistoryEntry:
    """Immutable audit record of one realised prediction."""

    user_id: str
    prediction_id: str
    item_id: str | None
    predicted_rating: float
    predicted_descriptors: tuple[str, ...]
    confidence: float
    actual_rating: float
    actual_descriptors: tuple[str, ...]
    match_quality: MatchQuality
    descriptor_match_count: int
    was_surprise: bool
    feature_vector: FeatureVector | None
    reasoning: tuple[str, ...]
    rated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "prediction_id": self.prediction_id,
            "item_id": self.item_id,
            "predicted_rating": float(self.predicted_rating),
            "predicted_descriptors": list(self.predicted_descriptors),
            "confidence": float(self.confidence),
            "actual_rating": float(self.actual_rating),
            "actual_descriptors": list(self.actual_descriptors),
            "match_quality": self.match_quality.value,
            "descriptor_match_count": self.descriptor_match_count,
            "was_surprise": self.was_surprise,
            "feature_vector": self.feature_vector.to_dict() if self.feature_vector else None,
            "reasoning": list(self.reasoning),
            "rated_at": to_iso(self.rated_at),
        }
