"""Error taxonomy for the taste engine."""


class TasteEngineError(Exception):
    """Base exception for all taste engine errors."""


class InsufficientDataError(TasteEngineError):
    """Raised only by strict computations that refuse to fall back to defaults.

    The regular pipeline never raises this: below-threshold inputs resolve
    to the documented default values instead.
    """

    def __init__(self, stage: str, required: int, available: int) -> None:
        self.stage = stage
        self.required = required
        self.available = available
        super().__init__(
            f"{stage} needs at least {required} data points, got {available}"
        )


class UpstreamUnavailableError(TasteEngineError):
    """The audio-feature provider could not be reached or returned an error."""

    def __init__(self, item_id: str, detail: str = "") -> None:
        self.item_id = item_id
        self.detail = detail
        super().__init__(
            f"Feature provider unavailable for item {item_id!r}"
            + (f": {detail}" if detail else "")
        )


class MalformedStateError(TasteEngineError):
    """A persisted blob (graph, episodes, patterns, drift snapshot) is corrupt."""

    def __init__(self, structure: str, detail: str = "") -> None:
        self.structure = structure
        self.detail = detail
        super().__init__(
            f"Malformed persisted {structure}" + (f": {detail}" if detail else "")
        )


class PredictionNotFoundError(TasteEngineError):
    """No pending prediction exists for the given id (unknown or already consumed)."""

    def __init__(self, user_id: str, prediction_id: str) -> None:
        self.user_id = user_id
        self.prediction_id = prediction_id
        super().__init__(
            f"No pending prediction {prediction_id!r} for user {user_id!r}"
        )
