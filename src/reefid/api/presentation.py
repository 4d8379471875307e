"""Screen state for the classifier view.

State is an immutable snapshot; every user-facing event goes through
``reduce`` to produce the next snapshot, and ``render`` turns a snapshot into
the response body.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum

from reefid.api.schemas import ClassifyImageResponse, ClassProbability
from reefid.ml.image_classifier import (
    Err,
    ErrorKind,
    Ok,
    PredictionOutcome,
    PredictionRecord,
)

PERMISSION_DENIED_MESSAGE = "Permission denied: Cannot access images"


class ConfidenceBand(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


BAND_COLORS: dict[ConfidenceBand, str] = {
    ConfidenceBand.HIGH: "#2196F3",
    ConfidenceBand.MEDIUM: "#64B5F6",
    ConfidenceBand.LOW: "#BDBDBD",
}


def confidence_band(probability: float) -> ConfidenceBand:
    if probability > 0.7:
        return ConfidenceBand.HIGH
    if probability > 0.3:
        return ConfidenceBand.MEDIUM
    return ConfidenceBand.LOW


def display_name(label: str) -> str:
    """Upper-case the first character, leave the rest alone."""
    return label[:1].upper() + label[1:]


def to_percent(probability: float) -> int:
    return int(probability * 100)


# ---------------------------------------------------------------------------
# State and events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScreenState:
    image_name: str | None = None
    result: PredictionRecord | None = None
    error_kind: ErrorKind | None = None
    error: str = ""
    is_processing: bool = False


@dataclass(frozen=True)
class ImageSelected:
    image_name: str


@dataclass(frozen=True)
class PredictionSucceeded:
    record: PredictionRecord


@dataclass(frozen=True)
class PredictionFailed:
    """The classifier reported a failure; the sentinel card is shown."""

    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class ProcessingFailed:
    """Something outside the classifier failed; only an error line is shown."""

    message: str
    kind: ErrorKind | None = None


@dataclass(frozen=True)
class PermissionDenied:
    pass


Event = ImageSelected | PredictionSucceeded | PredictionFailed | ProcessingFailed | PermissionDenied


def outcome_event(outcome: PredictionOutcome) -> PredictionSucceeded | PredictionFailed:
    if isinstance(outcome, Ok):
        return PredictionSucceeded(outcome.record)
    return PredictionFailed(kind=outcome.kind, message=outcome.message)


def reduce(state: ScreenState, event: Event) -> ScreenState:
    """Return the state that follows ``state`` after ``event``."""
    if isinstance(event, ImageSelected):
        return ScreenState(image_name=event.image_name, is_processing=True)
    if isinstance(event, PredictionSucceeded):
        return replace(state, result=event.record, error_kind=None, error="", is_processing=False)
    if isinstance(event, PredictionFailed):
        return replace(
            state,
            result=Err(kind=event.kind, message=event.message).to_record(),
            error_kind=event.kind,
            is_processing=False,
        )
    if isinstance(event, ProcessingFailed):
        return replace(
            state,
            result=None,
            error_kind=event.kind,
            error=f"Error: {event.message}",
            is_processing=False,
        )
    if isinstance(event, PermissionDenied):
        return replace(state, error=PERMISSION_DENIED_MESSAGE, is_processing=False)
    raise TypeError(f"Unknown event: {event!r}")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render(state: ScreenState) -> ClassifyImageResponse:
    """Build the result card for a state that holds a prediction."""
    record = state.result
    if record is None:
        raise ValueError("No prediction to render")

    predictions: list[ClassProbability] = []
    for index, probability in enumerate(record.all_probabilities):
        # Rows without a label are not shown.
        if index >= len(record.all_labels):
            break
        label = record.all_labels[index]
        band = confidence_band(probability)
        predictions.append(
            ClassProbability(
                index=index,
                label=label,
                display_name=display_name(label),
                probability=probability,
                percent=to_percent(probability),
                band=band.value,
                color=BAND_COLORS[band],
                is_top=index == record.class_index,
            )
        )

    return ClassifyImageResponse(
        image_name=state.image_name,
        class_index=record.class_index,
        class_name=record.class_name,
        display_name=display_name(record.class_name),
        confidence=record.confidence,
        confidence_percent=to_percent(record.confidence),
        predictions=predictions,
        error_kind=state.error_kind.value if state.error_kind is not None else None,
    )
