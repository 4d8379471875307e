"""Sea animal image classification.

Orchestrates one prediction: load labels, preprocess the image, run the ONNX
model, and pick the arg-max class. Failures never escape ``predict``; they are
returned as an ``Err`` tagged with the stage that failed, and ``Err.to_record``
turns them into the sentinel record shown to users.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import numpy as np

from reefid.ml.labels import FALLBACK_LABELS
from reefid.ml.model_manager import ShapeMismatchError, declared_num_classes
from reefid.ml.preprocessing import prepare_input

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from PIL import Image

    from reefid.config import Settings
    from reefid.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


class ErrorKind(StrEnum):
    RESOURCE_LOAD = "resource_load"
    DECODE = "decode"
    PREPROCESS = "preprocess"
    INVOCATION = "invocation"
    SHAPE_MISMATCH = "shape_mismatch"


class PredictionError(Exception):
    """A prediction stage failed."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


@dataclass(frozen=True)
class PredictionRecord:
    """Outcome of one prediction, or the sentinel when it failed."""

    class_index: int
    class_name: str
    confidence: float
    all_probabilities: tuple[float, ...]
    all_labels: tuple[str, ...]

    @property
    def is_error(self) -> bool:
        return self.class_index < 0


def sentinel_record(message: str) -> PredictionRecord:
    """Build the fixed record that stands in for any failed prediction."""
    return PredictionRecord(
        class_index=-1,
        class_name=f"Error: {message}",
        confidence=0.0,
        all_probabilities=(0.0,) * len(FALLBACK_LABELS),
        all_labels=FALLBACK_LABELS,
    )


@dataclass(frozen=True)
class Ok:
    record: PredictionRecord

    def to_record(self) -> PredictionRecord:
        return self.record


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    def to_record(self) -> PredictionRecord:
        return sentinel_record(self.message)


PredictionOutcome = Ok | Err


def select_argmax(probabilities: Sequence[float]) -> tuple[int, float]:
    """Return ``(index, value)`` of the largest probability.

    Only a strictly greater value replaces the running maximum, so ties go to
    the lowest index.
    """
    if not probabilities:
        raise ValueError("Cannot select from an empty probability vector")

    max_index = 0
    max_prob = probabilities[0]
    for i in range(1, len(probabilities)):
        if probabilities[i] > max_prob:
            max_prob = probabilities[i]
            max_index = i
    return max_index, max_prob


def decode_output(buffer: bytes) -> tuple[float, ...]:
    """Read a native-order float32 output buffer in declared order."""
    return tuple(float(v) for v in np.frombuffer(buffer, dtype=np.float32))


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


@contextmanager
def _stage(kind: ErrorKind) -> Iterator[None]:
    """Tag any failure raised inside the block with ``kind``."""
    try:
        yield
    except PredictionError:
        raise
    except ShapeMismatchError as exc:
        raise PredictionError(ErrorKind.SHAPE_MISMATCH, _describe(exc)) from exc
    except Exception as exc:
        raise PredictionError(kind, _describe(exc)) from exc


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def predict(self, image: Image.Image) -> PredictionOutcome:
        """Classify an RGB image of any resolution."""
        ...


class SeaAnimalClassifier:
    """Runs the bundled sea animal model over a single image."""

    def __init__(self, settings: Settings, model_manager: ModelManager) -> None:
        self._settings = settings
        self._models = model_manager

    @property
    def model_name(self) -> str:
        return self._settings.model_filename

    def predict(self, image: Image.Image) -> PredictionOutcome:
        """Classify ``image``; never raises."""
        try:
            record = self._predict(image)
        except PredictionError as exc:
            logger.exception("Error during prediction (%s)", exc.kind)
            return Err(kind=exc.kind, message=exc.message)
        except Exception as exc:
            logger.exception("Unexpected error during prediction")
            return Err(kind=ErrorKind.INVOCATION, message=_describe(exc))
        return Ok(record)

    def predict_record(self, image: Image.Image) -> PredictionRecord:
        """Classify ``image`` and return the record, or the sentinel on failure."""
        return self.predict(image).to_record()

    def _predict(self, image: Image.Image) -> PredictionRecord:
        settings = self._settings

        with _stage(ErrorKind.RESOURCE_LOAD):
            labels = self._models.get_labels(settings.labels_path)
        logger.debug("Loaded labels: %s", labels)
        if not labels:
            raise PredictionError(ErrorKind.RESOURCE_LOAD, f"No class labels in {settings.labels_path}")

        with _stage(ErrorKind.PREPROCESS):
            buffer = prepare_input(image, settings.input_size)

        output = self._run_model(buffer, len(labels))

        probabilities = decode_output(output)
        if len(probabilities) != len(labels):
            raise PredictionError(
                ErrorKind.SHAPE_MISMATCH,
                f"Decoded {len(probabilities)} probabilities for {len(labels)} labels",
            )

        max_index, max_prob = select_argmax(probabilities)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Class probabilities: %s",
                ", ".join(f"{label}: {prob}" for label, prob in zip(labels, probabilities, strict=True)),
            )

        return PredictionRecord(
            class_index=max_index,
            class_name=labels[max_index],
            confidence=max_prob,
            all_probabilities=probabilities,
            all_labels=labels,
        )

    def _run_model(self, buffer: bytes, num_classes: int) -> bytes:
        # The session is only referenced from this frame, so a per-call
        # session is dropped as soon as the forward pass returns.
        with ExitStack() as stack:
            with _stage(ErrorKind.RESOURCE_LOAD):
                session = stack.enter_context(self._models.open_session(self._settings.model_path))

            with _stage(ErrorKind.INVOCATION):
                declared = declared_num_classes(session)
            if declared is not None and declared != num_classes:
                raise PredictionError(
                    ErrorKind.SHAPE_MISMATCH,
                    f"Model has {declared} outputs but {num_classes} labels were loaded",
                )

            logger.debug("Running model inference")
            with _stage(ErrorKind.INVOCATION):
                return self._models.invoke(session, buffer, num_classes)
