"""
Recognizer interface shared by every matching algorithm.

Each variant owns its comparison direction: ``predict`` always returns a
MatchDecision whose ``is_match`` is already normalized, so callers never need
to know whether a lower or a higher score is better.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import numpy as np

from facialauth import model_store
from facialauth.errors import FormatError, InsufficientData
from facialauth.model_store import Model

logger = logging.getLogger(__name__)

# (descriptor, identity label)
Sample = tuple[np.ndarray, str]


@dataclass(frozen=True)
class MatchDecision:
    """Result of comparing one probe descriptor against a trained model."""

    is_match: bool
    score: float
    matched_label: str | None


class Recognizer(ABC):
    """Trainable, persistable face matcher."""

    algorithm: str = ""
    higher_is_better: bool = False

    def __init__(self, threshold: float):
        self.threshold = float(threshold)
        self._model: Model | None = None
        self._state: Any = None

    @property
    def ready(self) -> bool:
        return self._state is not None

    @property
    def model(self) -> Model | None:
        return self._model

    def is_match(self, score: float) -> bool:
        """Apply the threshold in this variant's comparison direction."""
        if self.higher_is_better:
            return score >= self.threshold
        return score <= self.threshold

    def is_better(self, score: float, other: float | None) -> bool:
        """True if score is a better match than other (None counts as worst)."""
        if other is None:
            return True
        if self.higher_is_better:
            return score > other
        return score < other

    def train(self, samples: Iterable[Sample], min_samples: int = 1) -> Model:
        """
        Train on labeled samples and make the recognizer ready.

        Args:
            samples: (descriptor, label) pairs
            min_samples: Minimum number of usable samples required

        Returns:
            The trained Model, ready to be persisted

        Raises:
            InsufficientData: If fewer than min_samples usable samples remain
        """
        usable = self.prepare(list(samples))
        needed = max(1, min_samples)
        if len(usable) < needed:
            raise InsufficientData(
                f"{self.algorithm}: {len(usable)} usable sample(s), at least {needed} required"
            )

        # Labels keep first-appearance order
        label_set = tuple(dict.fromkeys(label for _, label in usable))
        index = {label: i for i, label in enumerate(label_set)}
        labels = np.array([index[label] for _, label in usable], dtype=np.int32)

        payload = self._fit([descriptor for descriptor, _ in usable], labels, len(label_set))
        model = Model(algorithm=self.algorithm, label_set=label_set, payload=payload)
        self.load(model)

        logger.info(
            f"Trained {self.algorithm} on {len(usable)} sample(s), "
            f"{len(label_set)} label(s)"
        )
        return model

    def load(self, model: Model) -> None:
        """
        Make a trained model the active one.

        The payload is validated completely before anything is replaced, so a
        rejected model leaves the recognizer exactly as it was.

        Raises:
            FormatError: On algorithm tag mismatch or an invalid payload
        """
        if model.algorithm != self.algorithm:
            raise FormatError(
                f"Model algorithm {model.algorithm} is incompatible with {self.algorithm}"
            )
        state = self._build_state(model)
        self._model, self._state = model, state

    def load_bytes(self, data: bytes) -> None:
        """Load a serialized model container."""
        self.load(model_store.loads(data, expected_algorithm=self.algorithm))

    def predict(self, descriptor: np.ndarray) -> MatchDecision:
        """
        Compare a probe descriptor against the loaded model.

        Raises:
            ExtractionError: If the descriptor does not have the model's shape
            RuntimeError: If no model has been trained or loaded
        """
        if self._state is None or self._model is None:
            raise RuntimeError(f"{self.algorithm} recognizer has no model loaded")
        score, label_index = self._score(self._state, descriptor)
        return MatchDecision(
            is_match=self.is_match(score),
            score=score,
            matched_label=self._model.label_set[label_index],
        )

    @abstractmethod
    def prepare(self, samples: list[Sample]) -> list[Sample]:
        """Normalize samples, dropping or rejecting unusable ones."""

    @abstractmethod
    def _fit(self, descriptors: list[np.ndarray], labels: np.ndarray, n_labels: int) -> dict:
        """Compute the payload arrays for a model."""

    @abstractmethod
    def _build_state(self, model: Model) -> Any:
        """Validate a payload and build the in-memory matching state."""

    @abstractmethod
    def _score(self, state: Any, descriptor: np.ndarray) -> tuple[float, int]:
        """Return (best score, label index) for a probe."""


def require_array(model: Model, name: str, ndim: int) -> np.ndarray:
    """Fetch a payload array, checking presence and dimensionality."""
    arr = model.payload.get(name)
    if arr is None:
        raise FormatError(f"{model.algorithm} payload is missing '{name}'")
    if arr.ndim != ndim:
        raise FormatError(f"{model.algorithm} payload '{name}' must be {ndim}-D, got {arr.ndim}-D")
    if not np.issubdtype(arr.dtype, np.number):
        raise FormatError(f"{model.algorithm} payload '{name}' is not numeric")
    return arr


def require_labels(model: Model, rows: int) -> np.ndarray:
    """Fetch the per-row label indices and check them against the label set."""
    labels = require_array(model, "labels", ndim=1)
    if not np.issubdtype(labels.dtype, np.integer):
        raise FormatError(f"{model.algorithm} labels must be integers")
    if labels.shape[0] != rows:
        raise FormatError(f"{model.algorithm} has {rows} rows but {labels.shape[0]} labels")
    if rows == 0:
        raise FormatError(f"{model.algorithm} model holds no samples")
    if labels.min() < 0 or labels.max() >= len(model.label_set):
        raise FormatError(f"{model.algorithm} label index out of range")
    return labels.astype(np.int64)
