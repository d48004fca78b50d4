"""
Deep-feature recognizer comparing embeddings by cosine similarity.

The probe is compared against every enrolled embedding and the maximum
similarity wins: higher is better, and a probe matches when
``best_similarity >= threshold``.
"""

import logging
from collections import Counter
from dataclasses import dataclass

import numpy as np

from facialauth.errors import ExtractionError, FormatError
from facialauth.recognition.base import Recognizer, Sample, require_array, require_labels

logger = logging.getLogger(__name__)


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    # inputs are usually normalized already, but guard anyway
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return matrix / np.maximum(norms, 1e-6)


@dataclass
class _EmbeddingState:
    embeddings: np.ndarray
    labels: np.ndarray


class EmbeddingRecognizer(Recognizer):
    """Nearest enrolled embedding by cosine similarity."""

    algorithm = "embedding_similarity"
    higher_is_better = True

    def __init__(self, threshold: float, embedding_dim: int | None = None):
        """
        Args:
            threshold: Minimum cosine similarity for a match (typical: 0.3-0.5)
            embedding_dim: Expected embedding size. If None, the most common size
                among the usable training samples is used.
        """
        super().__init__(threshold)
        self.embedding_dim = embedding_dim

    def prepare(self, samples: list[Sample]) -> list[Sample]:
        candidates: list[tuple[int, np.ndarray, str]] = []
        for i, (descriptor, label) in enumerate(samples):
            vec = np.asarray(descriptor, dtype=np.float32).ravel()
            if vec.size == 0 or not np.all(np.isfinite(vec)) or not np.any(vec):
                logger.warning(f"Skipping sample {i} ({label}): empty or degenerate embedding")
                continue
            candidates.append((i, vec, str(label)))

        dim = self.embedding_dim
        if dim is None and candidates:
            # most common size wins, ties go to the earliest seen
            dim = Counter(vec.size for _, vec, _ in candidates).most_common(1)[0][0]

        usable: list[Sample] = []
        for i, vec, label in candidates:
            if vec.size != dim:
                logger.warning(
                    f"Skipping sample {i} ({label}): embedding has {vec.size} dimensions, "
                    f"expected {dim}"
                )
                continue
            usable.append((vec, label))
        return usable

    def _fit(self, descriptors, labels, n_labels):
        embeddings = _normalize_rows(np.stack(descriptors).astype(np.float32))
        return {"embeddings": embeddings, "labels": labels}

    def _build_state(self, model):
        embeddings = require_array(model, "embeddings", ndim=2)
        labels = require_labels(model, embeddings.shape[0])
        if embeddings.shape[1] == 0:
            raise FormatError("Embeddings have zero dimensions")
        if self.embedding_dim is not None and embeddings.shape[1] != self.embedding_dim:
            raise FormatError(
                f"Model embeddings have {embeddings.shape[1]} dimensions, "
                f"expected {self.embedding_dim}"
            )
        if not np.all(np.isfinite(embeddings)):
            raise FormatError("Embeddings contain non-finite values")
        return _EmbeddingState(
            embeddings=_normalize_rows(embeddings.astype(np.float32)),
            labels=labels,
        )

    def _score(self, state: _EmbeddingState, descriptor):
        vec = np.asarray(descriptor, dtype=np.float32).ravel()
        dim = state.embeddings.shape[1]
        if vec.size != dim:
            raise ExtractionError(f"Probe embedding has {vec.size} dimensions, expected {dim}")
        norm = float(np.linalg.norm(vec))
        if not np.isfinite(norm) or norm < 1e-6:
            raise ExtractionError("Probe embedding is degenerate")

        similarities = state.embeddings @ (vec / norm)
        best = int(np.argmax(similarities))
        return float(similarities[best]), int(state.labels[best])
