"""
Factory module that provides descriptor extractors for each recognition method.

Supported backends:
- 'face_recognition': dlib-based detection (grayscale crops, 128-d embeddings)
- 'insightface': deep learning detection and 512-d embeddings
"""

from types import ModuleType
from typing import Protocol

import numpy as np

from facialauth.config import ExtractorSettings
from facialauth.errors import ConfigError

# Module-level cache for backend modules
_backend_cache: dict[str, ModuleType] = {}


class DescriptorExtractor(Protocol):
    """Turns one RGB frame into a fixed-shape descriptor or raises ExtractionError."""

    dimension: int | None

    def extract(self, frame: np.ndarray) -> np.ndarray: ...


def create_extractor(method: str, settings: ExtractorSettings | None = None) -> DescriptorExtractor:
    """
    Create the extractor matching a recognition method.

    classic_* methods always use grayscale face crops; embedding_similarity
    uses the configured embedding backend.

    Args:
        method: Recognition method tag
        settings: Extraction settings (defaults if None)
    """
    settings = settings or ExtractorSettings()

    if method.startswith("classic_"):
        backend = _get_backend("face_recognition")
        return backend.GrayscaleFaceExtractor(
            face_size=settings.face_size,
            min_face_size=settings.min_face_size_pixels,
        )

    if method != "embedding_similarity":
        raise ConfigError(f"Unknown method: {method}")

    backend = _get_backend(settings.backend)
    if settings.backend == "insightface":
        return backend.InsightFaceExtractor(
            det_thresh=settings.det_thresh,
            min_face_size=settings.min_face_size_pixels,
        )
    return backend.DlibEmbeddingExtractor(min_face_size=settings.min_face_size_pixels)


def _get_backend(backend_name: str) -> ModuleType:
    """
    Get or load the appropriate backend module.

    Uses module-level caching to avoid repeated imports.
    """
    if backend_name in _backend_cache:
        return _backend_cache[backend_name]

    backend: ModuleType
    if backend_name == "face_recognition":
        from facialauth.extractors import dlib_backend

        backend = dlib_backend
    elif backend_name == "insightface":
        from facialauth.extractors import insightface_backend

        backend = insightface_backend
    else:
        raise ConfigError(
            f"Unknown backend: {backend_name}. "
            f"Supported backends: 'face_recognition', 'insightface'"
        )

    _backend_cache[backend_name] = backend
    return backend
