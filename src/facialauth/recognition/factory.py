"""
Factory that maps algorithm tags to recognizer implementations.

Supported methods:
- 'classic_lbph': Local Binary Patterns Histograms (distance, lower = better)
- 'classic_eigen': Eigenfaces (distance, lower = better)
- 'classic_fisher': Fisherfaces (distance, lower = better)
- 'embedding_similarity': cosine similarity of deep embeddings (higher = better)
"""

from facialauth.config import DEFAULT_THRESHOLDS, AuthSettings
from facialauth.errors import ConfigError
from facialauth.recognition.base import Recognizer
from facialauth.recognition.classic import EigenRecognizer, FisherRecognizer, LBPHRecognizer
from facialauth.recognition.embedding import EmbeddingRecognizer

_RECOGNIZERS: dict[str, type[Recognizer]] = {
    cls.algorithm: cls
    for cls in (LBPHRecognizer, EigenRecognizer, FisherRecognizer, EmbeddingRecognizer)
}


def create_recognizer(method: str, threshold: float | None = None, **kwargs) -> Recognizer:
    """
    Create an untrained recognizer for a method.

    Args:
        method: Algorithm tag
        threshold: Match threshold; None selects the method's default
        **kwargs: Variant-specific options (e.g. embedding_dim, num_components)

    Raises:
        ConfigError: If the method is unknown
    """
    try:
        cls = _RECOGNIZERS[method]
    except KeyError:
        raise ConfigError(
            f"Unknown method: {method}. Supported methods: {', '.join(sorted(_RECOGNIZERS))}"
        ) from None

    if threshold is None:
        threshold = DEFAULT_THRESHOLDS[method]
    return cls(threshold, **kwargs)


def recognizer_for(settings: AuthSettings, **kwargs) -> Recognizer:
    """Create the recognizer selected by the authentication settings."""
    return create_recognizer(settings.method, settings.effective_threshold, **kwargs)
