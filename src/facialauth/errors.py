"""
Exception hierarchy shared by training, model persistence and authentication.

Only the decision engine turns these into decision outcomes; everything else
lets them propagate.
"""


class FacialAuthError(Exception):
    """Base class for all facialauth errors."""


class ConfigError(FacialAuthError, ValueError):
    """Missing or invalid settings."""


class FormatError(FacialAuthError, ValueError):
    """Corrupt model container or algorithm tag mismatch."""


class ExtractionError(FacialAuthError):
    """No usable descriptor could be produced from a frame (retryable)."""


class ResourceError(FacialAuthError):
    """Frame source or other external resource is unusable."""


class InsufficientData(FacialAuthError, ValueError):
    """Too few usable samples to train a model."""


class ModelExistsError(FacialAuthError, FileExistsError):
    """Refusing to overwrite an existing model without force."""
