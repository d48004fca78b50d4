"""
Configuration management using Pydantic for validation.

Supports loading from:
- YAML files (primary)
- Environment variables with FACIALAUTH_ prefix
"""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from facialauth.errors import ConfigError

Method = Literal["classic_lbph", "classic_eigen", "classic_fisher", "embedding_similarity"]

# Per-method defaults used when no explicit threshold is configured.
DEFAULT_THRESHOLDS: dict[str, float] = {
    "classic_lbph": 80.0,
    "classic_eigen": 350.0,
    "classic_fisher": 150.0,
    "embedding_similarity": 0.40,
}


class AuthSettings(BaseModel):
    """Recognition and authentication session configuration."""

    method: Method = Field(
        default="classic_lbph",
        description="Recognizer algorithm used for training and authentication",
    )
    threshold: float | None = Field(
        default=None,
        description="Match threshold. Distance ceiling for classic_* methods "
        "(lower = stricter), similarity floor for embedding_similarity "
        "(higher = stricter). None selects the per-method default.",
    )
    timeout_seconds: int = Field(
        default=5,
        ge=1,
        description="Length of one authentication session in seconds",
    )
    min_samples: int = Field(
        default=5,
        ge=1,
        description="Minimum number of usable samples required to train a model",
    )
    frame_interval_ms: int = Field(
        default=50,
        ge=0,
        description="Minimum delay between two sampling attempts",
    )
    missing_model: Literal["fail", "defer"] = Field(
        default="fail",
        description="What a missing model means to the host: 'fail' denies "
        "authentication, 'defer' asks the host to ignore this factor.",
    )

    @model_validator(mode="after")
    def validate_threshold(self):
        """Validate the threshold against the range of the selected method."""
        if self.threshold is None:
            return self
        if self.method == "embedding_similarity":
            if not -1.0 <= self.threshold <= 1.0:
                raise ValueError("embedding_similarity threshold must be within [-1, 1]")
        elif self.threshold < 0:
            raise ValueError(f"{self.method} threshold must be non-negative")
        return self

    @property
    def effective_threshold(self) -> float:
        if self.threshold is not None:
            return self.threshold
        return DEFAULT_THRESHOLDS[self.method]


class CameraSettings(BaseModel):
    """Capture device configuration."""

    device: str = Field(
        default="/dev/video0",
        description="Video device path or numeric index",
    )
    fallback_device: bool = Field(
        default=True,
        description="Try /dev/video1 when the primary device cannot be opened",
    )
    width: int = Field(default=1280, ge=64, description="Requested frame width")
    height: int = Field(default=720, ge=64, description="Requested frame height")
    capture_count: int = Field(
        default=50,
        ge=1,
        description="Number of enrollment images captured per run",
    )
    capture_delay_ms: int = Field(
        default=50,
        ge=0,
        description="Pause between two enrollment captures",
    )


class ExtractorSettings(BaseModel):
    """Face detection and descriptor extraction configuration."""

    backend: Literal["insightface", "face_recognition"] = Field(
        default="insightface",
        description="Embedding backend for embedding_similarity. "
        "insightface yields 512-d embeddings, face_recognition 128-d.",
    )
    face_size: int = Field(
        default=96,
        ge=16,
        description="Edge length of the square grayscale crop used by classic_* methods",
    )
    min_face_size_pixels: int = Field(
        default=80,
        ge=20,
        description="Minimum face size in pixels to detect",
    )
    det_thresh: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="InsightFace detection confidence threshold. "
        "Ignored for face_recognition backend.",
    )


class Settings(BaseSettings):
    """
    Main application settings.

    Can be loaded from:
    - YAML file: Settings.from_yaml("pam_facial.yaml")
    - Environment variables: FACIALAUTH_AUTH__TIMEOUT_SECONDS=10
    """

    model_config = SettingsConfigDict(
        env_prefix="FACIALAUTH_",
        env_nested_delimiter="__",
        extra="ignore",  # Ignore unknown fields for forward compatibility
    )

    basedir: Path = Field(
        default=Path("/etc/pam_facial_auth"),
        description="Base directory holding images/<user>/ and models/<user>.npz",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    auth: AuthSettings = Field(
        default_factory=AuthSettings,
        description="Recognition and session settings",
    )
    camera: CameraSettings = Field(
        default_factory=CameraSettings,
        description="Capture device settings",
    )
    extractor: ExtractorSettings = Field(
        default_factory=ExtractorSettings,
        description="Descriptor extraction settings",
    )

    @field_validator("basedir", mode="before")
    @classmethod
    def parse_basedir(cls, v):
        """Convert string path to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v

    def user_image_dir(self, user: str) -> Path:
        return self.basedir / "images" / user

    def user_model_path(self, user: str) -> Path:
        return self.basedir / "models" / f"{user}.npz"

    @classmethod
    def from_yaml(cls, path: Path | str) -> "Settings":
        """
        Load settings from a YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Settings instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigError: If config cannot be parsed or is invalid
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Top level of {path} must be a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    def to_yaml(self, path: Path | str) -> None:
        """Save settings to a YAML file."""
        path = Path(path)
        data = self.model_dump(mode="json")

        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
