"""Shared pytest fixtures for facialauth tests."""

import tempfile
from collections.abc import Generator
from pathlib import Path

import numpy as np
import pytest
import yaml

from facialauth.errors import ExtractionError

FACE_SIZE = 32


class FakeClock:
    """Manually advanced monotonic clock; also usable as a sleep function."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class VectorExtractor:
    """Extractor stub that treats each frame as its own embedding."""

    dimension = 4

    def __init__(self, clock: FakeClock | None = None, cost: float = 0.0):
        self.clock = clock
        self.cost = cost
        self.calls = 0

    def extract(self, frame: np.ndarray) -> np.ndarray:
        self.calls += 1
        if self.clock is not None:
            self.clock.advance(self.cost)
        vec = np.asarray(frame, dtype=np.float32).ravel()
        if not np.any(vec):
            raise ExtractionError("No face found")
        return vec


class MeanColorExtractor:
    """Extractor stub that reduces an RGB image to its mean color."""

    dimension = 3

    def extract(self, frame: np.ndarray) -> np.ndarray:
        vec = np.asarray(frame, dtype=np.float32).mean(axis=(0, 1))
        if not np.any(vec):
            raise ExtractionError("No face found")
        return vec


def make_face(kind: str, rng: np.random.Generator, size: int = FACE_SIZE) -> np.ndarray:
    """Synthetic grayscale 'face' with a per-identity structure plus noise."""
    y, x = np.mgrid[0:size, 0:size]
    if kind == "alice":
        base = x * 255.0 / size
    elif kind == "bob":
        base = ((x // 4 + y // 4) % 2) * 255.0
    else:
        base = rng.uniform(0, 255, (size, size))
    noise = rng.normal(0, 4, (size, size))
    return np.clip(base + noise, 0, 255).astype(np.uint8)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def face_samples(rng) -> list[tuple[np.ndarray, str]]:
    """Three grayscale samples each for alice and bob."""
    return [(make_face(name, rng), name) for name in ["alice", "bob"] for _ in range(3)]


@pytest.fixture
def embedding_samples() -> list[tuple[np.ndarray, str]]:
    """Two well separated identities in a 4-d embedding space."""
    return [
        (np.array([1.0, 0.0, 0.0, 0.0]), "alice"),
        (np.array([0.9, 0.1, 0.0, 0.0]), "alice"),
        (np.array([0.0, 1.0, 0.0, 0.0]), "bob"),
        (np.array([0.0, 0.9, 0.1, 0.0]), "bob"),
    ]


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_config_dict(temp_dir: Path) -> dict:
    """Sample configuration dictionary for testing."""
    return {
        "basedir": str(temp_dir / "facial"),
        "log_level": "INFO",
        "auth": {
            "method": "embedding_similarity",
            "threshold": 0.5,
            "timeout_seconds": 1,
            "min_samples": 2,
            "frame_interval_ms": 0,
        },
        "camera": {"device": "/dev/video0", "capture_count": 3, "capture_delay_ms": 0},
        "extractor": {"backend": "face_recognition"},
    }


@pytest.fixture
def sample_config_yaml(temp_dir: Path, sample_config_dict: dict) -> Path:
    """Create a temporary YAML config file."""
    config_path = temp_dir / "pam_facial.yaml"
    with open(config_path, "w") as f:
        yaml.dump(sample_config_dict, f)
    return config_path


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration between tests."""
    import logging

    # Store original handlers
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level

    yield

    # Restore original state
    root_logger.handlers = original_handlers
    root_logger.level = original_level
