"""
Versioned, self-describing persistence for trained recognizer models.

A model file is a numpy ``.npz`` archive holding a JSON header plus one
numeric array per payload entry:

    __header__          uint8 bytes of a JSON object
                        {magic, version, algorithm, created_at, label_set}
    payload/<name>      algorithm-specific parameter arrays

Archives are always read with ``allow_pickle=False`` so loading a model can
never execute code, and every structural problem is reported as FormatError
rather than a best-effort partial load.
"""

import io
import json
import logging
import os
import tempfile
import zipfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType

import numpy as np

from facialauth.errors import FormatError

logger = logging.getLogger(__name__)

MAGIC = "facialauth-model"
FORMAT_VERSION = 1
MAX_SUPPORTED_VERSION = 1

ALGORITHMS = ("classic_lbph", "classic_eigen", "classic_fisher", "embedding_similarity")

_HEADER_KEY = "__header__"
_PAYLOAD_PREFIX = "payload/"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Model:
    """Immutable result of training: algorithm tag, labels and parameters."""

    algorithm: str
    label_set: tuple[str, ...]
    payload: Mapping[str, np.ndarray]
    version: int = FORMAT_VERSION
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if self.algorithm not in ALGORITHMS:
            raise FormatError(f"Unknown algorithm: {self.algorithm}")

        labels = tuple(self.label_set)
        if not labels:
            raise FormatError("Model label set is empty")
        if not all(isinstance(label, str) for label in labels):
            raise FormatError("Model labels must be strings")
        if len(set(labels)) != len(labels):
            raise FormatError("Model label set contains duplicates")

        frozen = {}
        for name, value in self.payload.items():
            arr = np.array(value, copy=True)
            if arr.dtype == object:
                raise FormatError(f"Payload entry {name} is not numeric")
            arr.setflags(write=False)
            frozen[name] = arr

        object.__setattr__(self, "label_set", labels)
        object.__setattr__(self, "payload", MappingProxyType(frozen))


def dumps(model: Model) -> bytes:
    """Serialize a model into container bytes."""
    header = {
        "magic": MAGIC,
        "version": model.version,
        "algorithm": model.algorithm,
        "created_at": model.created_at.isoformat(),
        "label_set": list(model.label_set),
    }
    arrays = {_HEADER_KEY: np.frombuffer(json.dumps(header).encode("utf-8"), dtype=np.uint8)}
    for name, arr in model.payload.items():
        arrays[_PAYLOAD_PREFIX + name] = arr

    bio = io.BytesIO()
    np.savez_compressed(bio, **arrays)
    return bio.getvalue()


def _entry(archive, name: str) -> np.ndarray:
    # members that are not .npy files come back as raw bytes
    value = archive[name]
    if not isinstance(value, np.ndarray):
        raise FormatError(f"Model entry {name} is not a numpy array")
    return value


def _parse_header(raw: np.ndarray) -> dict:
    if raw.dtype != np.uint8 or raw.ndim != 1:
        raise FormatError("Model header has an invalid encoding")
    try:
        header = json.loads(raw.tobytes().decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FormatError(f"Model header is not valid JSON: {e}") from e
    if not isinstance(header, dict):
        raise FormatError("Model header must be a JSON object")
    if header.get("magic") != MAGIC:
        raise FormatError("Not a facialauth model (bad magic)")
    return header


def loads(data: bytes, expected_algorithm: str | None = None) -> Model:
    """
    Deserialize and fully validate container bytes.

    Args:
        data: Raw container bytes
        expected_algorithm: If given, the container's algorithm tag must equal it

    Returns:
        Validated Model

    Raises:
        FormatError: On any structural, version or tag problem
    """
    try:
        archive = np.load(io.BytesIO(data), allow_pickle=False)
        if not isinstance(archive, np.lib.npyio.NpzFile):
            raise FormatError("Model container is not an npz archive")
        with archive:
            if _HEADER_KEY not in archive.files:
                raise FormatError("Model header is missing")
            header = _parse_header(_entry(archive, _HEADER_KEY))
            payload = {
                name[len(_PAYLOAD_PREFIX):]: _entry(archive, name)
                for name in archive.files
                if name.startswith(_PAYLOAD_PREFIX)
            }
    except FormatError:
        raise
    except (ValueError, OSError, EOFError, KeyError, zipfile.BadZipFile) as e:
        raise FormatError(f"Model container is corrupt: {e}") from e

    version = header.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise FormatError(f"Invalid model version: {version!r}")
    if version > MAX_SUPPORTED_VERSION:
        raise FormatError(
            f"Model version {version} is newer than supported version {MAX_SUPPORTED_VERSION}"
        )

    algorithm = header.get("algorithm")
    if algorithm not in ALGORITHMS:
        raise FormatError(f"Unknown model algorithm: {algorithm!r}")
    if expected_algorithm is not None and algorithm != expected_algorithm:
        raise FormatError(
            f"Model algorithm {algorithm} is incompatible with {expected_algorithm}"
        )

    label_set = header.get("label_set")
    if not isinstance(label_set, list):
        raise FormatError("Model label set is missing")

    try:
        created_at = datetime.fromisoformat(header["created_at"])
    except (KeyError, TypeError, ValueError) as e:
        raise FormatError(f"Invalid model creation time: {e}") from e

    return Model(
        algorithm=algorithm,
        label_set=tuple(label_set),
        payload=payload,
        version=version,
        created_at=created_at,
    )


def write_model(model: Model, path: Path | str) -> Path:
    """
    Atomically write a model to path.

    The container is written to a temporary file in the destination directory
    and renamed over the target only after a complete, fsynced write, so the
    canonical path never holds a half-written model.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = dumps(model)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    logger.info(f"Saved {model.algorithm} model ({len(model.label_set)} label(s)) to {path}")
    return path


def read_model(path: Path | str, expected_algorithm: str | None = None) -> Model:
    """
    Read and validate a model file.

    Raises:
        FileNotFoundError: If no model exists at path
        FormatError: If the file is not a valid, supported model
    """
    path = Path(path)
    data = path.read_bytes()
    model = loads(data, expected_algorithm=expected_algorithm)
    logger.debug(f"Loaded {model.algorithm} model v{model.version} from {path}")
    return model
