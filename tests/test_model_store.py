"""Tests for the versioned model container."""

import io
import json
import zipfile
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest

from facialauth import model_store
from facialauth.errors import FormatError
from facialauth.model_store import Model, dumps, loads, read_model, write_model


def _model(**overrides) -> Model:
    fields = {
        "algorithm": "embedding_similarity",
        "label_set": ("alice", "bob"),
        "payload": {
            "embeddings": np.eye(2, 4, dtype=np.float32),
            "labels": np.array([0, 1], dtype=np.int32),
        },
    }
    fields.update(overrides)
    return Model(**fields)


def _container(header: dict | None, **arrays) -> bytes:
    if header is not None:
        arrays["__header__"] = np.frombuffer(json.dumps(header).encode(), dtype=np.uint8)
    bio = io.BytesIO()
    np.savez(bio, **arrays)
    return bio.getvalue()


class TestModel:
    """Test Model construction invariants."""

    def test_payload_is_read_only(self):
        model = _model()
        with pytest.raises(ValueError):
            model.payload["labels"][0] = 5
        with pytest.raises(TypeError):
            model.payload["extra"] = np.zeros(1)

    def test_payload_is_copied(self):
        labels = np.array([0, 1], dtype=np.int32)
        model = _model(payload={"labels": labels})
        labels[0] = 7
        assert model.payload["labels"][0] == 0

    def test_unknown_algorithm(self):
        with pytest.raises(FormatError, match="Unknown algorithm"):
            _model(algorithm="classic_magic")

    def test_empty_label_set(self):
        with pytest.raises(FormatError, match="empty"):
            _model(label_set=())

    def test_duplicate_labels(self):
        with pytest.raises(FormatError, match="duplicates"):
            _model(label_set=("alice", "alice"))

    def test_non_string_labels(self):
        with pytest.raises(FormatError, match="strings"):
            _model(label_set=(1, 2))

    def test_created_at_is_utc(self):
        assert _model().created_at.utcoffset().total_seconds() == 0


class TestSerialization:
    """Test dumps/loads validation."""

    def test_round_trip(self):
        model = _model()
        restored = loads(dumps(model))

        assert restored.algorithm == model.algorithm
        assert restored.label_set == ("alice", "bob")
        assert restored.version == model_store.FORMAT_VERSION
        assert restored.created_at == model.created_at
        np.testing.assert_array_equal(restored.payload["embeddings"], model.payload["embeddings"])
        np.testing.assert_array_equal(restored.payload["labels"], model.payload["labels"])

    def test_expected_algorithm_mismatch(self):
        with pytest.raises(FormatError, match="incompatible"):
            loads(dumps(_model()), expected_algorithm="classic_lbph")

    def test_expected_algorithm_match(self):
        assert loads(dumps(_model()), expected_algorithm="embedding_similarity").algorithm == (
            "embedding_similarity"
        )

    def test_newer_version_rejected(self):
        data = dumps(_model(version=model_store.MAX_SUPPORTED_VERSION + 1))
        with pytest.raises(FormatError, match="newer than supported"):
            loads(data)

    @pytest.mark.parametrize("version", [0, -1, "1", True, None])
    def test_invalid_version_rejected(self, version):
        header = {
            "magic": model_store.MAGIC,
            "version": version,
            "algorithm": "embedding_similarity",
            "created_at": "2024-01-01T00:00:00+00:00",
            "label_set": ["alice"],
        }
        with pytest.raises(FormatError, match="version"):
            loads(_container(header))

    def test_garbage_bytes(self):
        with pytest.raises(FormatError):
            loads(b"definitely not a model")

    def test_plain_npy_file_rejected(self):
        bio = io.BytesIO()
        np.save(bio, np.arange(4))
        with pytest.raises(FormatError, match="not an npz archive"):
            loads(bio.getvalue())

    def test_non_npy_header_member_rejected(self):
        bio = io.BytesIO()
        with zipfile.ZipFile(bio, "w") as zf:
            zf.writestr("__header__.npy", b"not an npy array")
        with pytest.raises(FormatError, match="not a numpy array"):
            loads(bio.getvalue())

    def test_non_npy_payload_member_rejected(self):
        data = _container(
            {
                "magic": model_store.MAGIC,
                "version": 1,
                "algorithm": "embedding_similarity",
                "created_at": "2024-01-01T00:00:00+00:00",
                "label_set": ["alice"],
            }
        )
        bio = io.BytesIO(data)
        with zipfile.ZipFile(bio, "a") as zf:
            zf.writestr("payload/labels.npy", b"raw bytes")
        with pytest.raises(FormatError, match="not a numpy array"):
            loads(bio.getvalue())

    def test_truncated_container(self):
        data = dumps(_model())
        with pytest.raises(FormatError):
            loads(data[: len(data) // 2])

    def test_missing_header(self):
        with pytest.raises(FormatError, match="header is missing"):
            loads(_container(None, labels=np.array([0])))

    def test_bad_magic(self):
        with pytest.raises(FormatError, match="magic"):
            loads(_container({"magic": "something-else"}))

    def test_unknown_algorithm_in_header(self):
        header = {
            "magic": model_store.MAGIC,
            "version": 1,
            "algorithm": "classic_magic",
            "created_at": "2024-01-01T00:00:00+00:00",
            "label_set": ["alice"],
        }
        with pytest.raises(FormatError, match="Unknown model algorithm"):
            loads(_container(header))

    def test_pickled_payload_rejected(self):
        """Object arrays would need pickle and must never be loaded."""
        header = {
            "magic": model_store.MAGIC,
            "version": 1,
            "algorithm": "embedding_similarity",
            "created_at": "2024-01-01T00:00:00+00:00",
            "label_set": ["alice"],
        }
        arrays = {"payload/labels": np.array([{"x": 1}], dtype=object)}
        arrays["__header__"] = np.frombuffer(json.dumps(header).encode(), dtype=np.uint8)
        bio = io.BytesIO()
        np.savez(bio, **arrays)

        with pytest.raises(FormatError):
            loads(bio.getvalue())


class TestAtomicWrite:
    """Test write_model/read_model on disk."""

    def test_write_and_read(self, temp_dir: Path):
        target = temp_dir / "models" / "alice.npz"
        assert write_model(_model(), target) == target

        model = read_model(target, expected_algorithm="embedding_similarity")
        assert model.label_set == ("alice", "bob")
        assert [p.name for p in target.parent.iterdir()] == ["alice.npz"]

    def test_read_missing_file(self, temp_dir: Path):
        with pytest.raises(FileNotFoundError):
            read_model(temp_dir / "nope.npz")

    def test_failed_write_keeps_previous_model(self, temp_dir: Path):
        """A write that fails before the rename leaves the old model intact."""
        target = temp_dir / "alice.npz"
        write_model(_model(label_set=("alice", "bob")), target)
        original = target.read_bytes()

        with patch("facialauth.model_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                write_model(_model(label_set=("carol", "dave")), target)

        assert target.read_bytes() == original
        assert [p.name for p in temp_dir.iterdir()] == ["alice.npz"]

    def test_failed_first_write_leaves_nothing(self, temp_dir: Path):
        target = temp_dir / "alice.npz"
        with patch("facialauth.model_store.os.fsync", side_effect=OSError("io error")):
            with pytest.raises(OSError):
                write_model(_model(), target)

        assert list(temp_dir.iterdir()) == []

    def test_overwrite_replaces_model(self, temp_dir: Path):
        target = temp_dir / "alice.npz"
        write_model(_model(label_set=("alice", "bob")), target)
        write_model(_model(label_set=("carol", "dave")), target)

        assert read_model(target).label_set == ("carol", "dave")
