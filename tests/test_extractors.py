"""Tests for descriptor extractors with mocked vision backends."""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from facialauth.config import ExtractorSettings
from facialauth.errors import ConfigError, ExtractionError
from facialauth.extractors import create_extractor, factory
from facialauth.extractors.dlib_backend import (
    DlibEmbeddingExtractor,
    GrayscaleFaceExtractor,
    _largest_face,
)
from facialauth.extractors.insightface_backend import InsightFaceExtractor, _best_face


@pytest.fixture
def frame() -> np.ndarray:
    return np.full((200, 200, 3), 120, dtype=np.uint8)


@pytest.fixture
def mock_face_recognition():
    """Install a fake face_recognition module for the lazy import."""
    mock_fr = MagicMock()
    mock_fr.face_locations.return_value = [(50, 150, 150, 50)]  # 100x100 box
    mock_fr.face_encodings.return_value = [np.random.rand(128)]
    with patch.dict("sys.modules", {"face_recognition": mock_fr}):
        yield mock_fr


def _insight_face(bbox, det_score, embedding=None):
    face = MagicMock()
    face.bbox = bbox
    face.det_score = det_score
    face.normed_embedding = embedding if embedding is not None else np.random.rand(512)
    return face


class TestLargestFace:
    """Test _largest_face box selection."""

    def test_picks_largest(self):
        small = (0, 90, 90, 0)
        large = (0, 150, 150, 0)
        assert _largest_face([small, large], min_face_size=80) == large

    def test_filters_small_faces(self):
        assert _largest_face([(0, 50, 50, 0)], min_face_size=80) is None

    def test_empty(self):
        assert _largest_face([], min_face_size=80) is None


class TestGrayscaleFaceExtractor:
    """Test grayscale face crops for classic recognizers."""

    def test_crop_is_resized(self, mock_face_recognition, frame):
        face = GrayscaleFaceExtractor(face_size=96).extract(frame)

        assert face.shape == (96, 96)
        assert face.dtype == np.uint8
        mock_face_recognition.face_locations.assert_called_once()

    def test_no_face(self, mock_face_recognition, frame):
        mock_face_recognition.face_locations.return_value = []
        with pytest.raises(ExtractionError, match="No face"):
            GrayscaleFaceExtractor().extract(frame)

    def test_face_too_small(self, mock_face_recognition, frame):
        mock_face_recognition.face_locations.return_value = [(50, 90, 90, 50)]
        with pytest.raises(ExtractionError):
            GrayscaleFaceExtractor(min_face_size=80).extract(frame)

    def test_empty_frame(self, mock_face_recognition):
        with pytest.raises(ExtractionError, match="Empty frame"):
            GrayscaleFaceExtractor().extract(np.zeros((0, 0, 3), dtype=np.uint8))
        mock_face_recognition.face_locations.assert_not_called()

    def test_has_no_fixed_dimension(self):
        assert GrayscaleFaceExtractor.dimension is None


class TestDlibEmbeddingExtractor:
    """Test 128-d dlib embeddings."""

    def test_returns_encoding(self, mock_face_recognition, frame):
        embedding = DlibEmbeddingExtractor().extract(frame)

        assert embedding.shape == (128,)
        assert embedding.dtype == np.float32
        _, boxes = mock_face_recognition.face_encodings.call_args[0]
        assert boxes == [(50, 150, 150, 50)]

    def test_encoding_failure(self, mock_face_recognition, frame):
        mock_face_recognition.face_encodings.return_value = []
        with pytest.raises(ExtractionError, match="encoding failed"):
            DlibEmbeddingExtractor().extract(frame)

    def test_missing_library(self, frame):
        with patch.dict("sys.modules", {"face_recognition": None}):
            with pytest.raises(ImportError, match="facialauth\\[dlib\\]"):
                DlibEmbeddingExtractor().extract(frame)


class TestInsightFaceExtractor:
    """Test 512-d InsightFace embeddings."""

    def test_best_face_by_confidence(self):
        app = MagicMock()
        weak = _insight_face([0, 0, 100, 100], 0.6)
        strong = _insight_face([0, 0, 100, 100], 0.9)
        app.get.return_value = [weak, strong]

        assert _best_face(app, np.zeros((10, 10, 3)), min_face=80) is strong

    def test_best_face_filters_small(self):
        app = MagicMock()
        app.get.return_value = [_insight_face([0, 0, 50, 50], 0.99)]
        assert _best_face(app, np.zeros((10, 10, 3)), min_face=80) is None

    def test_extract(self, frame):
        app = MagicMock()
        embedding = np.ones(512) / np.sqrt(512)
        app.get.return_value = [_insight_face([10, 10, 150, 150], 0.9, embedding)]

        with patch(
            "facialauth.extractors.insightface_backend._get_app", return_value=app
        ) as mock_get_app:
            result = InsightFaceExtractor(det_thresh=0.4).extract(frame)

        mock_get_app.assert_called_once_with(det_thresh=0.4)
        assert result.shape == (512,)
        assert result.dtype == np.float32
        np.testing.assert_allclose(result, embedding, rtol=1e-6)

    def test_no_face(self, frame):
        app = MagicMock()
        app.get.return_value = []
        with patch("facialauth.extractors.insightface_backend._get_app", return_value=app):
            with pytest.raises(ExtractionError, match="No face"):
                InsightFaceExtractor().extract(frame)

    def test_empty_frame(self):
        with pytest.raises(ExtractionError):
            InsightFaceExtractor().extract(None)


class TestCreateExtractor:
    """Test the extractor factory."""

    @pytest.mark.parametrize("method", ["classic_lbph", "classic_eigen", "classic_fisher"])
    def test_classic_methods_use_grayscale_crops(self, method):
        settings = ExtractorSettings(face_size=64, min_face_size_pixels=40)
        extractor = create_extractor(method, settings)

        assert isinstance(extractor, GrayscaleFaceExtractor)
        assert extractor.face_size == 64
        assert extractor.min_face_size == 40

    def test_embedding_with_insightface(self):
        extractor = create_extractor(
            "embedding_similarity", ExtractorSettings(backend="insightface", det_thresh=0.3)
        )
        assert isinstance(extractor, InsightFaceExtractor)
        assert extractor.det_thresh == 0.3
        assert extractor.dimension == 512

    def test_embedding_with_face_recognition(self):
        extractor = create_extractor(
            "embedding_similarity", ExtractorSettings(backend="face_recognition")
        )
        assert isinstance(extractor, DlibEmbeddingExtractor)
        assert extractor.dimension == 128

    def test_default_settings(self):
        assert isinstance(create_extractor("embedding_similarity"), InsightFaceExtractor)

    def test_unknown_method(self):
        with pytest.raises(ConfigError, match="Unknown method"):
            create_extractor("magic")

    def test_unknown_backend(self):
        with pytest.raises(ConfigError, match="Unknown backend"):
            factory._get_backend("opencv")

    def test_backend_is_cached(self):
        assert factory._get_backend("insightface") is factory._get_backend("insightface")
