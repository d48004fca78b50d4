# face_recognition (dlib) extractors
import logging

import numpy as np
from PIL import Image

from facialauth.errors import ExtractionError

logger = logging.getLogger(__name__)

# face_recognition pulls in dlib, so it is imported lazily: the module stays
# importable (and testable) where only the classic core is installed.


def _face_lib():
    try:
        import face_recognition
    except ImportError as e:
        raise ImportError(
            "face_recognition is required for this extractor. "
            "Install with: pip install facialauth[dlib]"
        ) from e
    return face_recognition


def _largest_face(
    locations: list[tuple[int, int, int, int]], min_face_size: int
) -> tuple[int, int, int, int] | None:
    """
    Pick the largest face box at least min_face_size pixels on each side.

    face_recognition boxes are (top, right, bottom, left).
    """
    boxes = [
        b for b in locations if (b[2] - b[0]) >= min_face_size and (b[1] - b[3]) >= min_face_size
    ]
    if not boxes:
        return None
    return max(boxes, key=lambda b: (b[2] - b[0]) * (b[1] - b[3]))


def _check_frame(frame: np.ndarray | None) -> np.ndarray:
    if frame is None or np.asarray(frame).size == 0:
        raise ExtractionError("Empty frame")
    return np.asarray(frame)


class GrayscaleFaceExtractor:
    """Largest detected face, cropped to a square grayscale image for classic recognizers."""

    dimension = None

    def __init__(self, face_size: int = 96, min_face_size: int = 80):
        self.face_size = face_size
        self.min_face_size = min_face_size

    def extract(self, frame: np.ndarray) -> np.ndarray:
        frame = _check_frame(frame)
        fr = _face_lib()
        # face_recognition expects RGB input, which is what the frame source provides
        locs = fr.face_locations(frame, model="hog")
        box = _largest_face(locs, self.min_face_size)
        if box is None:
            raise ExtractionError("No face found")

        top, right, bottom, left = box
        crop = frame[max(top, 0) : bottom, max(left, 0) : right]
        img = Image.fromarray(crop.astype(np.uint8)).convert("L")
        img = img.resize((self.face_size, self.face_size), Image.Resampling.BILINEAR)
        return np.asarray(img, dtype=np.uint8)


class DlibEmbeddingExtractor:
    """128-d dlib face encoding of the largest detected face."""

    dimension = 128

    def __init__(self, min_face_size: int = 80):
        self.min_face_size = min_face_size

    def extract(self, frame: np.ndarray) -> np.ndarray:
        frame = _check_frame(frame)
        fr = _face_lib()
        locs = fr.face_locations(frame, model="hog")  # or "cnn" if you have GPU/CUDA build
        box = _largest_face(locs, self.min_face_size)
        if box is None:
            raise ExtractionError("No face found")

        encs = fr.face_encodings(frame, [box])
        if not encs:
            raise ExtractionError("Face encoding failed")
        return np.asarray(encs[0], dtype=np.float32)
