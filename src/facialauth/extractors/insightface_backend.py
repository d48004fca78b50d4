# InsightFace embedding extractor
import threading
from typing import Any

import numpy as np

from facialauth.errors import ExtractionError

# Thread-safe cache for FaceAnalysis models (cached by det_thresh)
_app_lock = threading.Lock()
_app_cache: dict[float, Any] = {}


def _get_app(det_thresh: float = 0.5) -> Any:
    """
    Get or initialize the FaceAnalysis model instance for given det_thresh.

    Uses thread-safe caching pattern to avoid reloading the model.
    The model is ~600MB and takes several seconds to load, so caching is critical.

    Args:
        det_thresh: Detection confidence threshold (0.0-1.0). Lower = more faces detected.
    """
    if det_thresh not in _app_cache:
        with _app_lock:
            # Double-check locking pattern
            if det_thresh not in _app_cache:
                try:
                    from insightface.app import FaceAnalysis
                except ImportError as e:
                    raise ImportError(
                        "insightface is required for this extractor. "
                        "Install with: pip install facialauth[insightface]"
                    ) from e

                app = FaceAnalysis(name="buffalo_l")  # ResNet-50, 512-d embeddings
                # ctx_id=-1 = CPU
                app.prepare(ctx_id=-1, det_size=(640, 640), det_thresh=det_thresh)
                _app_cache[det_thresh] = app

    return _app_cache[det_thresh]


def _best_face(app: Any, img_np: np.ndarray, min_face: int) -> Any | None:
    """
    Return the highest-confidence detected face at least min_face pixels wide and tall.

    Args:
        app: FaceAnalysis instance
        img_np: Image as numpy array (RGB)
        min_face: Minimum face size in pixels
    """
    valid_faces = []
    for f in app.get(img_np):
        x1, y1, x2, y2 = map(int, f.bbox)
        if (x2 - x1) >= min_face and (y2 - y1) >= min_face:
            valid_faces.append(f)

    if not valid_faces:
        return None
    return max(valid_faces, key=lambda f: f.det_score)


class InsightFaceExtractor:
    """512-d normalized InsightFace embedding of the most confident face."""

    dimension = 512

    def __init__(self, det_thresh: float = 0.5, min_face_size: int = 80):
        self.det_thresh = det_thresh
        self.min_face_size = min_face_size

    def extract(self, frame: np.ndarray) -> np.ndarray:
        if frame is None or np.asarray(frame).size == 0:
            raise ExtractionError("Empty frame")

        app = _get_app(det_thresh=self.det_thresh)
        face = _best_face(app, np.asarray(frame), self.min_face_size)
        if face is None:
            raise ExtractionError("No face found")
        return np.asarray(face.normed_embedding, dtype=np.float32)
