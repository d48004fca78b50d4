"""
Camera frame source and enrollment capture.

Frames are read one at a time from a V4L device through OpenCV and handed
out as RGB arrays. A failed read yields None, the retryable "no frame right
now" marker; only a device that cannot be opened (or a closed source) is a
ResourceError.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Generator, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from PIL import Image

from facialauth.config import CameraSettings
from facialauth.errors import ExtractionError, ResourceError

if TYPE_CHECKING:
    import numpy as np

    from facialauth.extractors import DescriptorExtractor

# cv2 is an optional heavy dependency, imported lazily inside functions so
# that training and tests can run where no camera stack is installed.

logger = logging.getLogger(__name__)

FALLBACK_DEVICE = "/dev/video1"


def _cv2():
    try:
        import cv2
    except ImportError as e:
        raise ImportError(
            "opencv-python-headless is required for camera capture. "
            "Install with: pip install facialauth[camera]"
        ) from e
    return cv2


def _device_arg(device: str) -> int | str:
    """OpenCV takes numeric indices as ints and device paths as strings."""
    return int(device) if device.isdigit() else device


class CameraFrameSource:
    """Iterable, unbounded stream of RGB frames from an opened capture."""

    def __init__(self, capture: Any, device: str, cv2: Any):
        self._cap = capture
        self._cv2 = cv2
        self.device = device

    def read(self) -> np.ndarray | None:
        if self._cap is None:
            raise ResourceError(f"Camera {self.device} is closed")
        try:
            ok, frame = self._cap.read()
        except self._cv2.error as e:
            raise ResourceError(f"Camera {self.device} read failed: {e}") from e
        if not ok or frame is None:
            return None
        return self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

    def __iter__(self) -> Iterator[np.ndarray | None]:
        while True:
            yield self.read()

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


def open_capture(settings: CameraSettings) -> tuple[Any, str]:
    """
    Open the configured capture device, falling back to /dev/video1.

    Returns:
        (capture, device_used)

    Raises:
        ResourceError: If no device could be opened
    """
    cv2 = _cv2()
    device = settings.device
    cap = cv2.VideoCapture(_device_arg(device))

    if not cap.isOpened() and settings.fallback_device and device != FALLBACK_DEVICE:
        logger.warning(f"Primary device {device} failed, trying {FALLBACK_DEVICE}")
        cap.release()
        device = FALLBACK_DEVICE
        cap = cv2.VideoCapture(device)

    if not cap.isOpened():
        cap.release()
        raise ResourceError(f"Cannot open camera {settings.device}")

    cap.set(cv2.CAP_PROP_FRAME_WIDTH, settings.width)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, settings.height)
    return cap, device


@contextmanager
def open_camera(settings: CameraSettings) -> Generator[CameraFrameSource, None, None]:
    """Open a camera for the duration of one session and always release it."""
    cap, device = open_capture(settings)
    source = CameraFrameSource(cap, device, _cv2())
    logger.info(f"Opened camera {device}")
    try:
        yield source
    finally:
        source.close()


def _numbered_images(directory: Path) -> list[Path]:
    return [p for p in directory.glob("*.png") if p.stem.isdigit()]


def capture_images(
    frames: Iterable[np.ndarray | None],
    extractor: DescriptorExtractor,
    out_dir: Path | str,
    count: int,
    delay_ms: int = 50,
    force: bool = False,
    sleep: Callable[[float], None] = time.sleep,
    max_attempts: int | None = None,
) -> list[Path]:
    """
    Save enrollment frames that contain a usable face.

    Images are numbered 1.png, 2.png, ...; numbering continues after the
    highest existing image unless force clears the directory first.

    Args:
        frames: Frame source (None entries are skipped)
        extractor: Used to check that a frame contains a usable face
        out_dir: User image directory
        count: Number of images to save
        delay_ms: Pause after each attempt
        force: Remove existing numbered images first
        sleep: Sleep function (injectable for tests)
        max_attempts: Give up after this many frames (default: 20 per image)

    Returns:
        Paths of the saved images
    """
    out_dir = Path(out_dir)
    if force and out_dir.exists():
        for p in _numbered_images(out_dir):
            p.unlink()
    out_dir.mkdir(parents=True, exist_ok=True)

    existing = [int(p.stem) for p in _numbered_images(out_dir)]
    next_index = max(existing, default=0) + 1
    limit = max_attempts if max_attempts is not None else count * 20

    saved: list[Path] = []
    attempts = 0
    for frame in frames:
        if len(saved) >= count or attempts >= limit:
            break
        attempts += 1

        if frame is not None:
            try:
                extractor.extract(frame)
            except ExtractionError as e:
                logger.debug(f"Frame {attempts} skipped: {e}")
            else:
                path = out_dir / f"{next_index + len(saved)}.png"
                Image.fromarray(frame).save(path)
                saved.append(path)
                logger.info(f"Saved {path} ({len(saved)}/{count})")
                if len(saved) >= count:
                    break

        sleep(delay_ms / 1000.0)

    if len(saved) < count:
        logger.warning(f"Captured {len(saved)} of {count} image(s) after {attempts} frame(s)")
    return saved
