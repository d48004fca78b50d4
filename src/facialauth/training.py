"""
Training pipeline: labeled samples in, persisted model out.

Enrollment images live under ``<basedir>/images/<user>/``; the trained model
is written atomically to ``<basedir>/models/<user>.npz``.
"""

import logging
from collections.abc import Iterable
from pathlib import Path

import numpy as np
from PIL import Image

from facialauth.config import AuthSettings, Settings
from facialauth.errors import ExtractionError, ModelExistsError
from facialauth.extractors import DescriptorExtractor, create_extractor
from facialauth.model_store import Model, write_model
from facialauth.recognition import Recognizer, Sample, recognizer_for

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".pgm", ".webp"}


class TrainingPipeline:
    """Train a recognizer on an enrollment and persist the resulting model."""

    def __init__(self, settings: AuthSettings, recognizer: Recognizer | None = None):
        """
        Args:
            settings: Authentication settings (method, threshold, min_samples)
            recognizer: Recognizer to train; built from settings if None
        """
        self.settings = settings
        self.recognizer = recognizer or recognizer_for(settings)

    def run(self, samples: Iterable[Sample], target: Path | str, force: bool = False) -> Model:
        """
        Train and write a model to target.

        Args:
            samples: (descriptor, label) pairs
            target: Destination model path
            force: Replace an existing model at target

        Returns:
            The persisted Model

        Raises:
            ModelExistsError: If target exists and force is False
            InsufficientData: If fewer than min_samples usable samples exist
        """
        target = Path(target)
        if target.exists() and not force:
            raise ModelExistsError(f"Model already exists: {target} (use force to overwrite)")

        model = self.recognizer.train(samples, min_samples=self.settings.min_samples)
        write_model(model, target)
        return model


def _iter_images(directory: Path) -> list[Path]:
    return sorted(
        p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
    )


def _load_samples(paths: list[Path], label: str, extractor: DescriptorExtractor) -> list[Sample]:
    samples: list[Sample] = []
    for img_path in paths:
        try:
            img_np = np.array(Image.open(img_path).convert("RGB"))
        except OSError as e:
            logger.warning(f"Skipping unreadable image {img_path}: {e}")
            continue
        try:
            descriptor = extractor.extract(img_np)
        except ExtractionError as e:
            logger.warning(f"Skipping {img_path}: {e}")
            continue
        samples.append((descriptor, label))
    return samples


def load_enrollment(
    image_dir: Path | str,
    extractor: DescriptorExtractor,
    label: str | None = None,
) -> list[Sample]:
    """
    Load enrollment samples from a directory of images.

    Args:
        image_dir: Directory of images
        extractor: Descriptor extractor applied to each image
        label: If given, every image directly in image_dir gets this label.
               If None, each subdirectory is one label:

                   image_dir/
                       alice/
                           1.png
                       bob/
                           1.png

    Returns:
        List of (descriptor, label) samples; unreadable images and images
        without a usable face are skipped
    """
    root = Path(image_dir)
    if not root.is_dir():
        raise FileNotFoundError(f"Enrollment directory not found: {root}")

    if label is not None:
        samples = _load_samples(_iter_images(root), label, extractor)
    else:
        samples = []
        for person_dir in sorted(root.iterdir()):
            if not person_dir.is_dir():
                continue
            samples.extend(_load_samples(_iter_images(person_dir), person_dir.name, extractor))

    logger.info(f"Loaded {len(samples)} enrollment sample(s) from {root}")
    return samples


def train_user(
    settings: Settings,
    user: str,
    image_dir: Path | str | None = None,
    output: Path | str | None = None,
    force: bool = False,
    extractor: DescriptorExtractor | None = None,
) -> Model:
    """
    Train and save the model for one user from their enrollment images.

    Defaults to the user's image directory and model path under basedir.
    """
    image_dir = Path(image_dir) if image_dir else settings.user_image_dir(user)
    output = Path(output) if output else settings.user_model_path(user)

    # Check before the (slow) extraction pass; run() checks again
    if output.exists() and not force:
        raise ModelExistsError(f"Model already exists: {output} (use force to overwrite)")

    if extractor is None:
        extractor = create_extractor(settings.auth.method, settings.extractor)
    kwargs = {}
    if settings.auth.method == "embedding_similarity":
        kwargs["embedding_dim"] = getattr(extractor, "dimension", None)
    pipeline = TrainingPipeline(settings.auth, recognizer_for(settings.auth, **kwargs))

    samples = load_enrollment(image_dir, extractor, label=user)
    return pipeline.run(samples, output, force=force)
