"""
Classic (subspace / texture statistics) recognizers.

All three variants work on uniform-size grayscale face crops and report a
distance to the nearest enrolled sample: lower is better, and a probe matches
when ``distance <= threshold``.

- LBPH: local binary pattern histograms compared with chi-square
- Eigen: PCA projection, Euclidean distance (Eigenfaces)
- Fisher: PCA followed by LDA, Euclidean distance (Fisherfaces)
"""

import logging
from dataclasses import dataclass

import numpy as np
from PIL import Image
from sklearn.decomposition import PCA
from sklearn.discriminant_analysis import LinearDiscriminantAnalysis

from facialauth.errors import ExtractionError, FormatError, InsufficientData
from facialauth.model_store import Model
from facialauth.recognition.base import Recognizer, Sample, require_array, require_labels

logger = logging.getLogger(__name__)

# Neighbour offsets (dy, dx) for the 8-bit LBP code, clockwise from top-left
_LBP_OFFSETS = [(-1, -1), (-1, 0), (-1, 1), (0, 1), (1, 1), (1, 0), (1, -1), (0, -1)]
_LBP_BINS = 256


def to_grayscale(descriptor: np.ndarray) -> np.ndarray:
    """
    Reduce a face crop to a 2-D grayscale array.

    Accepts 2-D arrays, single-channel 3-D arrays and RGB/RGBA arrays.

    Raises:
        ExtractionError: If the array cannot be interpreted as an image
    """
    arr = np.asarray(descriptor)
    if arr.size == 0:
        raise ExtractionError("Empty face descriptor")
    if arr.ndim == 2:
        return arr
    if arr.ndim == 3 and arr.shape[2] == 1:
        return arr[:, :, 0]
    if arr.ndim == 3 and arr.shape[2] in (3, 4):
        rgb = np.clip(arr[:, :, :3], 0, 255).astype(np.uint8)
        return np.asarray(Image.fromarray(rgb).convert("L"))
    raise ExtractionError(f"Unsupported face descriptor shape: {arr.shape}")


def lbp_image(gray: np.ndarray) -> np.ndarray:
    """Compute radius-1, 8-neighbour LBP codes (output is 2 pixels smaller per axis)."""
    img = gray.astype(np.float64)
    h, w = img.shape
    center = img[1:-1, 1:-1]
    codes = np.zeros(center.shape, dtype=np.uint8)
    for bit, (dy, dx) in enumerate(_LBP_OFFSETS):
        neighbour = img[1 + dy : h - 1 + dy, 1 + dx : w - 1 + dx]
        codes |= (neighbour >= center).astype(np.uint8) << bit
    return codes


def spatial_histogram(codes: np.ndarray, grid_x: int, grid_y: int) -> np.ndarray:
    """Concatenate normalized LBP histograms over a grid_y x grid_x grid of cells."""
    hists = []
    for band in np.array_split(codes, grid_y, axis=0):
        for cell in np.array_split(band, grid_x, axis=1):
            hist = np.bincount(cell.ravel(), minlength=_LBP_BINS).astype(np.float64)
            hists.append(hist / max(cell.size, 1))
    return np.concatenate(hists)


def chi_square(histograms: np.ndarray, probe: np.ndarray) -> np.ndarray:
    """Alternative chi-square distance between each row of histograms and probe."""
    diff = histograms - probe
    total = histograms + probe
    terms = np.divide(diff * diff, total, out=np.zeros_like(total), where=total > 0)
    return 2.0 * terms.sum(axis=1)


class ClassicRecognizer(Recognizer):
    """Shared sample handling for grayscale distance-based recognizers."""

    higher_is_better = False

    def prepare(self, samples: list[Sample]) -> list[Sample]:
        usable: list[Sample] = []
        shape = None
        for i, (descriptor, label) in enumerate(samples):
            try:
                gray = to_grayscale(descriptor)
            except ExtractionError as e:
                logger.warning(f"Skipping sample {i} ({label}): {e}")
                continue
            if shape is None:
                shape = gray.shape
            elif gray.shape != shape:
                raise ValueError(
                    f"Sample {i} ({label}) is {gray.shape[1]}x{gray.shape[0]}, expected "
                    f"{shape[1]}x{shape[0]}; {self.algorithm} needs uniform-size faces"
                )
            usable.append((gray, str(label)))
        return usable

    @staticmethod
    def _face_shape(model: Model) -> tuple[int, int]:
        face_shape = require_array(model, "face_shape", ndim=1)
        if face_shape.shape[0] != 2 or (face_shape < 3).any():
            raise FormatError(f"{model.algorithm} face_shape is invalid: {face_shape.tolist()}")
        return int(face_shape[0]), int(face_shape[1])

    @staticmethod
    def _probe(descriptor: np.ndarray, face_shape: tuple[int, int]) -> np.ndarray:
        gray = to_grayscale(descriptor)
        if gray.shape != face_shape:
            raise ExtractionError(
                f"Probe is {gray.shape[1]}x{gray.shape[0]}, model expects "
                f"{face_shape[1]}x{face_shape[0]}"
            )
        return gray


@dataclass
class _LBPHState:
    histograms: np.ndarray
    labels: np.ndarray
    face_shape: tuple[int, int]
    grid_x: int
    grid_y: int


class LBPHRecognizer(ClassicRecognizer):
    """Local Binary Patterns Histograms recognizer."""

    algorithm = "classic_lbph"

    def __init__(self, threshold: float, grid_x: int = 8, grid_y: int = 8):
        super().__init__(threshold)
        self.grid_x = grid_x
        self.grid_y = grid_y

    def _fit(self, descriptors, labels, n_labels):
        shape = descriptors[0].shape
        if shape[0] < self.grid_y + 2 or shape[1] < self.grid_x + 2:
            raise ValueError(
                f"Faces of {shape[1]}x{shape[0]} are too small for a "
                f"{self.grid_x}x{self.grid_y} LBPH grid"
            )
        histograms = np.stack(
            [spatial_histogram(lbp_image(d), self.grid_x, self.grid_y) for d in descriptors]
        )
        return {
            "histograms": histograms,
            "labels": labels,
            "face_shape": np.array(shape, dtype=np.int64),
            "grid": np.array([self.grid_x, self.grid_y], dtype=np.int64),
        }

    def _build_state(self, model):
        histograms = require_array(model, "histograms", ndim=2)
        labels = require_labels(model, histograms.shape[0])
        face_shape = self._face_shape(model)
        grid = require_array(model, "grid", ndim=1)
        if grid.shape[0] != 2 or (grid < 1).any():
            raise FormatError(f"LBPH grid is invalid: {grid.tolist()}")
        grid_x, grid_y = int(grid[0]), int(grid[1])
        if histograms.shape[1] != grid_x * grid_y * _LBP_BINS:
            raise FormatError(
                f"LBPH histograms have {histograms.shape[1]} bins, "
                f"expected {grid_x * grid_y * _LBP_BINS}"
            )
        if face_shape[0] < grid_y + 2 or face_shape[1] < grid_x + 2:
            raise FormatError("LBPH face_shape is smaller than its grid")
        return _LBPHState(
            histograms=histograms.astype(np.float64),
            labels=labels,
            face_shape=face_shape,
            grid_x=grid_x,
            grid_y=grid_y,
        )

    def _score(self, state: _LBPHState, descriptor):
        gray = self._probe(descriptor, state.face_shape)
        probe = spatial_histogram(lbp_image(gray), state.grid_x, state.grid_y)
        distances = chi_square(state.histograms, probe)
        best = int(np.argmin(distances))
        return float(distances[best]), int(state.labels[best])


@dataclass
class _SubspaceState:
    mean: np.ndarray
    components: np.ndarray
    offset: np.ndarray
    projections: np.ndarray
    labels: np.ndarray
    face_shape: tuple[int, int]


class SubspaceRecognizer(ClassicRecognizer):
    """
    Nearest neighbour in a linear subspace.

    A probe x is projected as ``(x - mean) @ components.T - offset`` and
    compared with the stored projections of the training samples.
    """

    def _payload(self, descriptors, labels, mean, components, offset):
        flat = np.stack([d.ravel() for d in descriptors]).astype(np.float64)
        projections = (flat - mean) @ components.T - offset
        return {
            "mean": mean,
            "components": components,
            "offset": offset,
            "projections": projections,
            "labels": labels,
            "face_shape": np.array(descriptors[0].shape, dtype=np.int64),
        }

    def _build_state(self, model):
        face_shape = self._face_shape(model)
        n_pixels = face_shape[0] * face_shape[1]
        mean = require_array(model, "mean", ndim=1)
        components = require_array(model, "components", ndim=2)
        offset = require_array(model, "offset", ndim=1)
        projections = require_array(model, "projections", ndim=2)
        labels = require_labels(model, projections.shape[0])

        k = components.shape[0]
        if mean.shape[0] != n_pixels or components.shape[1] != n_pixels:
            raise FormatError(f"{self.algorithm} subspace does not match face_shape {face_shape}")
        if k == 0 or offset.shape[0] != k or projections.shape[1] != k:
            raise FormatError(f"{self.algorithm} subspace dimensions are inconsistent")

        return _SubspaceState(
            mean=mean.astype(np.float64),
            components=components.astype(np.float64),
            offset=offset.astype(np.float64),
            projections=projections.astype(np.float64),
            labels=labels,
            face_shape=face_shape,
        )

    def _score(self, state: _SubspaceState, descriptor):
        gray = self._probe(descriptor, state.face_shape)
        x = gray.ravel().astype(np.float64)
        y = (x - state.mean) @ state.components.T - state.offset
        distances = np.linalg.norm(state.projections - y, axis=1)
        best = int(np.argmin(distances))
        return float(distances[best]), int(state.labels[best])


class EigenRecognizer(SubspaceRecognizer):
    """Eigenfaces: PCA over the flattened training faces."""

    algorithm = "classic_eigen"

    def __init__(self, threshold: float, num_components: int = 10):
        super().__init__(threshold)
        self.num_components = num_components

    def _fit(self, descriptors, labels, n_labels):
        if len(descriptors) < 2:
            raise InsufficientData("classic_eigen needs at least 2 samples")
        flat = np.stack([d.ravel() for d in descriptors]).astype(np.float64)
        n_components = min(self.num_components, flat.shape[0], flat.shape[1])
        pca = PCA(n_components=n_components, svd_solver="full").fit(flat)
        return self._payload(
            descriptors, labels, pca.mean_, pca.components_, np.zeros(n_components)
        )


class FisherRecognizer(SubspaceRecognizer):
    """
    Fisherfaces: PCA to N - C dimensions, then LDA to at most C - 1.

    LDA needs at least two labels, so a single-user enrollment (everything
    train_user loads) cannot be trained with this method. Train it through
    TrainingPipeline on samples from load_enrollment(label=None) instead,
    with one subdirectory per person.
    """

    algorithm = "classic_fisher"

    def _fit(self, descriptors, labels, n_labels):
        n_samples = len(descriptors)
        if n_labels < 2:
            raise InsufficientData("classic_fisher needs at least 2 distinct labels")
        if n_samples <= n_labels:
            raise InsufficientData(
                f"classic_fisher needs more samples than labels ({n_samples} <= {n_labels})"
            )

        flat = np.stack([d.ravel() for d in descriptors]).astype(np.float64)
        n_pca = min(n_samples - n_labels, flat.shape[1])
        pca = PCA(n_components=n_pca, svd_solver="full").fit(flat)
        reduced = pca.transform(flat)

        n_lda = min(n_labels - 1, n_pca)
        lda = LinearDiscriminantAnalysis(n_components=n_lda, solver="svd").fit(reduced, labels)
        scalings = lda.scalings_[:, :n_lda]

        components = (pca.components_.T @ scalings).T
        offset = lda.xbar_ @ scalings
        return self._payload(descriptors, labels, pca.mean_, components, offset)
