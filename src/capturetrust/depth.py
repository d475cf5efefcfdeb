"""Depth map analysis for physical-scene authenticity.

A real three-dimensional scene shows spread-out depth, several distinct depth
layers, and depth edges that line up with edges in the colour image. Flat
recaptures (a photo of a screen or a print) fail one or more of these, and
screens additionally leave a periodic pixel-grid signature in the frequency
domain.

Depth buffers arrive as little-endian float32 samples, optionally gzip
compressed. Samples outside the valid range are excluded from every
statistic, never clamped.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from capturetrust.config import DepthConfig, NegativeScenePolicy
from capturetrust.models import CaptureSubmission, CheckResult, Fail, Pass, Unavailable

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
MAX_DECOMPRESSED_BYTES = 64 * 1024 * 1024

# Known LiDAR buffer sizes (pixel count -> width, height)
_KNOWN_DIMENSIONS = {
    256 * 192: (256, 192),
    320 * 240: (320, 240),
    640 * 480: (640, 480),
    384 * 288: (384, 288),
}

# Flat-surface heuristic: narrow range, dense around the median, at arm's length
_FLAT_RANGE_MAX = 0.15
_FLAT_BAND = 0.05
_FLAT_UNIFORMITY = 0.85
_FLAT_DISTANCE = (0.2, 1.5)


class DepthDecodeError(ValueError):
    """The depth buffer could not be decoded."""


@dataclass
class DepthAnalysis:
    """Metrics computed for one depth map."""

    depth_variance: float
    depth_layers: int
    min_depth: float
    max_depth: float
    mean_depth: float
    valid_samples: int
    coverage: float
    width: int
    height: int
    layer_depths: list[float] = field(default_factory=list)
    edge_coherence: float | None = None
    periodic_pattern_detected: bool | None = None
    periodic_peak_ratio: float | None = None
    quadrant_variance_uniform: bool = False
    flat_surface_detected: bool = False

    def to_metrics(self) -> dict[str, Any]:
        """Display form; the decision rule reads the unrounded fields."""
        metrics: dict[str, Any] = {
            "depth_variance": round(self.depth_variance, 6),
            "depth_layers": self.depth_layers,
            "layer_depths": list(self.layer_depths),
            "min_depth": round(self.min_depth, 6),
            "max_depth": round(self.max_depth, 6),
            "mean_depth": round(self.mean_depth, 6),
            "valid_samples": self.valid_samples,
            "coverage": round(self.coverage, 6),
            "resolution": [self.width, self.height],
            "quadrant_variance_uniform": self.quadrant_variance_uniform,
            "flat_surface_detected": self.flat_surface_detected,
        }
        if self.edge_coherence is not None:
            metrics["edge_coherence"] = round(self.edge_coherence, 6)
        if self.periodic_pattern_detected is not None:
            metrics["periodic_pattern_detected"] = self.periodic_pattern_detected
            metrics["periodic_peak_ratio"] = round(self.periodic_peak_ratio or 0.0, 3)
        return metrics


def infer_dimensions(pixel_count: int) -> tuple[int, int]:
    """Guess (width, height) for a buffer without declared dimensions."""
    if pixel_count in _KNOWN_DIMENSIONS:
        return _KNOWN_DIMENSIONS[pixel_count]
    # Assume 4:3
    height = max(int((pixel_count / (4.0 / 3.0)) ** 0.5), 1)
    return max(pixel_count // height, 1), height


def decode_depth_buffer(data: bytes, width: int | None = None, height: int | None = None) -> np.ndarray:
    """Decode a depth buffer into a (height, width) float array.

    Raises:
        DepthDecodeError: If the buffer is corrupt or does not match the dimensions
    """
    if data[:2] == GZIP_MAGIC:
        try:
            decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
            raw = decompressor.decompress(data, MAX_DECOMPRESSED_BYTES)
            if decompressor.unconsumed_tail:
                raise DepthDecodeError("decompressed depth buffer exceeds size limit")
            if not decompressor.eof:
                raise DepthDecodeError("truncated gzip depth buffer")
        except zlib.error as err:
            raise DepthDecodeError(f"corrupt gzip depth buffer: {err}") from err
    else:
        raw = data

    if not raw or len(raw) % 4 != 0:
        raise DepthDecodeError(f"depth buffer length {len(raw)} is not a multiple of 4")

    samples = np.frombuffer(raw, dtype="<f4").astype(np.float64)
    if width is None or height is None:
        width, height = infer_dimensions(samples.size)
    if width * height != samples.size:
        raise DepthDecodeError(f"depth buffer has {samples.size} samples, expected {width}x{height}")
    return samples.reshape(height, width)


def valid_mask(depth: np.ndarray, min_depth: float, max_depth: float) -> np.ndarray:
    """Finite samples inside the inclusive valid range."""
    with np.errstate(invalid="ignore"):
        return np.isfinite(depth) & (depth >= min_depth) & (depth <= max_depth)


def count_layers(values: np.ndarray, config: DepthConfig) -> tuple[int, list[float]]:
    """Count density clusters in the depth histogram.

    A layer starts each time the smoothed density rises above the noise floor
    after a trough. Density drops into a trough when it falls to the floor or
    below ``trough_ratio`` of the current peak; leaving the trough requires
    rising above ``trough / trough_ratio``.
    """
    if values.size == 0:
        return 0, []

    bins = config.histogram_bins
    counts, edges = np.histogram(values, bins=bins, range=(config.min_depth, config.max_depth))
    counts = counts.astype(np.float64)
    padded = np.concatenate(([counts[0]], counts, [counts[-1]]))
    smoothed = (padded[:-2] + padded[1:-1] + padded[2:]) / 3.0
    centers = (edges[:-1] + edges[1:]) / 2.0

    floor = smoothed.max() * config.floor_ratio
    layers = 0
    peak_depths: list[float] = []
    in_layer = False
    peak = 0.0
    peak_index = 0
    trough = 0.0

    for i, density in enumerate(smoothed):
        if in_layer:
            if density > peak:
                peak, peak_index = density, i
            elif density <= floor or density < peak * config.trough_ratio:
                in_layer = False
                trough = density
                peak_depths.append(float(centers[peak_index]))
        else:
            trough = min(trough, density)
            if density > floor and density > trough / config.trough_ratio:
                in_layer = True
                layers += 1
                peak, peak_index = density, i

    if in_layer:
        peak_depths.append(float(centers[peak_index]))

    return layers, [round(d, 4) for d in peak_depths]


def sobel_magnitude(image: np.ndarray) -> np.ndarray:
    """Sobel gradient magnitude with edge-replicated borders."""
    p = np.pad(image, 1, mode="edge")
    gx = (p[:-2, 2:] + 2 * p[1:-1, 2:] + p[2:, 2:]) - (p[:-2, :-2] + 2 * p[1:-1, :-2] + p[2:, :-2])
    gy = (p[2:, :-2] + 2 * p[2:, 1:-1] + p[2:, 2:]) - (p[:-2, :-2] + 2 * p[:-2, 1:-1] + p[:-2, 2:])
    return np.hypot(gx, gy)


def to_grayscale(color: np.ndarray) -> np.ndarray:
    image = np.asarray(color, dtype=np.float64)
    if image.ndim == 3:
        if image.shape[2] >= 3:
            return image[..., 0] * 0.299 + image[..., 1] * 0.587 + image[..., 2] * 0.114
        return image[..., 0]
    if image.ndim != 2:
        raise ValueError(f"colour image must be 2-D or 3-D, got shape {image.shape}")
    return image


def resample_nearest(image: np.ndarray, height: int, width: int) -> np.ndarray:
    """Nearest-neighbour resample onto the depth grid."""
    src_h, src_w = image.shape
    if (src_h, src_w) == (height, width):
        return image
    rows = (np.arange(height) * src_h) // height
    cols = (np.arange(width) * src_w) // width
    return image[np.ix_(rows, cols)]


def edge_coherence(depth: np.ndarray, mask: np.ndarray, gray: np.ndarray) -> float:
    """Pearson correlation of depth and colour edge maps, clamped to [0, 1]."""
    if mask.sum() < 2:
        return 0.0
    filled = np.where(mask, depth, depth[mask].mean())
    depth_edges = sobel_magnitude(filled)[mask]
    color_edges = sobel_magnitude(gray)[mask]
    if depth_edges.std() == 0.0 or color_edges.std() == 0.0:
        return 0.0
    r = float(np.corrcoef(depth_edges, color_edges)[0, 1])
    if not np.isfinite(r):
        return 0.0
    return min(max(r, 0.0), 1.0)


def periodic_peak_ratio(gray: np.ndarray, min_frequency: float) -> float:
    """Peak-to-median spectral magnitude above ``min_frequency`` cycles/pixel."""
    h, w = gray.shape
    if h < 8 or w < 8:
        return 0.0
    window = np.outer(np.hanning(h), np.hanning(w))
    spectrum = np.abs(np.fft.fft2((gray - gray.mean()) * window))
    fy = np.fft.fftfreq(h)[:, None]
    fx = np.fft.fftfreq(w)[None, :]
    band = spectrum[np.hypot(fx, fy) >= min_frequency]
    if band.size == 0:
        return 0.0
    median = float(np.median(band))
    peak = float(band.max())
    if peak == 0.0:
        return 0.0
    return peak / max(median, 1e-12)


def quadrant_uniformity(depth: np.ndarray, mask: np.ndarray, tolerance: float) -> bool:
    """True when depth spread is near-identical in all four quadrants."""
    h, w = depth.shape
    if h < 4 or w < 4:
        return False
    spreads = []
    for rows in (slice(0, h // 2), slice(h // 2, h)):
        for cols in (slice(0, w // 2), slice(w // 2, w)):
            values = depth[rows, cols][mask[rows, cols]]
            if values.size < 10:
                return False
            spreads.append(float(values.std()))
    top = max(spreads)
    if top == 0.0:
        return True
    return (top - min(spreads)) / top <= tolerance


def is_likely_real_scene(
    depth_variance: float,
    depth_layers: int,
    edge_coherence: float,
    periodic_pattern_detected: bool,
    config: DepthConfig,
) -> bool:
    """Scene decision rule. Variance and coherence are strict, layers inclusive."""
    return (
        depth_variance > config.variance_threshold
        and depth_layers >= config.layer_threshold
        and edge_coherence > config.coherence_threshold
        and not periodic_pattern_detected
    )


class DepthAnalyzer:
    """Computes scene metrics and the scene_analysis category result."""

    def __init__(self, config: DepthConfig | None = None) -> None:
        self.config = config or DepthConfig()

    def analyze(
        self,
        depth_buffer: bytes,
        color_image: np.ndarray | None = None,
        width: int | None = None,
        height: int | None = None,
    ) -> DepthAnalysis:
        """Compute all metrics.

        Raises:
            DepthDecodeError: If the buffer cannot be decoded
        """
        cfg = self.config
        depth = decode_depth_buffer(depth_buffer, width, height)
        mask = valid_mask(depth, cfg.min_depth, cfg.max_depth)
        values = depth[mask]
        h, w = depth.shape

        if values.size == 0:
            return DepthAnalysis(
                depth_variance=0.0,
                depth_layers=0,
                min_depth=0.0,
                max_depth=0.0,
                mean_depth=0.0,
                valid_samples=0,
                coverage=0.0,
                width=w,
                height=h,
            )

        layers, layer_depths = count_layers(values, cfg)
        mean_depth = float(values.mean())
        analysis = DepthAnalysis(
            depth_variance=float(values.std()),
            depth_layers=layers,
            layer_depths=layer_depths,
            min_depth=float(values.min()),
            max_depth=float(values.max()),
            mean_depth=mean_depth,
            valid_samples=int(values.size),
            coverage=values.size / depth.size,
            width=w,
            height=h,
            quadrant_variance_uniform=quadrant_uniformity(depth, mask, cfg.quadrant_tolerance),
            flat_surface_detected=self._flat_surface(values, mean_depth),
        )

        if analysis.quadrant_variance_uniform:
            logger.warning("Depth spread is uniform across quadrants; possible flat recapture")

        if color_image is not None:
            gray = resample_nearest(to_grayscale(color_image), h, w)
            analysis.edge_coherence = edge_coherence(depth, mask, gray)
            ratio = periodic_peak_ratio(gray, cfg.periodic_min_frequency)
            analysis.periodic_peak_ratio = min(ratio, 1e12)
            analysis.periodic_pattern_detected = bool(ratio > cfg.periodic_peak_ratio)

        return analysis

    def check(self, submission: CaptureSubmission) -> CheckResult:
        """Evaluate the scene_analysis category for a submission."""
        if not submission.depth_map:
            return Unavailable("depth data missing")
        try:
            analysis = self.analyze(
                submission.depth_map,
                submission.color_image,
                submission.depth_width,
                submission.depth_height,
            )
        except DepthDecodeError as err:
            logger.info("Depth buffer undecodable: %s", err)
            return Unavailable(f"depth buffer undecodable: {err}")
        except ValueError as err:
            logger.info("Colour image unusable: %s", err)
            return Unavailable(f"colour image unusable: {err}")
        return self.evaluate(analysis)

    def evaluate(self, analysis: DepthAnalysis) -> CheckResult:
        """Map computed metrics to a category result."""
        metrics = analysis.to_metrics()
        if analysis.valid_samples == 0:
            return Unavailable("no valid depth samples", metrics)
        if analysis.edge_coherence is None:
            return Unavailable("colour image missing", metrics)

        real = is_likely_real_scene(
            analysis.depth_variance,
            analysis.depth_layers,
            analysis.edge_coherence,
            bool(analysis.periodic_pattern_detected),
            self.config,
        )
        metrics["is_likely_real_scene"] = real
        if real:
            return Pass(metrics)

        logger.info(
            "Scene failed thresholds: variance=%.3f layers=%d coherence=%.3f periodic=%s",
            analysis.depth_variance,
            analysis.depth_layers,
            analysis.edge_coherence,
            analysis.periodic_pattern_detected,
        )
        if self.config.conclusive_negative is NegativeScenePolicy.UNAVAILABLE:
            return Unavailable("scene thresholds not met", metrics)
        return Fail(metrics)

    @staticmethod
    def _flat_surface(values: np.ndarray, mean_depth: float) -> bool:
        depth_range = float(values.max() - values.min())
        median = float(np.median(values))
        uniformity = float(np.mean(np.abs(values - median) < _FLAT_BAND))
        return (
            depth_range < _FLAT_RANGE_MAX
            and uniformity > _FLAT_UNIFORMITY
            and _FLAT_DISTANCE[0] <= mean_depth <= _FLAT_DISTANCE[1]
        )
