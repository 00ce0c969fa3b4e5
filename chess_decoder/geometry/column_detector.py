"""
Column Detection – Projection-profile minima with equal-division fallback
=========================================================================

A scoresheet's move table is a fixed number of text columns (typically
six: three White/Black pairs, or four on two-column sheets).  Columns
(1, 2), (3, 4), (5, 6) are read as White/Black pairs; the move number is
written at the start of each White entry.
The gaps between columns are vertical bands with little ink, so they show
up as minima in the page's *vertical projection profile* – the share of
dark pixels in each image column.

Algorithm:
  1. Binarize the search region with Otsu and compute dark-pixel density
     per x.
  2. Smooth with a moving average (window ≈ width / 100, odd, ≥ 3).
  3. Find minima at least 0.5 × average column width apart with
     ``scipy.signal.find_peaks`` on the negated profile.
  4. Assign minima to the equal-division targets with
     ``scipy.optimize.linear_sum_assignment`` (least total displacement);
     a target whose minimum lies further than ``max_adjust_ratio`` of a
     column width keeps its equal-division position.
  5. Anything inconclusive (too few minima, flat profile, spacing
     violations) falls back to exact equal-width division.

Whatever happens, the returned ``ColumnSet`` holds exactly
``expected_columns − 1`` strictly increasing split positions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np
from scipy.optimize import linear_sum_assignment
from scipy.signal import find_peaks

from chess_decoder.geometry.table_detector import Boundary, to_gray

log = logging.getLogger(__name__)

DEFAULT_EXPECTED_COLUMNS: int = 6


# ── Data classes ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class ColumnSet:
    """Column split positions, absolute x-coordinates in the source image."""
    splits: Tuple[int, ...]      # strictly increasing, len = columns − 1
    left: int                    # outer left edge
    right: int                   # outer right edge (exclusive)
    method: str = "equal-division"   # "projection" | "partial-projection" | "equal-division"

    def __post_init__(self) -> None:
        edges = self.edges
        if any(b <= a for a, b in zip(edges, edges[1:])):
            raise ValueError(f"Column edges must be strictly increasing: {edges}")

    @property
    def column_count(self) -> int:
        return len(self.splits) + 1

    @property
    def edges(self) -> Tuple[int, ...]:
        return (self.left, *self.splits, self.right)

    def spans(self) -> List[Tuple[int, int]]:
        """(start, end) x-range of each column."""
        edges = self.edges
        return list(zip(edges, edges[1:]))


@dataclass(frozen=True)
class ColumnDetectionConfig:
    """Tunables for the projection search."""
    smoothing_divisor: int = 100       # smoothing window = width // divisor
    min_window: int = 3
    min_spacing_ratio: float = 0.5     # minima ≥ ratio × avg column width apart
    max_adjust_ratio: float = 0.5      # snap distance limit, × avg column width
    min_prominence_ratio: float = 0.05 # of the profile's dynamic range
    edge_margin_ratio: float = 0.25    # ignore minima this close to the outer edges


# ── Public API ─────────────────────────────────────────────────────────

def detect_columns_automatically(
    image: np.ndarray,
    search_region: Optional[Boundary] = None,
    use_heuristics: bool = True,
    expected_columns: int = DEFAULT_EXPECTED_COLUMNS,
    config: Optional[ColumnDetectionConfig] = None,
) -> ColumnSet:
    """Find the x-positions separating the table's text columns.

    Parameters
    ----------
    image : np.ndarray
        Grayscale or BGR page image.
    search_region : Boundary, optional
        Restrict the search to this rectangle (typically the detected
        table).  Clamped to the image.  Defaults to the whole image.
    use_heuristics : bool
        When False, skip the projection search and divide equally.
    expected_columns : int
        Number of text columns on the sheet.
    config : ColumnDetectionConfig, optional

    Returns
    -------
    ColumnSet
        Exactly ``expected_columns − 1`` splits.

    Raises
    ------
    ValueError
        If ``expected_columns < 1`` or the region is narrower than the
        number of columns.
    """
    if expected_columns < 1:
        raise ValueError(f"expected_columns must be >= 1, got {expected_columns}")
    if image is None or image.size == 0:
        raise ValueError("Expected a non-empty image")
    config = config or ColumnDetectionConfig()

    region = (search_region or Boundary.full_image(image.shape)).clamped(image.shape)
    if region.width < expected_columns:
        raise ValueError(
            f"Region is {region.width}px wide, cannot hold {expected_columns} columns"
        )

    fallback = equal_division(region.x, region.width, expected_columns)
    if expected_columns == 1 or not use_heuristics:
        return fallback

    crop = to_gray(image)[region.y:region.bottom, region.x:region.right]
    profile = smoothed_profile(crop, config)
    splits = _snap_to_minima(profile, region.x, fallback.splits, config)
    if splits is None:
        log.info("Column detection fell back to equal division (%d columns)", expected_columns)
        return fallback

    snapped = sum(1 for s, t in zip(splits, fallback.splits) if s != t)
    method = "projection" if snapped == len(splits) else "partial-projection"
    log.info("Columns detected via %s: %s", method, splits)
    return ColumnSet(tuple(splits), region.x, region.right, method)


def equal_division(left: int, width: int, columns: int) -> ColumnSet:
    """Exact equal-width split of ``[left, left + width)``."""
    step = width / columns
    splits = tuple(int(np.floor(left + i * step + 0.5)) for i in range(1, columns))
    return ColumnSet(splits, left, left + width, "equal-division")


def smoothed_profile(
    gray: np.ndarray,
    config: Optional[ColumnDetectionConfig] = None,
) -> np.ndarray:
    """Moving-average dark-pixel density per x."""
    config = config or ColumnDetectionConfig()
    _, dark = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
    density = (dark > 0).mean(axis=0).astype(np.float64)

    window = max(config.min_window, density.shape[0] // config.smoothing_divisor) | 1
    half = window // 2
    padded = np.pad(density, half, mode="edge")
    return np.convolve(padded, np.ones(window) / window, mode="valid")


# ── Minima search ──────────────────────────────────────────────────────

def _snap_to_minima(
    profile: np.ndarray,
    offset: int,
    targets: Tuple[int, ...],
    config: ColumnDetectionConfig,
) -> Optional[List[int]]:
    """Move each equal-division target onto its assigned profile minimum.

    Returns None when the profile does not support a confident answer.
    """
    width = profile.shape[0]
    avg_width = width / (len(targets) + 1)
    dynamic_range = float(profile.max() - profile.min())
    if dynamic_range <= 0:
        return None

    peaks, _ = find_peaks(
        -profile,
        distance=max(1, int(config.min_spacing_ratio * avg_width)),
        prominence=config.min_prominence_ratio * dynamic_range,
    )
    margin = config.edge_margin_ratio * avg_width
    minima = [int(p) + offset for p in peaks if margin <= p <= width - 1 - margin]
    if len(minima) < len(targets):
        log.debug("Only %d confident minima for %d splits", len(minima), len(targets))
        return None

    cost = np.abs(np.subtract.outer(np.asarray(targets), np.asarray(minima))).astype(float)
    rows, cols = linear_sum_assignment(cost)

    max_adjust = config.max_adjust_ratio * avg_width
    splits = list(targets)
    for r, c in zip(rows, cols):
        if cost[r, c] <= max_adjust:
            splits[r] = minima[c]

    min_gap = config.min_spacing_ratio * avg_width
    edges = [offset, *splits, offset + width]
    if any(b - a < min_gap for a, b in zip(edges, edges[1:])):
        log.debug("Snapped splits violate spacing: %s", splits)
        return None
    return splits
