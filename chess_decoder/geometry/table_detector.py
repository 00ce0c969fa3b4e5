"""
Table Detection – Ruled-line morphology + Ink-projection fallback
=================================================================

Locates the move table on a photographed scoresheet.

Strategy chain (first confident answer wins):

    Strategy A – **Ruled-line morphology**
        Adaptive-threshold the page, open it with long horizontal and
        vertical kernels so only ruled lines survive, and take the bounding
        rectangle of the largest connected grid.

    Strategy B – **Ink-projection bounding box**
        Project ink density onto both axes and keep the span of rows and
        columns that carry a meaningful share of the peak density.  Works
        on sheets printed without ruling or photographed too softly for
        strategy A.

    Strategy C – **Full image**
        Fail closed: the whole image is the table.

Each strategy raises ``GeometryAmbiguous`` when it is not confident; the
dispatcher catches it and moves to the next one, so ``find_table_boundaries``
never raises on an unclear photo.

The corner helpers at the bottom are diagnostic only and feed the debug
overlay, never the decoding path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import cv2
import numpy as np

from chess_decoder.errors import GeometryAmbiguous

log = logging.getLogger(__name__)


# ── Data classes ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Boundary:
    """Axis-aligned rectangle in image coordinates."""
    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(
                f"Boundary must have positive area, got {self.width}x{self.height}"
            )

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    @classmethod
    def full_image(cls, shape: Tuple[int, ...]) -> "Boundary":
        h, w = shape[:2]
        return cls(0, 0, int(w), int(h))

    def clamped(self, shape: Tuple[int, ...]) -> "Boundary":
        """Return the largest part of this rectangle inside an image of *shape*.

        A rectangle lying completely outside the image collapses onto the
        nearest 1-pixel strip, so the result always has positive area.
        """
        h, w = shape[:2]
        if h <= 0 or w <= 0:
            raise ValueError(f"Cannot clamp to an empty image of shape {shape}")
        x0 = min(max(self.x, 0), w - 1)
        y0 = min(max(self.y, 0), h - 1)
        x1 = min(max(self.right, x0 + 1), w)
        y1 = min(max(self.bottom, y0 + 1), h)
        return Boundary(x0, y0, x1 - x0, y1 - y0)

    def is_inside(self, shape: Tuple[int, ...]) -> bool:
        h, w = shape[:2]
        return self.x >= 0 and self.y >= 0 and self.right <= w and self.bottom <= h

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class CornerPoint:
    """A ruled-line intersection; diagnostic only."""
    x: int
    y: int
    strength: int        # pixel area of the intersection blob


@dataclass(frozen=True)
class TableDetectionConfig:
    """Tunables for table detection.

    The defaults were chosen on phone photos of A4/Letter scoresheets at
    roughly 1000–3000 px on the long side.
    """
    block_size: int = 15            # adaptive-threshold neighbourhood (odd)
    threshold_c: int = 10           # constant subtracted from the local mean
    line_scale: int = 20            # line kernel = image side / line_scale
    min_line_length: int = 10       # lower bound for the line kernel
    min_area_ratio: float = 0.15    # table must cover this share of the page
    ink_row_ratio: float = 0.10     # projection rows kept above ratio × peak
    min_ink_ratio: float = 0.002    # below this the page is considered blank


@dataclass
class TableDetection:
    """Result of table detection."""
    boundary: Boundary
    method: str                     # "ruled-lines" | "ink-projection" | "full-image"
    confidence: float
    reasons: List[str] = field(default_factory=list)   # why earlier strategies gave up


# ── Public API ─────────────────────────────────────────────────────────

def find_table_boundaries(
    image: np.ndarray,
    config: TableDetectionConfig | None = None,
) -> Boundary:
    """Return the bounding rectangle of the move table.

    Parameters
    ----------
    image : np.ndarray
        Grayscale or BGR page image.
    config : TableDetectionConfig, optional
        Detection tunables.

    Returns
    -------
    Boundary
        Always inside the image; the full image when nothing confident is found.
    """
    return detect_table(image, config).boundary


def detect_table(
    image: np.ndarray,
    config: TableDetectionConfig | None = None,
) -> TableDetection:
    """Run the strategy chain and report which strategy answered."""
    config = config or TableDetectionConfig()
    _check_image(image)
    binary = binarize(image, config)
    reasons: List[str] = []

    # ── Strategy A: ruled lines ──
    try:
        boundary = _strategy_ruled_lines(binary, config)
        log.info("Table detected via ruled-line strategy: %s", boundary)
        return TableDetection(boundary, "ruled-lines", 0.9, reasons)
    except GeometryAmbiguous as exc:
        reasons.append(f"ruled-lines: {exc}")
        log.debug("Ruled-line strategy gave up: %s", exc)

    # ── Strategy B: ink projection ──
    try:
        boundary = _strategy_ink_projection(binary, config)
        log.info("Table detected via ink-projection strategy: %s", boundary)
        return TableDetection(boundary, "ink-projection", 0.6, reasons)
    except GeometryAmbiguous as exc:
        reasons.append(f"ink-projection: {exc}")
        log.debug("Ink-projection strategy gave up: %s", exc)

    # ── Strategy C: whole page ──
    log.warning("Table detection fallback: using full image (%s)", "; ".join(reasons))
    return TableDetection(Boundary.full_image(image.shape), "full-image", 0.0, reasons)


# ── Preprocessing ──────────────────────────────────────────────────────

def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def binarize(image: np.ndarray, config: TableDetectionConfig | None = None) -> np.ndarray:
    """Adaptive threshold with ink = 255 and paper = 0."""
    config = config or TableDetectionConfig()
    gray = to_gray(image)
    block = max(3, config.block_size | 1)
    return cv2.adaptiveThreshold(
        gray, 255,
        cv2.ADAPTIVE_THRESH_MEAN_C, cv2.THRESH_BINARY_INV,
        block, config.threshold_c,
    )


def line_masks(
    binary: np.ndarray,
    config: TableDetectionConfig | None = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Split a binary page into (horizontal, vertical) ruled-line masks."""
    config = config or TableDetectionConfig()
    h, w = binary.shape[:2]
    h_len = max(config.min_line_length, w // config.line_scale)
    v_len = max(config.min_line_length, h // config.line_scale)

    h_kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (h_len, 1))
    v_kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (1, v_len))
    horizontal = cv2.morphologyEx(binary, cv2.MORPH_OPEN, h_kernel)
    vertical = cv2.morphologyEx(binary, cv2.MORPH_OPEN, v_kernel)
    return horizontal, vertical


# ── Strategies ─────────────────────────────────────────────────────────

def _strategy_ruled_lines(
    binary: np.ndarray, config: TableDetectionConfig,
) -> Boundary:
    """Bounding rect of the largest grid formed by ruled lines."""
    h, w = binary.shape[:2]
    horizontal, vertical = line_masks(binary, config)
    if not horizontal.any() or not vertical.any():
        raise GeometryAmbiguous("no ruled lines in one or both directions")

    grid = cv2.add(horizontal, vertical)
    grid = cv2.dilate(grid, cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3)), iterations=1)
    contours, _ = cv2.findContours(grid, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if not contours:
        raise GeometryAmbiguous("ruled lines do not form a contour")

    best = max(contours, key=lambda c: cv2.boundingRect(c)[2] * cv2.boundingRect(c)[3])
    x, y, bw, bh = cv2.boundingRect(best)
    if bw * bh < config.min_area_ratio * h * w:
        raise GeometryAmbiguous(
            f"largest grid covers {bw * bh / (h * w):.1%} of the page"
        )
    return Boundary(x, y, bw, bh).clamped(binary.shape)


def _strategy_ink_projection(
    binary: np.ndarray, config: TableDetectionConfig,
) -> Boundary:
    """Bounding box of rows/columns that carry a meaningful share of ink."""
    h, w = binary.shape[:2]
    ink = binary > 0
    if ink.mean() < config.min_ink_ratio:
        raise GeometryAmbiguous("page is blank")

    row_density = ink.mean(axis=1)
    col_density = ink.mean(axis=0)
    rows = np.where(row_density > config.ink_row_ratio * row_density.max())[0]
    cols = np.where(col_density > config.ink_row_ratio * col_density.max())[0]
    if len(rows) < 2 or len(cols) < 2:
        raise GeometryAmbiguous("ink does not span a region")

    x1, x2 = int(cols[0]), int(cols[-1]) + 1
    y1, y2 = int(rows[0]), int(rows[-1]) + 1
    if (x2 - x1) * (y2 - y1) < config.min_area_ratio * h * w:
        raise GeometryAmbiguous(
            f"inked region covers {(x2 - x1) * (y2 - y1) / (h * w):.1%} of the page"
        )
    return Boundary(x1, y1, x2 - x1, y2 - y1).clamped(binary.shape)


# ── Corner diagnostics ─────────────────────────────────────────────────

def get_detected_corners(
    image: np.ndarray,
    config: TableDetectionConfig | None = None,
) -> List[CornerPoint]:
    """Intersections of horizontal and vertical ruled lines, top-to-bottom."""
    config = config or TableDetectionConfig()
    _check_image(image)
    horizontal, vertical = line_masks(binarize(image, config), config)
    return _intersections(horizontal, vertical)


def get_detailed_corner_info(
    image: np.ndarray,
    config: TableDetectionConfig | None = None,
) -> Dict:
    """Corner set plus the line and table statistics behind it."""
    config = config or TableDetectionConfig()
    _check_image(image)
    binary = binarize(image, config)
    horizontal, vertical = line_masks(binary, config)
    corners = _intersections(horizontal, vertical)
    detection = detect_table(image, config)

    return {
        "image_size": {"width": int(image.shape[1]), "height": int(image.shape[0])},
        "horizontal_lines": _count_components(horizontal),
        "vertical_lines": _count_components(vertical),
        "corner_count": len(corners),
        "corners": [{"x": c.x, "y": c.y, "strength": c.strength} for c in corners],
        "table": detection.boundary.to_dict(),
        "table_method": detection.method,
        "table_confidence": detection.confidence,
    }


def _intersections(horizontal: np.ndarray, vertical: np.ndarray) -> List[CornerPoint]:
    joints = cv2.bitwise_and(horizontal, vertical)
    joints = cv2.dilate(joints, cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3)))
    n, _, stats, centroids = cv2.connectedComponentsWithStats(joints, connectivity=8)

    corners = [
        CornerPoint(
            x=int(round(centroids[i][0])),
            y=int(round(centroids[i][1])),
            strength=int(stats[i, cv2.CC_STAT_AREA]),
        )
        for i in range(1, n)   # label 0 is background
    ]
    corners.sort(key=lambda c: (c.y, c.x))
    return corners


def _count_components(mask: np.ndarray) -> int:
    n, _ = cv2.connectedComponents(mask)
    return int(n) - 1


def _check_image(image: np.ndarray) -> None:
    if image is None or image.size == 0 or image.ndim not in (2, 3):
        raise ValueError("Expected a non-empty grayscale or BGR image")
