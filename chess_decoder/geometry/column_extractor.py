"""
Column Extraction – Crops, upload encoding & review overlay
===========================================================

Pure image helpers sitting between geometry and recognition:

  • ``crop_to_boundary``   – clamped copy of a rectangle.
  • ``crop_columns``       – one crop per detected text column.
  • ``encode_image``       – JPEG bytes for the recognizer upload.
  • ``create_image_with_boundaries`` – human-review overlay showing the
    table rectangle, column splits and ruled-line corners.

None of these touch the file system; callers decide where images go.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import cv2
import numpy as np

from chess_decoder.geometry.column_detector import (
    DEFAULT_EXPECTED_COLUMNS,
    ColumnDetectionConfig,
    ColumnSet,
    detect_columns_automatically,
)
from chess_decoder.geometry.table_detector import (
    Boundary,
    TableDetectionConfig,
    detect_table,
    get_detected_corners,
)

log = logging.getLogger(__name__)

MAX_UPLOAD_SIDE: int = 1024


def crop_to_boundary(image: np.ndarray, boundary: Boundary) -> np.ndarray:
    """Copy of the part of *image* inside *boundary* (clamped to the image)."""
    b = boundary.clamped(image.shape)
    return image[b.y:b.bottom, b.x:b.right].copy()


def crop_columns(
    image: np.ndarray,
    column_set: ColumnSet,
    boundary: Optional[Boundary] = None,
    padding: int = 0,
) -> List[np.ndarray]:
    """Cut one image per column.

    Parameters
    ----------
    image : np.ndarray
        Source page.
    column_set : ColumnSet
        Column edges in absolute image coordinates.
    boundary : Boundary, optional
        Vertical extent of the table.  Defaults to the full image height.
    padding : int
        Extra pixels kept on each side of a column so strokes crossing a
        split are not cut.
    """
    top, bottom = 0, image.shape[0]
    if boundary is not None:
        b = boundary.clamped(image.shape)
        top, bottom = b.y, b.bottom

    crops: List[np.ndarray] = []
    for start, end in column_set.spans():
        rect = Boundary(start - padding, top, end - start + 2 * padding, bottom - top)
        crops.append(crop_to_boundary(image, rect))
    return crops


def encode_image(
    image: np.ndarray,
    max_side: int = MAX_UPLOAD_SIDE,
    quality: int = 90,
) -> bytes:
    """JPEG-encode *image*, downscaling so the long side is ≤ *max_side*."""
    h, w = image.shape[:2]
    scale = max_side / max(h, w)
    if scale < 1.0:
        image = cv2.resize(
            image,
            (max(1, int(w * scale)), max(1, int(h * scale))),
            interpolation=cv2.INTER_AREA,
        )
    ok, buf = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()


# ── Review overlay ─────────────────────────────────────────────────────

def create_image_with_boundaries(
    image: np.ndarray,
    expected_columns: int = DEFAULT_EXPECTED_COLUMNS,
    auto_crop: bool = True,
    table_config: Optional[TableDetectionConfig] = None,
    column_config: Optional[ColumnDetectionConfig] = None,
) -> np.ndarray:
    """Draw the detected table, column splits and corners on a copy of *image*.

    Colours: table boundary green, column splits blue, corners red,
    method banner white on black.

    Returns
    -------
    np.ndarray
        Annotated BGR image, same size as the input.
    """
    vis = image.copy()
    if vis.ndim == 2:
        vis = cv2.cvtColor(vis, cv2.COLOR_GRAY2BGR)

    if auto_crop:
        detection = detect_table(image, table_config)
        boundary, table_method = detection.boundary, detection.method
    else:
        boundary, table_method = Boundary.full_image(image.shape), "disabled"

    columns = detect_columns_automatically(
        image,
        search_region=boundary,
        expected_columns=expected_columns,
        config=column_config,
    )
    corners = get_detected_corners(image, table_config)

    thickness = max(1, min(vis.shape[:2]) // 400)
    cv2.rectangle(
        vis, (boundary.x, boundary.y), (boundary.right - 1, boundary.bottom - 1),
        (0, 200, 0), thickness + 1,
    )
    for x in columns.splits:
        cv2.line(vis, (x, boundary.y), (x, boundary.bottom - 1), (255, 80, 0), thickness)
    for c in corners:
        cv2.circle(vis, (c.x, c.y), thickness + 2, (0, 0, 255), -1)

    label = f"table={table_method}  columns={columns.method}  corners={len(corners)}"
    scale = max(0.4, vis.shape[1] / 1600)
    (tw, th), base = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, scale, 1)
    cv2.rectangle(vis, (0, 0), (tw + 10, th + base + 10), (0, 0, 0), -1)
    cv2.putText(
        vis, label, (5, th + 5),
        cv2.FONT_HERSHEY_SIMPLEX, scale, (255, 255, 255), 1,
    )
    return vis
