"""
Error Taxonomy – Exceptions & Run Annotations
=============================================

Two kinds of failure flow through the decoder:

  • **Exceptions** – raised where a stage cannot continue.  Only
    ``InternalConsistencyError`` and ``ValidationCancelled`` ever reach the
    outer caller; ``GeometryAmbiguous`` and ``ExtractionFailed`` are caught
    by the pipeline and degraded.
  • **Run issues** – ``RunIssue`` records attached to a ``GameValidation``
    so the caller can see what degraded without losing the partial result.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class ScoresheetError(Exception):
    """Base class for all decoder errors."""


class GeometryAmbiguous(ScoresheetError):
    """A geometry strategy could not find a confident answer."""


class ExtractionFailed(ScoresheetError):
    """The external recognizer failed (timeout, network, API error)."""

    def __init__(
        self,
        message: str,
        column_index: Optional[int] = None,
        provider: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.column_index = column_index
        self.provider = provider


class InternalConsistencyError(ScoresheetError):
    """Incremental simulation produced a structurally impossible position."""


class ValidationCancelled(ScoresheetError):
    """Validation was cancelled before the game segment completed."""


# ── Run annotations ────────────────────────────────────────────────────

class IssueKind(str, enum.Enum):
    GEOMETRY_AMBIGUOUS = "geometry_ambiguous"
    EXTRACTION_FAILED = "extraction_failed"
    NORMALIZATION_EMPTY = "normalization_empty"
    MOVE_INVALID = "move_invalid"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunIssue:
    """A non-fatal problem recorded against a pipeline run."""
    kind: IssueKind
    message: str
    segment: Optional[str] = None     # e.g. "page1/column3"

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "segment": self.segment}
