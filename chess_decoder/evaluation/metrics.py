"""
Evaluation – Decoded moves vs. ground-truth PGN
===============================================

Metrics over move *lists* (each SAN move is one symbol):

  • exact match        – share of aligned positions that agree, over the
                         longer list
  • positional accuracy – agreeing positions over the ground-truth length
  • Levenshtein distance – insertions / deletions / substitutions of moves
  • LCS length         – longest common subsequence of moves

The normalized score folds them into one number in [0, 1] (1 = perfect)
with weights 0.4 / 0.3 / 0.2 / 0.1.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from rapidfuzz.distance import LCSseq, Levenshtein

from chess_decoder.pgn.assembler import extract_moves_from_pgn
from chess_decoder.validation.models import GameValidation, MoveStatus

log = logging.getLogger(__name__)

EXACT_WEIGHT = 0.4
POSITIONAL_WEIGHT = 0.3
LEVENSHTEIN_WEIGHT = 0.2
LCS_WEIGHT = 0.1


@dataclass
class EvaluationResult:
    """Comparison of one decoded game with its ground truth."""
    ground_truth_moves: List[str]
    extracted_moves: List[str]
    exact_match_score: float
    positional_accuracy: float
    levenshtein_distance: int
    longest_common_subsequence: int
    normalized_score: float
    game_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "game_id": self.game_id,
            "ground_truth_moves": len(self.ground_truth_moves),
            "extracted_moves": len(self.extracted_moves),
            "exact_match_score": round(self.exact_match_score, 4),
            "positional_accuracy": round(self.positional_accuracy, 4),
            "levenshtein_distance": self.levenshtein_distance,
            "longest_common_subsequence": self.longest_common_subsequence,
            "normalized_score": round(self.normalized_score, 4),
        }


@dataclass
class AggregateEvaluationResult:
    """Averages over a batch of evaluations."""
    results: List[EvaluationResult] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.results)

    def _mean(self, attr: str) -> float:
        if not self.results:
            return 0.0
        return sum(getattr(r, attr) for r in self.results) / len(self.results)

    @property
    def average_normalized_score(self) -> float:
        return self._mean("normalized_score")

    @property
    def average_exact_match_score(self) -> float:
        return self._mean("exact_match_score")

    @property
    def average_positional_accuracy(self) -> float:
        return self._mean("positional_accuracy")

    @property
    def average_levenshtein_distance(self) -> float:
        return self._mean("levenshtein_distance")

    def to_dict(self) -> Dict:
        return {
            "count": self.count,
            "average_normalized_score": round(self.average_normalized_score, 4),
            "average_exact_match_score": round(self.average_exact_match_score, 4),
            "average_positional_accuracy": round(self.average_positional_accuracy, 4),
            "average_levenshtein_distance": round(self.average_levenshtein_distance, 4),
            "games": [r.to_dict() for r in self.results],
        }


# ── Metrics ────────────────────────────────────────────────────────────

def exact_match_score(ground_truth: Sequence[str], extracted: Sequence[str]) -> float:
    if not ground_truth:
        return 1.0 if not extracted else 0.0
    longest = max(len(ground_truth), len(extracted))
    matches = sum(1 for a, b in zip(ground_truth, extracted) if a == b)
    return matches / longest


def positional_accuracy(ground_truth: Sequence[str], extracted: Sequence[str]) -> float:
    if not ground_truth:
        return 1.0 if not extracted else 0.0
    matches = sum(1 for a, b in zip(ground_truth, extracted) if a == b)
    return matches / len(ground_truth)


def levenshtein_distance(ground_truth: Sequence[str], extracted: Sequence[str]) -> int:
    return int(Levenshtein.distance(list(ground_truth), list(extracted)))


def longest_common_subsequence(ground_truth: Sequence[str], extracted: Sequence[str]) -> int:
    return int(LCSseq.similarity(list(ground_truth), list(extracted)))


def normalized_score(
    ground_truth: Sequence[str],
    extracted: Sequence[str],
    exact: Optional[float] = None,
    positional: Optional[float] = None,
    distance: Optional[int] = None,
    lcs: Optional[int] = None,
) -> float:
    """Weighted score in [0, 1]; 1 means identical move lists."""
    if not ground_truth and not extracted:
        return 1.0
    exact = exact_match_score(ground_truth, extracted) if exact is None else exact
    positional = positional_accuracy(ground_truth, extracted) if positional is None else positional
    distance = levenshtein_distance(ground_truth, extracted) if distance is None else distance
    lcs = longest_common_subsequence(ground_truth, extracted) if lcs is None else lcs

    max_distance = max(len(ground_truth), len(extracted))
    max_lcs = min(len(ground_truth), len(extracted))
    penalty = (
        EXACT_WEIGHT * (1.0 - exact)
        + POSITIONAL_WEIGHT * (1.0 - positional)
        + LEVENSHTEIN_WEIGHT * (distance / max_distance if max_distance else 0.0)
        + LCS_WEIGHT * (1.0 - lcs / max_lcs if max_lcs else 1.0)
    )
    return max(0.0, 1.0 - penalty)


# ── Entry points ───────────────────────────────────────────────────────

def evaluate_moves(
    ground_truth: Sequence[str],
    extracted: Sequence[str],
    game_id: Optional[str] = None,
) -> EvaluationResult:
    gt, ex = list(ground_truth), list(extracted)
    exact = exact_match_score(gt, ex)
    positional = positional_accuracy(gt, ex)
    distance = levenshtein_distance(gt, ex)
    lcs = longest_common_subsequence(gt, ex)
    score = normalized_score(gt, ex, exact, positional, distance, lcs)
    log.info("Evaluation %s: normalized score %.3f", game_id or "", score)
    return EvaluationResult(gt, ex, exact, positional, distance, lcs, score, game_id)


def decoded_moves(validation: GameValidation, include_invalid: bool = False) -> List[str]:
    """SAN move list of a decoded game (invalid plies skipped unless asked)."""
    out: List[str] = []
    for m in validation.moves:
        if m.is_missing:
            continue
        if m.status is MoveStatus.INVALID and not include_invalid:
            continue
        out.append(m.normalized_notation)
    return out


def evaluate_game(ground_truth_pgn: str, validation: GameValidation) -> EvaluationResult:
    """Compare a decoded game with the mainline of a ground-truth PGN."""
    return evaluate_moves(
        extract_moves_from_pgn(ground_truth_pgn),
        decoded_moves(validation),
        game_id=validation.game_id,
    )
