"""Deterministic score recomputation after a fix.

Per dimension, with ``points`` the severity-weighted sum over the fixed
problems in that dimension (high 15, medium 10, low 5):

- no problems at all: ``max(original, 90)``
- none of its problems fixed: unchanged
- every problem fixed: ``min(100, max(95, original + points))``
- some problems fixed: ``min(90, original + points)``

The overall score is the mean of the dimension scores rounded half up, then
floored at 95 for the ``all`` scope.
"""

from __future__ import annotations

import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List

from roomfix.core.models import DIMENSIONS, SEVERITY_POINTS, Analysis, FixScope, Problem


@dataclass(frozen=True)
class FixedScores:
    fixed_score: int
    fixed_dimension_scores: Dict[str, int]
    original_dimension_scores: Dict[str, int]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _dimension_order(analysis: Analysis) -> List[str]:
    known = [d for d in DIMENSIONS if d in analysis.dimensions]
    extra = sorted(d for d in analysis.dimensions if d not in DIMENSIONS)
    return known + extra


def _problems_by_dimension(analysis: Analysis) -> Dict[str, List[Problem]]:
    grouped: Dict[str, List[Problem]] = {name: [] for name in analysis.dimensions}
    for ref in analysis.problem_refs():
        if ref.dimension in grouped:
            grouped[ref.dimension].append(ref.problem)
    return grouped


def dimension_score(original: int, problems: List[Problem], fixed_ids: set) -> int:
    if not problems:
        return max(original, 90)
    fixed = [p for p in problems if p.problem_id in fixed_ids]
    if not fixed:
        return original
    points = sum(SEVERITY_POINTS[p.severity] for p in fixed)
    if len(fixed) == len(problems):
        return min(100, max(95, original + points))
    return min(90, original + points)


def calculate_fixed_scores(
    analysis: Analysis, fixed_problem_ids: Iterable[str], scope: FixScope
) -> FixedScores:
    fixed_ids = set(fixed_problem_ids)
    grouped = _problems_by_dimension(analysis)
    original: Dict[str, int] = OrderedDict()
    fixed: Dict[str, int] = OrderedDict()
    for name in _dimension_order(analysis):
        score = analysis.dimensions[name].score
        original[name] = score
        fixed[name] = dimension_score(score, grouped[name], fixed_ids)

    if fixed:
        overall = round_half_up(sum(fixed.values()) / len(fixed))
    else:
        overall = analysis.overall.score
    if scope == FixScope.ALL:
        overall = max(overall, 95)
    return FixedScores(
        fixed_score=overall,
        fixed_dimension_scores=dict(fixed),
        original_dimension_scores=dict(original),
    )
