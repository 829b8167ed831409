"""Tests for post-fix score recomputation."""

from __future__ import annotations

from roomfix.core.models import Analysis, FixScope, MediaKind
from roomfix.core.scoring import calculate_fixed_scores, dimension_score, round_half_up


def _bind(draft, kind=MediaKind.IMAGE) -> Analysis:
    return Analysis(resource_id="res_1", owner_id="o1", kind=kind, **draft.model_dump())


class TestCalculateFixedScores:
    def test_all_scope_clamps_fixed_dimensions_and_floors_overall(self, image_draft) -> None:
        analysis = _bind(image_draft)
        scores = calculate_fixed_scores(analysis, analysis.problem_ids(), FixScope.ALL)

        fixed = scores.fixed_dimension_scores
        assert 95 <= fixed["lighting"] <= 100
        assert 95 <= fixed["clutter"] <= 100
        for name in ("spatial", "color", "biophilic", "fengShui"):
            assert fixed[name] >= 90
        assert fixed["fengShui"] == 95
        assert scores.fixed_score >= 95
        assert scores.original_dimension_scores["lighting"] == 50

    def test_partial_fix_is_capped_at_90(self, image_draft) -> None:
        analysis = _bind(image_draft)
        scores = calculate_fixed_scores(analysis, ["light_1"], FixScope.SINGLE)

        # 50 + 15 for the high-severity problem; light_2 still open.
        assert scores.fixed_dimension_scores["lighting"] == 65
        assert scores.fixed_dimension_scores["clutter"] == 60

    def test_untouched_dimension_keeps_original_score(self, image_draft) -> None:
        analysis = _bind(image_draft)
        scores = calculate_fixed_scores(analysis, ["clutter_1"], FixScope.SINGLE)

        assert scores.fixed_dimension_scores["lighting"] == 50
        assert scores.fixed_dimension_scores["clutter"] == 95

    def test_is_deterministic(self, image_draft) -> None:
        analysis = _bind(image_draft)
        first = calculate_fixed_scores(analysis, ["light_2", "clutter_1"], FixScope.MULTIPLE)
        second = calculate_fixed_scores(analysis, ["clutter_1", "light_2"], FixScope.MULTIPLE)
        assert first == second

    def test_video_frame_problems_count_toward_their_dimension(self, video_draft) -> None:
        analysis = _bind(video_draft, MediaKind.VIDEO)
        scores = calculate_fixed_scores(analysis, ["frame_1"], FixScope.SINGLE)

        assert scores.fixed_dimension_scores["clutter"] == 95
        assert scores.fixed_dimension_scores["spatial"] == 75
        assert scores.fixed_dimension_scores["lighting"] == 60


def test_dimension_without_problems_is_floored_at_90() -> None:
    assert dimension_score(70, [], set()) == 90
    assert dimension_score(97, [], set()) == 97


def test_fully_fixed_dimension_is_capped_at_100(image_draft) -> None:
    problems = image_draft.dimensions["lighting"].problems
    assert dimension_score(88, problems, {"light_1", "light_2"}) == 100


def test_round_half_up() -> None:
    assert round_half_up(92.5) == 93
    assert round_half_up(92.49) == 92
    assert round_half_up(91.5) == 92
