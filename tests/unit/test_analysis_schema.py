"""Legacy analysis documents are upgraded when read from the store."""

from __future__ import annotations

import pytest

from roomfix.core.errors import ValidationError
from roomfix.core.models import MediaKind
from roomfix.core.schema import CURRENT_SCHEMA_VERSION, upgrade_analysis_document
from roomfix.core.store import analysis_from_document


def _legacy_video_document() -> dict:
    return {
        "resource_id": "res_old",
        "owner_id": "o1",
        "kind": "video",
        "overall": {"score": 64, "grade": "D"},
        "dimensions": {"lighting": {"score": 55}, "clutter": {"score": 60}},
        "categorized_problems": {
            "general": [
                {"problem_id": "g1", "title": "Dim room", "severity": "medium", "dimension": "lighting"}
            ],
            "frame_specific": [
                {
                    "problem_id": "f1",
                    "title": "Pile of boxes",
                    "severity": "high",
                    "dimension": "clutter",
                    "frame_index": 3,
                    "timestamp": 15.0,
                    "frame_storage_key": "media/o1/res_old/frames/f3.jpg",
                },
                {
                    "problem_id": "f2",
                    "title": "Cables",
                    "severity": "low",
                    "dimension": "clutter",
                    "frame_index": 3,
                    "timestamp": 15.0,
                },
                {
                    "problem_id": "f3",
                    "title": "Blocked window",
                    "severity": "medium",
                    "dimension": "lighting",
                    "frame_index": 1,
                    "timestamp": 5.0,
                },
            ],
        },
    }


def test_legacy_frame_problems_are_grouped_by_frame() -> None:
    analysis = analysis_from_document(_legacy_video_document())

    assert analysis.schema_version == CURRENT_SCHEMA_VERSION
    assert analysis.kind == MediaKind.VIDEO
    assert [p.problem_id for p in analysis.general_problems] == ["g1"]
    assert [pf.frame_index for pf in analysis.problem_frames] == [1, 3]
    frame3 = analysis.problem_frames[1]
    assert frame3.frame_id == "legacy_pf_3"
    assert frame3.storage_key == "media/o1/res_old/frames/f3.jpg"
    assert [p.problem_id for p in frame3.problems] == ["f1", "f2"]
    assert analysis.problem_ids() == ["g1", "f3", "f1", "f2"]


def test_current_documents_pass_through_unchanged() -> None:
    doc = {"schema_version": 2, "general_problems": [], "problem_frames": []}
    assert upgrade_analysis_document(dict(doc)) == doc


def test_future_schema_version_is_rejected() -> None:
    with pytest.raises(ValidationError):
        upgrade_analysis_document({"schema_version": CURRENT_SCHEMA_VERSION + 1})


@pytest.mark.asyncio
async def test_store_reads_upgrade_legacy_documents(harness) -> None:
    await harness.store.put_analysis_document("res_old", _legacy_video_document())

    analysis = await harness.services.dedup.load_analysis("res_old")

    assert analysis is not None
    assert {ref.problem_id for ref in analysis.problem_refs()} == {"g1", "f1", "f2", "f3"}
