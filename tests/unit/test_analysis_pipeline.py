"""Image and video analysis state machines driven through the in-memory queue."""

from __future__ import annotations

from typing import List

import pytest

from roomfix.core.errors import ForbiddenError, TransientInfraError, ValidationError
from roomfix.core.models import AnalysisStatus, MediaKind, ProblemFrame


def _record_stages(harness) -> List[AnalysisStatus]:
    seen: List[AnalysisStatus] = []
    original = harness.store.update_resource

    async def _spy(resource_id, **fields):
        if "analysis_status" in fields:
            seen.append(fields["analysis_status"])
        return await original(resource_id, **fields)

    harness.store.update_resource = _spy
    return seen


class TestImageAnalysis:
    @pytest.mark.asyncio
    async def test_stage_order_and_result(self, harness) -> None:
        stages = _record_stages(harness)

        resource = await harness.upload()

        assert stages == [
            AnalysisStatus.QUEUED,
            AnalysisStatus.MODERATING,
            AnalysisStatus.ANALYZING,
            AnalysisStatus.COMPLETED,
        ]
        assert resource.overall_score == 68
        assert resource.analyzed_at is not None
        analysis = await harness.services.resources.get_analysis("owner_1", resource.resource_id)
        assert analysis.cost_summary.min_total == 70
        assert analysis.cost_summary.max_total == 120
        assert analysis.cost_summary.by_dimension["lighting"].count == 2

    @pytest.mark.asyncio
    async def test_unsafe_image_fails_with_strike(self, harness) -> None:
        harness.ai.unsafe.add(b"bad image")

        resource = await harness.upload(data=b"bad image")

        assert resource.analysis_status == AnalysisStatus.FAILED
        assert "explicit" in resource.error
        assert harness.ai.calls["analyze"] == 0
        assert (await harness.store.get_account("owner_1", 20)).violation_count == 1

    @pytest.mark.asyncio
    async def test_moderation_outage_is_not_a_strike(self, harness) -> None:
        harness.ai.moderation_error = RuntimeError("moderation endpoint 500")

        resource = await harness.upload()

        assert resource.analysis_status == AnalysisStatus.FAILED
        assert (await harness.store.get_account("owner_1", 20)).violation_count == 0

    @pytest.mark.asyncio
    async def test_repeat_offender_gets_blocked(self, harness) -> None:
        for i in range(3):
            data = f"bad {i}".encode()
            harness.ai.unsafe.add(data)
            await harness.upload(data=data)

        account = await harness.store.get_account("owner_1", 20)
        assert account.blocked
        with pytest.raises(ForbiddenError):
            await harness.upload(data=b"harmless")

    @pytest.mark.asyncio
    async def test_empty_upload_is_rejected_before_metering(self, harness) -> None:
        with pytest.raises(ValidationError):
            await harness.services.resources.ingest("owner_1", b"", MediaKind.IMAGE, "image/jpeg")
        assert (await harness.store.get_account("owner_1", 20)).consumed == 0

    @pytest.mark.asyncio
    async def test_enqueue_failure_marks_resource_failed(self, harness) -> None:
        harness.queue.fail_next = True

        with pytest.raises(TransientInfraError):
            await harness.services.resources.ingest("owner_1", b"img", MediaKind.IMAGE, "image/jpeg")

        statuses = [r["analysis_status"] for r in harness.store._resources.values()]
        assert statuses == ["failed"]
        assert (await harness.store.get_account("owner_1", 20)).consumed == 0

    @pytest.mark.asyncio
    async def test_stale_message_is_ignored(self, harness) -> None:
        resource = await harness.upload(analyze=False)
        message = harness.queue.analysis_messages[0]
        await harness.run_analyses()

        status = await harness.services.analysis.process(message)

        assert status == AnalysisStatus.COMPLETED
        assert harness.ai.calls["analyze"] == 1
        assert (await harness.store.get_resource(resource.resource_id)).analysis_status == AnalysisStatus.COMPLETED


class TestVideoAnalysis:
    @pytest.mark.asyncio
    async def test_stage_order(self, harness) -> None:
        stages = _record_stages(harness)

        resource = await harness.upload(data=b"video", kind=MediaKind.VIDEO)

        assert resource.analysis_status == AnalysisStatus.COMPLETED
        assert stages == [
            AnalysisStatus.QUEUED,
            AnalysisStatus.EXTRACTING,
            AnalysisStatus.MODERATING,
            AnalysisStatus.ANALYZING,
            AnalysisStatus.AGGREGATING,
            AnalysisStatus.COMPLETED,
        ]
        assert resource.duration_seconds == 42.0
        assert (await harness.store.get_account("owner_1", 20)).consumed == 2

    @pytest.mark.asyncio
    async def test_two_pass_extraction(self, harness) -> None:
        resource = await harness.upload(data=b"video", kind=MediaKind.VIDEO)

        uniform, targeted = harness.extractor.extract_calls
        assert uniform == [0.0, 5.0, 10.0, 15.0, 20.0, 25.0, 30.0, 35.0, 40.0]
        assert targeted == [6.0, 21.0]
        # 9 uniform frames plus 2 targeted frames, each moderated once.
        assert harness.ai.calls["moderate"] == 11

        analysis = await harness.store.get_analysis(resource.resource_id)
        assert len(analysis.frames) == 9
        assert analysis.frames[1].problem_ids == ["frame_1"]
        assert analysis.frames[4].problem_ids == ["frame_2"]
        assert analysis.frames[1].score == 85
        assert analysis.frames[0].score == 100
        assert all(pf.storage_key for pf in analysis.problem_frames)
        assert await harness.services.storage.load(analysis.problem_frames[0].storage_key) == b"frame@6.0"

    @pytest.mark.asyncio
    async def test_unsafe_frame_aborts_whole_job(self, harness) -> None:
        harness.ai.unsafe.add(b"frame@10.0")

        resource = await harness.upload(data=b"video", kind=MediaKind.VIDEO)

        assert resource.analysis_status == AnalysisStatus.FAILED
        assert harness.ai.calls["analyze"] == 0
        assert (await harness.store.get_account("owner_1", 20)).violation_count == 1
        assert await harness.store.get_analysis(resource.resource_id) is None

    @pytest.mark.asyncio
    async def test_rejected_problem_frame_is_skipped(self, harness) -> None:
        harness.ai.unsafe.add(b"frame@21.0")

        resource = await harness.upload(data=b"video", kind=MediaKind.VIDEO)

        assert resource.analysis_status == AnalysisStatus.COMPLETED
        analysis = await harness.store.get_analysis(resource.resource_id)
        assert analysis.problem_frames[0].storage_key is not None
        assert analysis.problem_frames[1].storage_key is None

    @pytest.mark.asyncio
    async def test_problem_frame_moderation_outage_is_skipped(self, harness) -> None:
        original = harness.ai.moderate

        async def _rate_limited(media):
            if media.data == b"frame@21.0":
                raise TransientInfraError("rate limited")
            return await original(media)

        harness.ai.moderate = _rate_limited

        resource = await harness.upload(data=b"video", kind=MediaKind.VIDEO)

        assert resource.analysis_status == AnalysisStatus.COMPLETED
        analysis = await harness.store.get_analysis(resource.resource_id)
        assert analysis.problem_frames[0].storage_key is not None
        assert analysis.problem_frames[1].storage_key is None
        assert (await harness.store.get_account("owner_1", 20)).violation_count == 0

    @pytest.mark.asyncio
    async def test_too_long_video_fails_without_strike(self, harness) -> None:
        harness.extractor.duration = 90.0

        resource = await harness.upload(data=b"video", kind=MediaKind.VIDEO)

        assert resource.analysis_status == AnalysisStatus.FAILED
        assert "maximum" in resource.error
        assert (await harness.store.get_account("owner_1", 20)).violation_count == 0

    @pytest.mark.asyncio
    async def test_problem_frames_are_capped(self, harness) -> None:
        extra = [ProblemFrame(frame_index=10 + i, timestamp=float(i * 4)) for i in range(8)]
        harness.ai.video_draft.problem_frames = extra

        resource = await harness.upload(data=b"video", kind=MediaKind.VIDEO)

        analysis = await harness.store.get_analysis(resource.resource_id)
        assert len(analysis.problem_frames) == 6
        assert len(harness.extractor.extract_calls[1]) == 6
