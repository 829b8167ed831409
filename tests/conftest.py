import os
from collections import Counter
from typing import List, Optional, Sequence, Set

import pytest
import pytest_asyncio

from roomfix.core.ai import GeneratedFix, Media, ModerationResult
from roomfix.core.config import Settings, reset_settings
from roomfix.core.container import Services, build_services
from roomfix.core.models import (
    AnalysisDraft,
    DimensionAnalysis,
    FixStatus,
    MediaKind,
    OverallScore,
    Problem,
    ProblemFrame,
    ProblemRef,
    Resource,
    Severity,
    Solution,
)
from roomfix.core.queue import InMemoryJobQueue
from roomfix.core.resilience import ExponentialBackoff, RetryPolicy
from roomfix.core.storage import LocalMediaStorage
from roomfix.core.store import InMemoryStore
from roomfix.utils.cache import NullCache


# Environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "REDIS_ENABLED",
    "REDIS_URL",
    "STORE_BACKEND",
    "DEFAULT_CREDIT_LIMIT",
    "MAX_CONCURRENT_FIXES",
    "AI_SERVICE_URL",
    "AI_SERVICE_API_KEY",
    "AI_TIMEOUT_SECONDS",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and the settings cache between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    reset_settings()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        reset_settings()


def _problem(pid: str, dimension: str, severity: Severity, cost: str = "$50-100") -> Problem:
    return Problem(
        problem_id=pid,
        title=f"Problem {pid}",
        description=f"Description of {pid}",
        severity=severity,
        dimension=dimension,
        solution=Solution(
            solution_id=f"sol_{pid}",
            problem_id=pid,
            title=f"Solve {pid}",
            cost_estimate=cost,
            difficulty="easy",
        ),
    )


def make_image_draft() -> AnalysisDraft:
    """Problems only in lighting (one high, one low) and clutter (one medium)."""
    return AnalysisDraft(
        overall=OverallScore(score=68, grade="C", summary="Dim and cluttered"),
        dimensions={
            "lighting": DimensionAnalysis(
                score=50,
                problems=[
                    _problem("light_1", "lighting", Severity.HIGH),
                    _problem("light_2", "lighting", Severity.LOW, cost="$20"),
                ],
            ),
            "spatial": DimensionAnalysis(score=80),
            "color": DimensionAnalysis(score=85),
            "clutter": DimensionAnalysis(
                score=60, problems=[_problem("clutter_1", "clutter", Severity.MEDIUM, cost="Free")]
            ),
            "biophilic": DimensionAnalysis(score=70),
            "fengShui": DimensionAnalysis(score=95),
        },
    )


def make_video_draft() -> AnalysisDraft:
    return AnalysisDraft(
        overall=OverallScore(score=70, grade="C"),
        dimensions={
            "lighting": DimensionAnalysis(score=60),
            "spatial": DimensionAnalysis(score=75),
            "clutter": DimensionAnalysis(score=65),
        },
        general_problems=[_problem("gen_1", "lighting", Severity.MEDIUM)],
        problem_frames=[
            ProblemFrame(
                frame_index=1,
                timestamp=6.0,
                problems=[_problem("frame_1", "clutter", Severity.HIGH)],
            ),
            ProblemFrame(
                frame_index=4,
                timestamp=21.0,
                problems=[_problem("frame_2", "spatial", Severity.LOW)],
            ),
        ],
    )


class FakeAI:
    """Scriptable AI collaborator that counts every call."""

    def __init__(self) -> None:
        self.calls: Counter = Counter()
        self.image_draft = make_image_draft()
        self.video_draft = make_video_draft()
        self.unsafe: Set[bytes] = set()
        self.unsafe_category = "explicit"
        self.moderation_error: Optional[Exception] = None
        self.analyze_error: Optional[Exception] = None
        self.generate_error: Optional[Exception] = None
        self.plan_error: Optional[Exception] = None
        self.moderated: List[bytes] = []
        self.fix_requests: List[List[str]] = []

    async def analyze(self, media: Media, kind: MediaKind) -> AnalysisDraft:
        self.calls["analyze"] += 1
        if self.analyze_error is not None:
            raise self.analyze_error
        draft = self.video_draft if kind == MediaKind.VIDEO else self.image_draft
        return draft.model_copy(deep=True)

    async def generate_fix(self, media: Media, problems: Sequence[ProblemRef]) -> GeneratedFix:
        self.calls["generate_fix"] += 1
        self.fix_requests.append([p.problem_id for p in problems])
        if self.generate_error is not None:
            raise self.generate_error
        return GeneratedFix(
            data=b"fixed:" + media.data,
            mime_type="image/jpeg",
            changes_applied=[p.solution.title for p in problems],
            summary="Brightened the room\nand cleared surfaces",
            fix_name="Bright and tidy",
        )

    async def generate_plan(self, media: Media, problems: Sequence[ProblemRef]) -> str:
        self.calls["generate_plan"] += 1
        if self.plan_error is not None:
            raise self.plan_error
        return "1. " + "; ".join(p.solution.title for p in problems)

    async def moderate(self, media: Media) -> ModerationResult:
        self.calls["moderate"] += 1
        self.moderated.append(media.data)
        if self.moderation_error is not None:
            raise self.moderation_error
        if media.data in self.unsafe:
            return ModerationResult(safe=False, category=self.unsafe_category, reason="flagged")
        return ModerationResult(safe=True)


class FakeFrameExtractor:
    def __init__(self, duration: float = 42.0) -> None:
        self.duration = duration
        self.extract_calls: List[List[float]] = []

    async def probe_duration(self, media: Media) -> float:
        return self.duration

    async def extract(self, media: Media, timestamps: Sequence[float]) -> List[bytes]:
        self.extract_calls.append(list(timestamps))
        return [frame_bytes(t) for t in timestamps]


def frame_bytes(timestamp: float) -> bytes:
    return f"frame@{timestamp:.1f}".encode()


async def _no_sleep(_delay: float) -> None:
    return None


class Harness:
    """In-memory services plus helpers to drive the queued workers."""

    def __init__(self, services: Services, ai: FakeAI, extractor: FakeFrameExtractor) -> None:
        self.services = services
        self.ai = ai
        self.extractor = extractor

    @property
    def store(self) -> InMemoryStore:
        return self.services.store

    @property
    def queue(self) -> InMemoryJobQueue:
        return self.services.queue

    async def drain(self) -> None:
        await self.services.background.drain()

    async def run_analyses(self) -> None:
        while self.queue.analysis_messages:
            await self.services.analysis.process(self.queue.analysis_messages.pop(0))
        await self.drain()

    async def run_fixes(self) -> List[FixStatus]:
        statuses = []
        while self.queue.fix_messages:
            statuses.append(await self.services.fix_pipeline.process(self.queue.fix_messages.pop(0)))
        await self.drain()
        return statuses

    async def upload(
        self,
        owner_id: str = "owner_1",
        data: bytes = b"living-room.jpg bytes",
        kind: MediaKind = MediaKind.IMAGE,
        analyze: bool = True,
    ) -> Resource:
        mime_type = "video/mp4" if kind == MediaKind.VIDEO else "image/jpeg"
        resource = await self.services.resources.ingest(owner_id, data, kind, mime_type, "room")
        if analyze:
            await self.run_analyses()
        else:
            await self.drain()
        return await self.store.get_resource(resource.resource_id)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(MEDIA_STORAGE_DIR=str(tmp_path / "media"), REDIS_ENABLED=False)


@pytest.fixture
def fake_ai() -> FakeAI:
    return FakeAI()


@pytest.fixture
def fake_extractor() -> FakeFrameExtractor:
    return FakeFrameExtractor()


@pytest_asyncio.fixture
async def harness(settings, fake_ai, fake_extractor) -> Harness:
    services = await build_services(
        settings,
        ai=fake_ai,
        extractor=fake_extractor,
        store=InMemoryStore(),
        cache=NullCache(),
        queue=InMemoryJobQueue(),
        storage=LocalMediaStorage(settings.MEDIA_STORAGE_DIR),
        retry=RetryPolicy(
            max_retries=2, backoff=ExponentialBackoff(jitter=0.0), sleep=_no_sleep
        ),
    )
    yield Harness(services, fake_ai, fake_extractor)
    await services.background.drain()


@pytest.fixture
def image_draft() -> AnalysisDraft:
    return make_image_draft()


@pytest.fixture
def video_draft() -> AnalysisDraft:
    return make_video_draft()

