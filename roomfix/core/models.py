"""Domain records persisted by the durable store.

Resources, analyses, fix jobs, fix results and metering accounts are the
logical collections; the interface shapes at the bottom are what the core
hands back to its (external) request surface and queue.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

DIMENSIONS = ("lighting", "spatial", "color", "clutter", "biophilic", "fengShui")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_POINTS: Dict[Severity, int] = {
    Severity.HIGH: 15,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
}


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class AnalysisStatus(str, Enum):
    """Resource analysis lifecycle; stages run strictly in this order."""

    PENDING = "pending"
    QUEUED = "queued"
    EXTRACTING = "extracting"
    MODERATING = "moderating"
    ANALYZING = "analyzing"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_finished(self) -> bool:
        return self in {AnalysisStatus.COMPLETED, AnalysisStatus.FAILED}


class FixScope(str, Enum):
    ALL = "all"
    SINGLE = "single"
    MULTIPLE = "multiple"


class FixStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_finished(self) -> bool:
        return self in {FixStatus.COMPLETED, FixStatus.FAILED}


class TransactionType(str, Enum):
    IMAGE_ANALYSIS = "image_analysis"
    VIDEO_ANALYSIS = "video_analysis"
    IMAGE_FIX = "image_fix"
    VIDEO_FIX = "video_fix"
    REFUND = "refund"


# --- Resource & analysis -----------------------------------------------------


class Resource(BaseModel):
    resource_id: str
    owner_id: str
    kind: MediaKind
    mime_type: str
    original_name: str = ""
    content_hash: str
    storage_key: str
    size_bytes: int = 0
    analysis_status: AnalysisStatus = AnalysisStatus.PENDING
    source_resource_id: Optional[str] = Field(
        default=None, description="Set when the analysis was copied from a duplicate upload"
    )
    fix_count: int = 0
    overall_score: Optional[int] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    analyzed_at: Optional[datetime] = None

    @property
    def is_dedup_copy(self) -> bool:
        return bool(self.source_resource_id)


class Solution(BaseModel):
    solution_id: str = ""
    problem_id: str = ""
    title: str
    description: str = ""
    steps: List[str] = Field(default_factory=list)
    cost_estimate: str = "Varies"
    difficulty: str = "easy"
    time_estimate: str = ""
    priority: int = 3

    @classmethod
    def default_for(cls, problem: "Problem") -> "Solution":
        return cls(
            solution_id=f"sol_{problem.problem_id}",
            problem_id=problem.problem_id,
            title=f"Fix: {problem.title}",
            description=problem.description or problem.title,
            steps=["Review the area", "Apply the recommended changes"],
        )


class Problem(BaseModel):
    problem_id: str
    title: str
    description: str = ""
    impact: str = ""
    severity: Severity = Severity.MEDIUM
    dimension: Optional[str] = None
    solution: Optional[Solution] = None


class DimensionAnalysis(BaseModel):
    score: int = Field(ge=0, le=100)
    status: str = ""
    problems: List[Problem] = Field(default_factory=list)
    solutions: List[Solution] = Field(default_factory=list)


class OverallScore(BaseModel):
    score: int = Field(ge=0, le=100)
    grade: str = ""
    summary: str = ""


class ProblemFrame(BaseModel):
    frame_id: str = ""
    frame_index: int = 0
    timestamp: float = 0.0
    storage_key: Optional[str] = None
    problems: List[Problem] = Field(default_factory=list)


class FrameCapture(BaseModel):
    frame_index: int
    timestamp: float
    storage_key: str
    score: Optional[int] = None
    problem_ids: List[str] = Field(default_factory=list)


class CostBucket(BaseModel):
    count: int = 0
    min_cost: int = 0
    max_cost: int = 0


class CostSummary(BaseModel):
    min_total: int = 0
    max_total: int = 0
    currency: str = "USD"
    by_difficulty: Dict[str, CostBucket] = Field(default_factory=dict)
    by_dimension: Dict[str, CostBucket] = Field(default_factory=dict)


@dataclass
class ProblemRef:
    """A fixable problem resolved against its dimension, solution and frame."""

    dimension: str
    problem: Problem
    solution: Solution
    frame_index: Optional[int] = None
    timestamp: Optional[float] = None

    @property
    def problem_id(self) -> str:
        return self.problem.problem_id


class AnalysisDraft(BaseModel):
    """Structured output of the AI analysis call, before it is bound to a resource."""

    overall: OverallScore
    dimensions: Dict[str, DimensionAnalysis] = Field(default_factory=dict)
    general_problems: List[Problem] = Field(default_factory=list)
    problem_frames: List[ProblemFrame] = Field(default_factory=list)


class Analysis(AnalysisDraft):
    schema_version: int = 2
    resource_id: str
    owner_id: str
    kind: MediaKind
    frames: List[FrameCapture] = Field(default_factory=list)
    cost_summary: Optional[CostSummary] = None
    analyzed_at: datetime = Field(default_factory=utcnow)
    copied_from: Optional[str] = None
    copied_at: Optional[datetime] = None

    def problem_refs(self) -> List[ProblemRef]:
        refs: List[ProblemRef] = []
        seen: set[str] = set()

        def _add(dimension: Optional[str], problem: Problem, solutions: List[Solution], frame=None):
            if problem.problem_id in seen:
                return
            seen.add(problem.problem_id)
            solution = problem.solution or next(
                (s for s in solutions if s.problem_id == problem.problem_id), None
            )
            refs.append(
                ProblemRef(
                    dimension=dimension or problem.dimension or "general",
                    problem=problem,
                    solution=solution or Solution.default_for(problem),
                    frame_index=frame.frame_index if frame is not None else None,
                    timestamp=frame.timestamp if frame is not None else None,
                )
            )

        if self.kind == MediaKind.IMAGE:
            for name, dim in self.dimensions.items():
                for problem in dim.problems:
                    _add(name, problem, dim.solutions)
        else:
            for problem in self.general_problems:
                _add(problem.dimension, problem, [])
            for frame in self.problem_frames:
                for problem in frame.problems:
                    _add(problem.dimension, problem, [], frame)
        return refs

    def problem_ids(self) -> List[str]:
        return [ref.problem_id for ref in self.problem_refs()]


# --- Fix jobs ----------------------------------------------------------------


class FixJob(BaseModel):
    fix_id: str
    resource_id: str
    owner_id: str
    kind: MediaKind
    scope: FixScope
    problem_ids: List[str]
    signature: str
    version: int = 1
    status: FixStatus = FixStatus.PENDING
    source_fix_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def is_finished(self) -> bool:
        return self.status.is_finished()


class FixOutput(BaseModel):
    original_key: str
    fixed_key: Optional[str] = None
    frame_index: Optional[int] = None
    timestamp: Optional[float] = None
    problem_ids: List[str] = Field(default_factory=list)
    description: str = ""
    plan: Optional[str] = None
    degraded: bool = Field(default=False, description="Textual plan instead of regenerated media")


class FixResult(BaseModel):
    fix_id: str
    resource_id: str
    owner_id: str
    fix_name: str
    outputs: List[FixOutput] = Field(default_factory=list)
    problems_fixed: List[str] = Field(default_factory=list)
    changes_applied: List[str] = Field(default_factory=list)
    summary: str = ""
    original_score: int
    fixed_score: int
    score_delta: int
    original_dimension_scores: Dict[str, int] = Field(default_factory=dict)
    fixed_dimension_scores: Dict[str, int] = Field(default_factory=dict)
    degraded: bool = False
    generated_at: datetime = Field(default_factory=utcnow)
    copied_from_fix_id: Optional[str] = None


# --- Metering ----------------------------------------------------------------


class MeteringAccount(BaseModel):
    owner_id: str
    consumed: int = 0
    limit: int
    violation_count: int = 0
    blocked: bool = False
    blocked_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.consumed)


class LedgerEntry(BaseModel):
    entry_id: str = Field(default_factory=lambda: new_id("txn"))
    owner_id: str
    transaction_type: TransactionType
    amount: int
    resource_ref: str
    balance_after: int
    created_at: datetime = Field(default_factory=utcnow)


class ViolationRecord(BaseModel):
    owner_id: str
    category: str
    reason: str = ""
    resource_ref: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)


# --- Interface shapes --------------------------------------------------------


class QueueMessage(BaseModel):
    job_id: str
    resource_id: str
    owner_id: str


class FixCreated(BaseModel):
    fix_id: str
    status: FixStatus = FixStatus.PENDING
    is_cached: bool = False

    @classmethod
    def from_job(cls, job: FixJob) -> "FixCreated":
        return cls(fix_id=job.fix_id, status=job.status, is_cached=job.source_fix_id is not None)


class FixStatusView(BaseModel):
    fix_id: str
    status: FixStatus
    error: Optional[str] = None
    result: Optional[FixResult] = None

    def to_response(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.status == FixStatus.FAILED:
            data["error"] = self.error or "Fix failed"
        elif self.status == FixStatus.COMPLETED and self.result is not None:
            data["result"] = self.result.model_dump(mode="json")
        return data
