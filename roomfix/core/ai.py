"""AI collaborator boundary.

The core never talks to a model directly. It depends on the ``AIClient``
protocol; ``HttpAIClient`` is the production adapter that calls the separate
inference service over HTTP (default http://localhost:8700) and maps its
rate-limit/unavailable responses onto ``TransientInfraError``.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, Field

from roomfix.core.errors import ContentPolicyViolation, TransientInfraError
from roomfix.core.models import AnalysisDraft, MediaKind, ProblemRef
from roomfix.core.resilience import RetryPolicy

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {429, 502, 503, 504}


@dataclass(frozen=True)
class Media:
    data: bytes
    mime_type: str
    name: str = "media"


class GeneratedFix(BaseModel):
    data: bytes
    mime_type: str = "image/jpeg"
    changes_applied: List[str] = Field(default_factory=list)
    summary: str = ""
    fix_name: str = ""


class ModerationResult(BaseModel):
    safe: bool
    category: str = "safe"
    reason: str = ""


class AIClient(Protocol):
    async def analyze(self, media: Media, kind: MediaKind) -> AnalysisDraft: ...

    async def generate_fix(self, media: Media, problems: Sequence[ProblemRef]) -> GeneratedFix: ...

    async def generate_plan(self, media: Media, problems: Sequence[ProblemRef]) -> str: ...

    async def moderate(self, media: Media) -> ModerationResult: ...


def problems_payload(problems: Sequence[ProblemRef]) -> List[Dict[str, Any]]:
    return [
        {
            "problem_id": ref.problem_id,
            "dimension": ref.dimension,
            "title": ref.problem.title,
            "description": ref.problem.description,
            "severity": ref.problem.severity.value,
            "solution": {
                "title": ref.solution.title,
                "description": ref.solution.description,
                "steps": ref.solution.steps,
            },
        }
        for ref in problems
    ]


@dataclass(frozen=True)
class AIClientConfig:
    base_url: str = "http://localhost:8700"
    timeout_seconds: float = 120.0
    api_key: str = ""

    @classmethod
    def from_env(cls) -> "AIClientConfig":
        return cls(
            base_url=os.getenv("AI_SERVICE_URL", cls.base_url).rstrip("/"),
            timeout_seconds=float(os.getenv("AI_TIMEOUT_SECONDS", str(cls.timeout_seconds))),
            api_key=os.getenv("AI_SERVICE_API_KEY", ""),
        )


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("retry-after", "").strip()
    if raw:
        try:
            return float(raw)
        except ValueError:
            return None
    # Some providers only put the hint in the body: "... retry in 12.5s"
    match = re.search(r"retry in (\d+(?:\.\d+)?)s", resp.text or "", re.IGNORECASE)
    return float(match.group(1)) if match else None


class HttpAIClient:
    def __init__(self, config: Optional[AIClientConfig] = None) -> None:
        self.config = config or AIClientConfig.from_env()

    def _headers(self) -> Dict[str, str]:
        if not self.config.api_key:
            return {}
        return {"Authorization": f"Bearer {self.config.api_key}"}

    async def _post(self, path: str, media: Media, data: Dict[str, str]) -> Dict[str, Any]:
        files = {"file": (media.name, media.data, media.mime_type)}
        try:
            async with httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout_seconds),
                headers=self._headers(),
            ) as client:
                resp = await client.post(path, files=files, data=data)
        except httpx.TransportError as e:
            raise TransientInfraError(f"AI service unreachable: {e}") from e
        if resp.status_code in _TRANSIENT_STATUS:
            raise TransientInfraError(
                f"AI service returned {resp.status_code} for {path}",
                retry_after=_retry_after(resp),
            )
        resp.raise_for_status()
        return resp.json()

    async def analyze(self, media: Media, kind: MediaKind) -> AnalysisDraft:
        payload = await self._post("/v1/analyze", media, {"kind": kind.value})
        return AnalysisDraft.model_validate(payload)

    async def generate_fix(self, media: Media, problems: Sequence[ProblemRef]) -> GeneratedFix:
        payload = await self._post(
            "/v1/fix", media, {"problems": json.dumps(problems_payload(problems))}
        )
        return GeneratedFix(
            data=base64.b64decode(payload["media_b64"]),
            mime_type=payload.get("mime_type") or "image/jpeg",
            changes_applied=list(payload.get("changes_applied") or []),
            summary=payload.get("summary") or "",
            fix_name=payload.get("fix_name") or "",
        )

    async def generate_plan(self, media: Media, problems: Sequence[ProblemRef]) -> str:
        payload = await self._post(
            "/v1/plan", media, {"problems": json.dumps(problems_payload(problems))}
        )
        return str(payload.get("plan") or "")

    async def moderate(self, media: Media) -> ModerationResult:
        payload = await self._post("/v1/moderate", media, {})
        return ModerationResult.model_validate(payload)


async def ensure_safe(ai: AIClient, media: Media, retry: RetryPolicy) -> None:
    """Raise ``ContentPolicyViolation`` unless moderation clears the media.

    A moderation call that fails for a non-transient reason rejects the media
    with category ``"error"``, which is not counted as a strike.
    """
    try:
        verdict = await retry.execute(ai.moderate, media, operation="moderate")
    except TransientInfraError:
        raise
    except Exception as e:
        raise ContentPolicyViolation("error", f"moderation unavailable: {e}") from e
    if not verdict.safe:
        raise ContentPolicyViolation(verdict.category or "unsafe", verdict.reason)


def normalize_single_line(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def synthesize_fix_description(problems: Sequence[ProblemRef]) -> Dict[str, str]:
    """Local fix name/summary for the degraded path (no AI call)."""
    titles = [normalize_single_line(ref.solution.title) for ref in problems if ref.solution.title]
    if not titles:
        return {"fix_name": "Design plan", "summary": "Suggested changes for the selected problems."}
    if len(titles) == 1:
        name = titles[0]
        summary = f"Suggested change: {titles[0]}."
    else:
        name = f"{titles[0]} + {len(titles) - 1} more"
        listed = ", ".join(titles[:3])
        extra = len(titles) - 3
        summary = f"Suggested changes: {listed}" + (f" and {extra} more." if extra > 0 else ".")
    return {"fix_name": name[:60], "summary": summary}
