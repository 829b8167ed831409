"""Frame planning and extraction for video resources.

Planning is pure and deterministic: uniform sampling for whole-video context,
then targeted timestamps for the frames an analysis flagged. Extraction is
delegated to a ``FrameExtractor``; the production one shells out to
``ffprobe``/``ffmpeg``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import tempfile
from pathlib import Path
from typing import Iterable, List, Protocol, Sequence

from roomfix.core.ai import Media
from roomfix.core.models import ProblemFrame

logger = logging.getLogger(__name__)


def plan_uniform_timestamps(duration: float, interval: float, max_frames: int) -> List[float]:
    """Evenly spaced timestamps from 0, strictly before ``duration``.

    A 42s video at a 5s interval yields 0, 5, ..., 40 (nine frames); the
    ``max_frames`` cap only bites on longer videos.
    """
    if interval <= 0:
        raise ValueError("interval must be positive")
    timestamps: List[float] = []
    i = 0
    while len(timestamps) < max_frames:
        t = i * interval
        if t >= duration:
            break
        timestamps.append(float(t))
        i += 1
    return timestamps or [0.0]


def collapse_timestamps(timestamps: Iterable[float], tolerance: float) -> List[float]:
    """Drop any timestamp closer than ``tolerance`` to one already kept."""
    kept: List[float] = []
    for t in timestamps:
        if any(abs(t - k) < tolerance for k in kept):
            continue
        kept.append(float(t))
    return kept


def plan_problem_timestamps(
    problem_frames: Sequence[ProblemFrame], max_frames: int, tolerance: float
) -> List[float]:
    chosen = collapse_timestamps((pf.timestamp for pf in problem_frames), tolerance)
    return chosen[:max_frames]


def nearest_index(timestamps: Sequence[float], target: float, tolerance: float) -> int:
    """Index of the timestamp closest to ``target`` within tolerance, else -1."""
    best, best_delta = -1, math.inf
    for i, t in enumerate(timestamps):
        delta = abs(t - target)
        if delta < best_delta:
            best, best_delta = i, delta
    return best if best_delta <= tolerance else -1


def representative_indices(frame_count: int, positions: Sequence[float]) -> List[int]:
    if frame_count <= 0:
        return []
    indices = {min(int(math.floor(frame_count * p)), frame_count - 1) for p in positions}
    return sorted(indices)


class FrameExtractor(Protocol):
    async def probe_duration(self, media: Media) -> float: ...

    async def extract(self, media: Media, timestamps: Sequence[float]) -> List[bytes]: ...


class FrameExtractionError(RuntimeError):
    pass


async def _run(cmd: List[str]) -> bytes:
    proc = await asyncio.create_subprocess_exec(
        *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise FrameExtractionError(
            f"{cmd[0]} exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}"
        )
    return stdout


class FfmpegFrameExtractor:
    def __init__(self, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe", quality: int = 3):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.quality = quality

    async def _materialize(self, media: Media, workdir: Path) -> Path:
        path = workdir / f"input.{media.mime_type.split('/')[-1] or 'bin'}"
        await asyncio.to_thread(path.write_bytes, media.data)
        return path

    async def probe_duration(self, media: Media) -> float:
        with tempfile.TemporaryDirectory(prefix="roomfix-probe-") as tmp:
            video_path = await self._materialize(media, Path(tmp))
            out = await _run(
                [
                    self.ffprobe,
                    "-v",
                    "error",
                    "-show_entries",
                    "format=duration",
                    "-of",
                    "default=nw=1:nk=1",
                    str(video_path),
                ]
            )
        raw = out.decode().strip()
        try:
            return float(raw)
        except ValueError as e:
            raise FrameExtractionError(f"ffprobe returned no duration: {raw!r}") from e

    async def extract(self, media: Media, timestamps: Sequence[float]) -> List[bytes]:
        frames: List[bytes] = []
        with tempfile.TemporaryDirectory(prefix="roomfix-frames-") as tmp:
            workdir = Path(tmp)
            video_path = await self._materialize(media, workdir)
            for idx, t in enumerate(timestamps):
                out_path = workdir / f"frame_{idx:05d}.jpg"
                await _run(
                    [
                        self.ffmpeg,
                        "-hide_banner",
                        "-loglevel",
                        "error",
                        "-ss",
                        f"{max(0.0, float(t))}",
                        "-i",
                        str(video_path),
                        "-frames:v",
                        "1",
                        "-q:v",
                        str(self.quality),
                        str(out_path),
                    ]
                )
                if not out_path.exists():
                    raise FrameExtractionError(f"ffmpeg produced no frame at {t}s")
                frames.append(await asyncio.to_thread(out_path.read_bytes))
        logger.debug("frames_extracted", extra={"stage": "extract", "amount": len(frames)})
        return frames
