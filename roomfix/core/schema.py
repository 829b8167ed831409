"""Versioned schema adapter for stored analysis documents.

Version 1 documents (written before problem frames existed) keep video
problems under ``categorized_problems`` with a flat ``frame_specific`` list,
one entry per problem carrying its own frame index and timestamp.
Version 2 hoists general problems to ``general_problems`` and groups
frame problems into ``problem_frames``.

``upgrade_analysis_document`` is applied once when a document is read from
the durable store; business logic only ever sees the current version.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

from roomfix.core.errors import ValidationError

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2

_PROBLEM_FIELDS = (
    "problem_id",
    "dimension",
    "title",
    "description",
    "impact",
    "severity",
    "solution",
)


def _v1_to_v2(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: v for k, v in doc.items() if k != "categorized_problems"}
    categorized = doc.get("categorized_problems") or {}
    out["general_problems"] = list(
        doc.get("general_problems") or categorized.get("general") or []
    )

    problem_frames: List[Dict[str, Any]] = list(
        doc.get("problem_frames") or categorized.get("problem_frames") or []
    )
    legacy = categorized.get("frame_specific") or []
    if legacy and not problem_frames:
        by_index: Dict[int, Dict[str, Any]] = {}
        for old in legacy:
            frame_index = int(old.get("frame_index") or 0)
            frame = by_index.get(frame_index)
            if frame is None:
                frame = {
                    "frame_id": f"legacy_pf_{frame_index}",
                    "frame_index": frame_index,
                    "timestamp": float(old.get("timestamp") or 0.0),
                    "storage_key": old.get("frame_storage_key") or None,
                    "problems": [],
                }
                by_index[frame_index] = frame
            frame["problems"].append({k: old[k] for k in _PROBLEM_FIELDS if k in old})
        problem_frames = [by_index[i] for i in sorted(by_index)]
        logger.info(
            "analysis_schema_upgraded",
            extra={"resource_id": doc.get("resource_id"), "stage": "v1_to_v2"},
        )
    out["problem_frames"] = problem_frames
    out["schema_version"] = 2
    return out


_UPGRADES: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: _v1_to_v2,
}


def upgrade_analysis_document(doc: Dict[str, Any]) -> Dict[str, Any]:
    version = int(doc.get("schema_version") or 1)
    if version > CURRENT_SCHEMA_VERSION:
        raise ValidationError(
            f"Unsupported analysis schema version {version}", field="schema_version"
        )
    while version < CURRENT_SCHEMA_VERSION:
        doc = _UPGRADES[version](doc)
        version = int(doc["schema_version"])
    return doc
