"""Task output helpers.

The output mapping is written by two independent steps (status sync and asset
relocation), so every write goes through merge_output: keys are only ever
added or overwritten with a non-empty value, never removed.
"""

from typing import Any, Mapping

from forge3d.models.model_task import RELOCATED_OUTPUT_KEY, TaskStatus

# Provider artifacts copied into owned storage, with their default file extension
RELOCATED_ARTIFACTS: dict[str, str] = {
    "model": "glb",
    "pbr_model": "glb",
    "rendered_image": "webp",
}


def merge_output(existing: Mapping[str, Any] | None, fragment: Mapping[str, Any] | None) -> dict:
    """Merge an output fragment into the existing output by key.

    Nested mappings (qiniu_output) are merged recursively. None and empty
    values in the fragment never overwrite what is already known.

    Returns:
        A new dict; neither argument is modified.
    """
    merged: dict[str, Any] = {
        key: dict(value) if isinstance(value, Mapping) else value
        for key, value in (existing or {}).items()
    }
    for key, value in (fragment or {}).items():
        if value is None or value == "" or value == {}:
            continue
        if isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = merge_output(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = value
    return merged


def relocated_fragment(urls: Mapping[str, str]) -> dict:
    """Wrap durable URLs as an output fragment."""
    return {RELOCATED_OUTPUT_KEY: dict(urls)} if urls else {}


def resolve_active_status(current: TaskStatus, observed: TaskStatus) -> TaskStatus:
    """Keep a running task running if the provider briefly reports queued again."""
    if current == TaskStatus.RUNNING and observed == TaskStatus.QUEUED:
        return TaskStatus.RUNNING
    return observed


def resolve_progress(current: int, observed: int) -> int:
    """Progress never decreases while the task is active."""
    return max(current or 0, observed or 0)


def pick_model_url(relocated: Mapping[str, str]) -> str:
    """Durable model URL for listings, PBR model preferred."""
    return relocated.get("pbr_model") or relocated.get("model") or ""
