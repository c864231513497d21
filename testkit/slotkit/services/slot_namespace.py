from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from slotkit.core.config import resolve_state_dir, settings


@dataclass(frozen=True)
class SlotNamespace:
    slot: int
    port: int
    schema_prefix: str
    test_run_id: str
    pid_file_path: Path


def _require_slot(slot: int) -> int:
    value = int(slot)
    if value < 1:
        raise ValueError(f"invalid_slot: {slot}")
    return value


def slot_port(slot: int, *, base_port: int | None = None, stride: int | None = None) -> int:
    slot = _require_slot(slot)
    base = settings.worker_slot_base_port if base_port is None else int(base_port)
    step = settings.worker_slot_port_stride if stride is None else int(stride)
    return base + (slot - 1) * step


def slot_schema_prefix(slot: int, *, app_tag: str | None = None) -> str:
    slot = _require_slot(slot)
    tag = settings.worker_slot_app_tag if app_tag is None else app_tag
    return f"{tag}_slot_{slot}"


def slot_test_run_id(slot: int, *, run_id: str | None = None) -> str:
    slot = _require_slot(slot)
    tag = settings.worker_slot_run_id if run_id is None else run_id
    return f"{tag}_slot_{slot}"


def slot_pid_file_path(slot: int, *, state_dir: Path | None = None) -> Path:
    slot = _require_slot(slot)
    root = resolve_state_dir() if state_dir is None else Path(state_dir)
    return root / f"api-slot-{slot}.pid"


def resolve_namespace(
    slot: int,
    *,
    base_port: int | None = None,
    stride: int | None = None,
    app_tag: str | None = None,
    run_id: str | None = None,
    state_dir: Path | None = None,
) -> SlotNamespace:
    return SlotNamespace(
        slot=_require_slot(slot),
        port=slot_port(slot, base_port=base_port, stride=stride),
        schema_prefix=slot_schema_prefix(slot, app_tag=app_tag),
        test_run_id=slot_test_run_id(slot, run_id=run_id),
        pid_file_path=slot_pid_file_path(slot, state_dir=state_dir),
    )
