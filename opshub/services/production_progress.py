"""Production stage bookkeeping for order items.

Every order item moves through :data:`PRODUCTION_STAGES`; each stage carries
an integer progress between 0 and 100 stored as a
:class:`~opshub.models.ProductionItem` row. The helpers here turn those rows
into the item and order summaries shown on the customer portal and the
production dashboards.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence

from opshub.models import Order, OrderItem, ProductionItem


PRODUCTION_STAGES: tuple[str, ...] = (
    "Design",
    "Cutting",
    "Assembly",
    "Finishing",
    "QC",
    "Packaging",
)
DEFAULT_STAGE = PRODUCTION_STAGES[0]
FINAL_STAGE = PRODUCTION_STAGES[-1]

StageMap = Mapping[str, Mapping[str, Any]]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _iso(value):
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def empty_stages() -> dict[str, dict[str, Any]]:
    return {
        stage: {"progress": 0, "started_at": None, "completed_at": None, "notes": None}
        for stage in PRODUCTION_STAGES
    }


def stage_map(rows: Iterable[ProductionItem]) -> dict[str, dict[str, Any]]:
    """Group production rows by stage, ignoring unknown stage names."""

    stages = empty_stages()
    for row in rows:
        if row.stage not in stages:
            continue
        stages[row.stage] = {
            "progress": row.progress or 0,
            "started_at": _iso(row.started_at),
            "completed_at": _iso(row.completed_at),
            "notes": row.notes,
        }
    return stages


def _progress(stages: StageMap, stage: str) -> int:
    return int((stages.get(stage) or {}).get("progress") or 0)


def summarize_stages(stages: StageMap) -> tuple[str, int]:
    """Return ``(current_stage, overall_progress)`` for one item.

    Stages are walked in order: completed stages count fully, untouched
    stages are skipped, and the first partially complete stage becomes the
    current stage and ends the walk.
    """

    total = len(PRODUCTION_STAGES)
    current = DEFAULT_STAGE
    overall = 0.0
    completed = 0

    for stage in PRODUCTION_STAGES:
        progress = _progress(stages, stage)
        overall += progress / total
        if progress == 100:
            completed += 1
        elif progress > 0:
            current = stage
            break

    if completed == total:
        current = FINAL_STAGE

    return current, _round_half_up(overall)


def summarize_item(order_item: OrderItem) -> dict[str, Any]:
    stages = stage_map(order_item.production_items)
    current_stage, overall = summarize_stages(stages)
    return {
        "id": order_item.id,
        "item_name": order_item.item_name,
        "quantity": order_item.quantity,
        "currentStage": current_stage,
        "stageProgress": _progress(stages, current_stage),
        "overallProgress": overall,
        "stages": stages,
    }


def calculate_overall_progress(items: Sequence[Mapping[str, Any]]) -> int:
    """Quantity weighted mean of the items' overall progress."""

    total_quantity = sum(item["quantity"] for item in items)
    if not items or total_quantity <= 0:
        return 0
    weighted = sum(item["overallProgress"] * item["quantity"] for item in items)
    return _round_half_up(weighted / total_quantity)


def dominant_stage(items: Sequence[Mapping[str, Any]]) -> str:
    """Return the current stage holding the largest quantity.

    Ties go to the stage that appears later among the items.
    """

    counts: dict[str, int] = {}
    for item in items:
        counts[item["currentStage"]] = counts.get(item["currentStage"], 0) + item["quantity"]

    best: str | None = None
    for stage, count in counts.items():
        if best is None or not counts[best] > count:
            best = stage
    return best or DEFAULT_STAGE


def estimate_completion(overall_progress: int, *, now: datetime | None = None) -> datetime:
    now = now or datetime.utcnow()
    days = max(1, _round_half_up((100 - overall_progress) / 10))
    return now + timedelta(days=days)


def summarize_order(order: Order, *, now: datetime | None = None) -> dict[str, Any]:
    items = [summarize_item(order_item) for order_item in order.items]
    overall = calculate_overall_progress(items)
    current_stage = dominant_stage(items) if overall > 0 else DEFAULT_STAGE
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "items": items,
        "overallProgress": overall,
        "currentStage": current_stage,
        "estimatedCompletion": estimate_completion(overall, now=now).isoformat() + "Z",
    }


def get_stage_status(stages: StageMap, stage: str) -> str:
    data = stages.get(stage)
    if not data or not data.get("progress"):
        return "pending"
    if data.get("progress") == 100 and data.get("completed_at"):
        return "completed"
    return "in-progress"


def get_stage_progress(items: Sequence[Mapping[str, Any]], stage: str) -> int:
    """Quantity weighted progress of one stage across items."""

    total_quantity = sum(item["quantity"] for item in items)
    if not items or total_quantity <= 0:
        return 0
    weighted = sum(_progress(item["stages"], stage) * item["quantity"] for item in items)
    return _round_half_up(weighted / total_quantity)


def calculate_item_progress(stages: StageMap) -> int:
    total = sum(_progress(stages, stage) for stage in PRODUCTION_STAGES)
    return _round_half_up(total / len(PRODUCTION_STAGES))


def is_stage_completed(stages: StageMap, stage: str) -> bool:
    data = stages.get(stage)
    return bool(data and data.get("progress") == 100 and data.get("completed_at"))


def find_current_stage(stages: StageMap) -> str:
    """Return the first stage that is not completed."""

    for stage in PRODUCTION_STAGES:
        if not is_stage_completed(stages, stage):
            return stage
    return FINAL_STAGE


def get_next_stage(stage: str) -> str | None:
    if stage not in PRODUCTION_STAGES:
        return None
    index = PRODUCTION_STAGES.index(stage)
    if index == len(PRODUCTION_STAGES) - 1:
        return None
    return PRODUCTION_STAGES[index + 1]


def get_previous_stage(stage: str) -> str | None:
    if stage not in PRODUCTION_STAGES:
        return None
    index = PRODUCTION_STAGES.index(stage)
    if index == 0:
        return None
    return PRODUCTION_STAGES[index - 1]


def get_completed_stages_count(stages: StageMap) -> int:
    return sum(1 for stage in PRODUCTION_STAGES if is_stage_completed(stages, stage))


def format_production_time(value: datetime, *, now: datetime | None = None) -> str:
    """Describe ``value`` relative to ``now`` in whole days."""

    now = now or datetime.utcnow()
    diff_days = (now - value).days

    if diff_days == 0:
        return "Today"
    if diff_days == 1:
        return "1 day ago"
    if 1 < diff_days < 7:
        return f"{diff_days} days ago"
    if diff_days < 0:
        future_days = abs(diff_days)
        if future_days == 1:
            return "Tomorrow"
        if future_days < 7:
            return f"In {future_days} days"
    return f"{value.strftime('%b')} {value.day}, {value.year}"


def record_stage_progress(
    order_item: OrderItem,
    stage: str,
    progress: int,
    *,
    notes: str | None = None,
    now: datetime | None = None,
) -> ProductionItem:
    """Upsert the progress of ``order_item`` on ``stage``.

    The caller owns the session commit.
    """

    now = now or datetime.utcnow()
    row = next((item for item in order_item.production_items if item.stage == stage), None)
    if row is None:
        row = ProductionItem(order_item=order_item, stage=stage, progress=0)

    row.progress = progress
    if notes is not None:
        row.notes = notes
    if progress > 0 and row.started_at is None:
        row.started_at = now
    if progress == 100:
        if row.completed_at is None:
            row.completed_at = now
    else:
        row.completed_at = None
    return row
