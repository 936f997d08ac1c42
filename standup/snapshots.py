"""
Snapshot & Analytics Engine

Persists one immutable snapshot of the not-yet-completed items of a
collection per civil day, and derives metrics from specific day offsets:

- Average daily consumption over the 7 most recent day-pairs
- Fallback consumption estimators when no snapshot history exists
- Stagnation (identical in-progress status 2 days ago)
- Weekly diff against the snapshot from exactly 7 days ago
- Day-over-day status transitions against yesterday's snapshot

Every metric that needs a prior snapshot reports "insufficient data"
(None / has_data=False / empty list) when that snapshot is absent. It never
substitutes a zero.

All day arithmetic uses civil dates from one FlowClock captured at the start
of a flow invocation.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .kv_store import KVStore
from .models import TrackedItem
from .retry import best_effort

logger = logging.getLogger("standup.snapshots")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
DEFAULT_SNAPSHOT_TTL_SECONDS = 14 * 24 * 3600
CONSUMPTION_WINDOW_PAIRS = 7
STAGNATION_OFFSET_DAYS = 2
WEEKLY_DIFF_OFFSET_DAYS = 7


# -----------------------------------------------------------------------------
# Civil Day
# -----------------------------------------------------------------------------
def civil_date(now: datetime, utc_offset_hours: int, offset_days: int = 0) -> str:
    """YYYY-MM-DD of now shifted into the fixed civil time zone."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(timezone(timedelta(hours=utc_offset_hours)))
    return (local.date() + timedelta(days=offset_days)).isoformat()


def shift_date(day: str, days: int) -> str:
    return (date.fromisoformat(day) + timedelta(days=days)).isoformat()


@dataclass(frozen=True)
class FlowClock:
    """One civil-day definition, captured once per flow invocation."""
    now: datetime
    utc_offset_hours: int

    @classmethod
    def capture(cls, utc_offset_hours: int, now: Optional[datetime] = None) -> "FlowClock":
        return cls(now=now or datetime.now(timezone.utc), utc_offset_hours=utc_offset_hours)

    @property
    def today(self) -> str:
        return civil_date(self.now, self.utc_offset_hours)

    def day(self, offset_days: int) -> str:
        return shift_date(self.today, offset_days)

    @property
    def iso_timestamp(self) -> str:
        return self.now.isoformat()


# -----------------------------------------------------------------------------
# Result Types
# -----------------------------------------------------------------------------
class ConsumptionEstimator(str, Enum):
    """Which estimator produced a consumption figure."""
    SNAPSHOT_HISTORY = "snapshot_history"  # actual pace
    PLANNED_PROGRESS = "planned_progress"  # actual pace, coarse
    REQUIRED_PACE = "required_pace"  # NOT actual pace


@dataclass(frozen=True)
class ConsumptionEstimate:
    value: float
    estimator: str  # ConsumptionEstimator value
    valid_pairs: int = 0

    @property
    def is_actual_pace(self) -> bool:
        return self.estimator != ConsumptionEstimator.REQUIRED_PACE.value


@dataclass(frozen=True)
class StagnantItem:
    id: str
    name: str
    status: str
    days: int = STAGNATION_OFFSET_DAYS


@dataclass(frozen=True)
class WeeklyDiff:
    """
    Week-over-week comparison.

    has_data=False means the D-7 snapshot is missing ("no data"), which is
    different from has_data=True with empty buckets ("no changes").
    """
    has_data: bool
    completed: List[TrackedItem] = field(default_factory=list)
    added: List[TrackedItem] = field(default_factory=list)

    @property
    def completed_size(self) -> float:
        return sum(item.size_or_zero for item in self.completed)

    @property
    def added_size(self) -> float:
        return sum(item.size_or_zero for item in self.added)


@dataclass(frozen=True)
class StatusChange:
    item_id: str
    name: str
    before: Optional[str]
    after: Optional[str]
    size: Optional[float]


@dataclass(frozen=True)
class DayOverDay:
    has_data: bool
    changes: List[StatusChange] = field(default_factory=list)

    @property
    def progressed_size(self) -> float:
        return sum(c.size for c in self.changes if isinstance(c.size, (int, float)))


# -----------------------------------------------------------------------------
# Snapshot Store
# -----------------------------------------------------------------------------
def snapshot_key(collection_id: str, day: str) -> str:
    return f"task-snapshot:{collection_id}:{day}"


class SnapshotStore:
    """Read/write access to per-(collection, day) snapshots."""

    def __init__(self, kv: KVStore, ttl_seconds: int = DEFAULT_SNAPSHOT_TTL_SECONDS):
        self._kv = kv
        self._ttl = ttl_seconds

    async def load(self, collection_id: str, day: str) -> Optional[List[TrackedItem]]:
        raw = await self._kv.get(snapshot_key(collection_id, day))
        if raw is None:
            return None
        return [TrackedItem.from_dict(i) for i in json.loads(raw)]

    async def write(self, collection_id: str, day: str, items: Sequence[TrackedItem]) -> None:
        payload = json.dumps([i.to_dict() for i in items], ensure_ascii=False)
        await self._kv.put(snapshot_key(collection_id, day), payload, self._ttl)

    async def load_many(self, collection_id: str, days: Sequence[str]) -> Dict[str, Optional[List[TrackedItem]]]:
        loaded = await asyncio.gather(*(self.load(collection_id, d) for d in days))
        return dict(zip(days, loaded))


# -----------------------------------------------------------------------------
# Operations
# -----------------------------------------------------------------------------
async def save_daily_snapshot(
    store: SnapshotStore,
    collection_id: str,
    day: str,
    items: Sequence[TrackedItem],
) -> List[TrackedItem]:
    """
    Write today's snapshot of not-yet-completed items.

    Re-running on the same day overwrites that day's key only.
    """
    tracked = [item for item in items if not item.is_completed]
    await store.write(collection_id, day, tracked)
    logger.info(
        f"Snapshot saved | collection={collection_id} | day={day} | "
        f"items={len(tracked)} | excluded_completed={len(items) - len(tracked)}"
    )
    return tracked


def _completed_size_between(previous: List[TrackedItem], current: List[TrackedItem]) -> float:
    """Size of items non-completed in previous that are completed or gone in current."""
    current_by_id = {item.id: item for item in current}
    total = 0.0
    for item in previous:
        if item.is_completed:
            continue
        after = current_by_id.get(item.id)
        if after is None or after.is_completed:
            total += item.size_or_zero
    return total


async def calculate_avg_daily_consumption(
    store: SnapshotStore,
    collection_id: str,
    today: str,
) -> Optional[ConsumptionEstimate]:
    """
    Average completed size per day over the 7 most recent day-pairs.

    Pairs with a missing snapshot on either side are skipped, not counted as
    zero. Returns None when no pair is usable.
    """
    days = [shift_date(today, -offset) for offset in range(CONSUMPTION_WINDOW_PAIRS + 1)]
    snapshots = await store.load_many(collection_id, days)

    total = 0.0
    valid_pairs = 0
    for i in range(CONSUMPTION_WINDOW_PAIRS):
        current = snapshots[days[i]]
        previous = snapshots[days[i + 1]]
        if current is None or previous is None:
            continue
        total += _completed_size_between(previous, current)
        valid_pairs += 1

    if valid_pairs == 0:
        logger.info(f"Consumption: insufficient data | collection={collection_id} | today={today}")
        return None

    value = total / valid_pairs
    logger.info(
        f"Consumption: avg={value:.2f} | collection={collection_id} | valid_pairs={valid_pairs}"
    )
    return ConsumptionEstimate(
        value=value,
        estimator=ConsumptionEstimator.SNAPSHOT_HISTORY.value,
        valid_pairs=valid_pairs,
    )


def estimate_consumption_from_period(
    today: str,
    period_start: str,
    period_end: str,
    current_remaining: Optional[float],
    planned_size: Optional[float] = None,
) -> Optional[ConsumptionEstimate]:
    """
    Fallback when no snapshot history exists.

    With a planned size: (planned - remaining) / elapsed days, an actual pace.
    Without one: remaining / remaining days, a REQUIRED pace.
    """
    if current_remaining is None:
        return None

    start = date.fromisoformat(period_start)
    end = date.fromisoformat(period_end)
    current = date.fromisoformat(today)
    total_days = (end - start).days + 1
    elapsed_days = (current - start).days + 1

    if planned_size is not None:
        if elapsed_days <= 0:
            return None
        progress = planned_size - current_remaining
        return ConsumptionEstimate(
            value=round(progress / elapsed_days, 2),
            estimator=ConsumptionEstimator.PLANNED_PROGRESS.value,
        )

    remaining_days = max(total_days - elapsed_days, 1) if total_days > 0 else 1
    return ConsumptionEstimate(
        value=round(current_remaining / remaining_days, 2),
        estimator=ConsumptionEstimator.REQUIRED_PACE.value,
    )


async def detect_stagnant_items(
    store: SnapshotStore,
    collection_id: str,
    today: str,
    current_items: Sequence[TrackedItem],
) -> List[StagnantItem]:
    """In-progress items whose status string is identical to 2 days ago."""
    past_day = shift_date(today, -STAGNATION_OFFSET_DAYS)
    past = await store.load(collection_id, past_day)
    if past is None:
        return []

    past_by_id = {item.id: item for item in past}
    stagnant: List[StagnantItem] = []
    for item in current_items:
        if not item.is_active:
            continue
        before = past_by_id.get(item.id)
        if before is not None and before.status == item.status:
            stagnant.append(StagnantItem(id=item.id, name=item.name, status=item.status or ""))

    if stagnant:
        logger.info(f"Stagnant items | collection={collection_id} | count={len(stagnant)}")
    return stagnant


async def calculate_weekly_diff(
    store: SnapshotStore,
    collection_id: str,
    today: str,
    current_items: Sequence[TrackedItem],
) -> WeeklyDiff:
    week_ago = await store.load(collection_id, shift_date(today, -WEEKLY_DIFF_OFFSET_DAYS))
    if week_ago is None:
        return WeeklyDiff(has_data=False)

    current_by_id = {item.id: item for item in current_items}
    week_ago_ids = {item.id for item in week_ago}

    completed = []
    for item in week_ago:
        if item.is_completed:
            continue
        now_item = current_by_id.get(item.id)
        if now_item is None or now_item.is_completed:
            completed.append(item)

    # Snapshots hold open items only, so completed items never count as added.
    added = [item for item in current_items if not item.is_completed and item.id not in week_ago_ids]
    return WeeklyDiff(has_data=True, completed=completed, added=added)


async def summarize_day_over_day(
    store: SnapshotStore,
    collection_id: str,
    today: str,
    current_items: Sequence[TrackedItem],
) -> DayOverDay:
    """Status transitions since yesterday's snapshot, with the moved size."""
    yesterday = await store.load(collection_id, shift_date(today, -1))
    if yesterday is None:
        return DayOverDay(has_data=False)

    previous_by_id = {item.id: item for item in yesterday}
    changes = []
    for item in current_items:
        before = previous_by_id.get(item.id)
        if before is None or before.status == item.status:
            continue
        changes.append(StatusChange(
            item_id=item.id,
            name=item.name,
            before=before.status,
            after=item.status,
            size=item.size,
        ))
    return DayOverDay(has_data=True, changes=changes)


# -----------------------------------------------------------------------------
# Combined analytics
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class CollectionAnalytics:
    consumption: Optional[ConsumptionEstimate]
    weekly_diff: WeeklyDiff
    stagnant: List[StagnantItem]
    day_over_day: DayOverDay

    def to_context(self) -> Dict[str, object]:
        """Plain dict for classifier/generator prompts."""
        return {
            "avg_daily_consumption": self.consumption.value if self.consumption else None,
            "consumption_estimator": self.consumption.estimator if self.consumption else None,
            "weekly_diff": {
                "has_data": self.weekly_diff.has_data,
                "completed": [i.name for i in self.weekly_diff.completed],
                "completed_size": self.weekly_diff.completed_size,
                "added": [i.name for i in self.weekly_diff.added],
                "added_size": self.weekly_diff.added_size,
            },
            "stagnant_items": [{"name": s.name, "status": s.status, "days": s.days} for s in self.stagnant],
            "status_changes": [
                {"name": c.name, "before": c.before, "after": c.after} for c in self.day_over_day.changes
            ],
        }


async def collect_analytics(
    store: SnapshotStore,
    collection_id: str,
    today: str,
    current_items: Sequence[TrackedItem],
    period_start: Optional[str] = None,
    period_end: Optional[str] = None,
    planned_size: Optional[float] = None,
    current_remaining: Optional[float] = None,
) -> CollectionAnalytics:
    """
    Run every metric concurrently. Each one degrades to its "insufficient
    data" value on failure instead of aborting the caller.
    """
    consumption, weekly, stagnant, day_over_day = await asyncio.gather(
        best_effort(calculate_avg_daily_consumption(store, collection_id, today), None, "avg daily consumption"),
        best_effort(calculate_weekly_diff(store, collection_id, today, current_items), WeeklyDiff(has_data=False), "weekly diff"),
        best_effort(detect_stagnant_items(store, collection_id, today, current_items), [], "stagnant items"),
        best_effort(summarize_day_over_day(store, collection_id, today, current_items), DayOverDay(has_data=False), "day over day"),
    )

    if consumption is None and period_start and period_end:
        if current_remaining is None:
            current_remaining = sum(i.size_or_zero for i in current_items if not i.is_completed)
        consumption = estimate_consumption_from_period(
            today, period_start, period_end, current_remaining, planned_size
        )

    return CollectionAnalytics(
        consumption=consumption,
        weekly_diff=weekly,
        stagnant=stagnant,
        day_over_day=day_over_day,
    )
