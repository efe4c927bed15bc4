"""Merge queue health per rig: refinery state, MR ages and guidance."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from .config import QUEUE_AGE_BUCKETS, QUEUE_AGE_STALE_LABEL, QUEUE_NUDGE_AGE, QUEUE_STALL_AGE
from .models import Agent, MergeRequest, Snapshot, utcnow


class RefineryState(Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    STALLED = "stalled"


def age_badge(age: timedelta) -> str:
    """Bucket an MR age into fresh / ok / waiting / stale."""
    for upper, label in QUEUE_AGE_BUCKETS:
        if age < upper:
            return label
    return QUEUE_AGE_STALE_LABEL


@dataclass
class QueueMR:
    mr: MergeRequest
    age: timedelta = timedelta(0)

    @property
    def badge(self) -> str:
        return age_badge(self.age)


@dataclass
class QueueHealth:
    rig: str
    state: RefineryState = RefineryState.IDLE
    mrs: list[QueueMR] = field(default_factory=list)
    refinery_agent: Agent | None = None
    # No data source reports merges yet; shown as "never"
    last_merge_time: datetime | None = None

    @property
    def oldest_age(self) -> timedelta:
        return max((q.age for q in self.mrs), default=timedelta(0))

    def time_since_last_merge(self, now: datetime | None = None) -> timedelta | None:
        if self.last_merge_time is None:
            return None
        return (now or utcnow()) - self.last_merge_time

    def guidance(self) -> str:
        if self.state is RefineryState.PROCESSING:
            return "Refinery is actively processing. Wait for completion."
        if self.state is RefineryState.STALLED:
            return "Refinery appears stalled. Consider nudging or restarting."
        if not self.mrs:
            return "Queue is empty. No action needed."
        if self.oldest_age > QUEUE_NUDGE_AGE:
            return "MRs waiting > 30min. Consider nudging refinery."
        return "Queue looks healthy. Work should process soon."

    @property
    def should_nudge(self) -> bool:
        if self.state is RefineryState.STALLED:
            return True
        return self.state is RefineryState.IDLE and self.oldest_age > QUEUE_NUDGE_AGE


def mr_age(mr: MergeRequest, now: datetime) -> timedelta:
    """Age from the CLI's created_at; an MR without one counts as fresh."""
    if mr.created_at is None:
        return timedelta(0)
    return max(now - mr.created_at, timedelta(0))


def rig_queue_health(
    rig: str, refinery: Agent | None, mrs: list[MergeRequest], now: datetime
) -> QueueHealth:
    health = QueueHealth(
        rig=rig,
        refinery_agent=refinery,
        mrs=[QueueMR(mr=mr, age=mr_age(mr, now)) for mr in mrs],
    )
    if refinery is None:
        return health

    if not refinery.running:
        health.state = RefineryState.STALLED
    elif refinery.has_work:
        health.state = RefineryState.PROCESSING
    elif health.oldest_age > QUEUE_STALL_AGE:
        health.state = RefineryState.STALLED
    return health


def build_queue_health(snapshot: Snapshot, now: datetime | None = None) -> dict[str, QueueHealth]:
    """Queue health for every rig in the snapshot's town (empty if town failed)."""
    if snapshot.town is None:
        return {}
    now = now or utcnow()
    return {
        rig.name: rig_queue_health(
            rig.name,
            rig.agent_with_role("refinery"),
            snapshot.merge_queues.get(rig.name, []),
            now,
        )
        for rig in snapshot.town.rigs
    }
