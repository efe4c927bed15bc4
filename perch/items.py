"""Selectable items: one small wrapper per listable thing in the sidebar.

Navigation only ever needs ``id``, ``label`` and ``status``; each wrapper keeps
its full record so the details pane can show everything.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from .models import (
    Agent,
    Convoy,
    Issue,
    LifecycleEvent,
    LoadError,
    MailMessage,
    MergeRequest,
    Plugin,
    Rig,
    Worktree,
)

if TYPE_CHECKING:
    from .health import SubsystemHealth


class SelectableItem(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def label(self) -> str: ...

    @property
    def status(self) -> str: ...


@dataclass(frozen=True)
class AgentItem:
    agent: Agent

    @property
    def id(self) -> str:
        return self.agent.address or self.agent.name

    @property
    def label(self) -> str:
        return self.agent.address or self.agent.name

    @property
    def status(self) -> str:
        if not self.agent.running:
            return "stopped"
        return "working" if self.agent.has_work else "idle"


@dataclass(frozen=True)
class RigItem:
    rig: Rig
    mr_count: int = 0

    @property
    def id(self) -> str:
        return self.rig.name

    @property
    def label(self) -> str:
        return self.rig.name

    @property
    def status(self) -> str:
        parts = [f"{self.rig.polecat_count}p"]
        if self.rig.crew_count:
            parts.append(f"{self.rig.crew_count}c")
        if self.mr_count:
            parts.append(f"{self.mr_count} MR")
        return " ".join(parts)


@dataclass(frozen=True)
class MergeRequestItem:
    rig: str
    mr: MergeRequest

    @property
    def id(self) -> str:
        return self.mr.id

    @property
    def label(self) -> str:
        return f"{self.rig}: {self.mr.title or self.mr.id}"

    @property
    def status(self) -> str:
        if self.mr.has_conflicts:
            return "conflict"
        if self.mr.needs_rebase:
            return "rebase"
        return self.mr.status or "queued"


@dataclass(frozen=True)
class ConvoyItem:
    convoy: Convoy

    @property
    def id(self) -> str:
        return self.convoy.id

    @property
    def label(self) -> str:
        return self.convoy.title or self.convoy.id

    @property
    def status(self) -> str:
        return self.convoy.status


@dataclass(frozen=True)
class MailItem:
    message: MailMessage

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def label(self) -> str:
        return f"{self.message.sender}: {self.message.subject}"

    @property
    def status(self) -> str:
        return "read" if self.message.read else "unread"


@dataclass(frozen=True)
class LifecycleItem:
    event: LifecycleEvent

    @property
    def id(self) -> str:
        return f"{self.event.timestamp.isoformat()}|{self.event.event_type}|{self.event.agent}"

    @property
    def label(self) -> str:
        return f"{self.event.timestamp.strftime('%H:%M:%S')} {self.event.message}"

    @property
    def status(self) -> str:
        return self.event.event_type


@dataclass(frozen=True)
class WorktreeItem:
    worktree: Worktree

    @property
    def id(self) -> str:
        return self.worktree.path

    @property
    def label(self) -> str:
        source = self.worktree.source_rig or "?"
        return f"{self.worktree.rig}/{source}-{self.worktree.source_name}"

    @property
    def status(self) -> str:
        return self.worktree.status


@dataclass(frozen=True)
class PluginItem:
    plugin: Plugin

    @property
    def id(self) -> str:
        return self.plugin.path

    @property
    def label(self) -> str:
        return f"[{self.plugin.scope}] {self.plugin.title or self.plugin.name}"

    @property
    def status(self) -> str:
        if self.plugin.has_error:
            return "error"
        return "enabled" if self.plugin.enabled else "disabled"


@dataclass(frozen=True)
class BeadItem:
    issue: Issue

    @property
    def id(self) -> str:
        return self.issue.id

    @property
    def label(self) -> str:
        return f"{self.issue.id} {self.issue.title}"

    @property
    def status(self) -> str:
        return self.issue.status


@dataclass(frozen=True)
class SubsystemItem:
    health: SubsystemHealth

    @property
    def id(self) -> str:
        return self.health.subsystem_id

    @property
    def label(self) -> str:
        return f"{self.health.name}: {self.health.message}"

    @property
    def status(self) -> str:
        return self.health.status.value


@dataclass(frozen=True)
class AlertItem:
    """A failed data source, worded as stale when the town looks shut down."""

    error: LoadError
    stale: bool = False

    @property
    def id(self) -> str:
        return f"{self.error.source}|{self.error.command}"

    @property
    def label(self) -> str:
        name = source_label(self.error.source)
        if self.stale:
            return f"Data stale: {name} {self.error.occurred_at.astimezone().strftime('%H:%M')}"
        return f"{name} failed (press 9 for details)"

    @property
    def status(self) -> str:
        return "stale" if self.stale else "failed"


@dataclass(frozen=True)
class IdentityLine:
    key: str
    value: str

    @property
    def id(self) -> str:
        return self.key

    @property
    def label(self) -> str:
        return f"{self.key}: {self.value}" if self.value else self.key

    @property
    def status(self) -> str:
        return ""


_SOURCE_LABELS = {
    "town_status": "Town status",
    "convoys": "Convoys",
    "closed_convoys": "Convoy history",
    "issues": "Beads",
    "hooked_issues": "Hooked beads",
    "mail": "Mail",
    "lifecycle": "Lifecycle log",
    "merge_queue": "Merge queue",
    "worktrees": "Worktrees",
    "plugins": "Plugins",
}


def source_label(source: str) -> str:
    """Human label for a load-error source tag."""
    for tag, label in _SOURCE_LABELS.items():
        if source == tag or source.startswith(tag + "_"):
            return label
    return source.replace("_", " ").capitalize()
