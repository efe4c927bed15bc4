"""Per-domain caches: fold each new snapshot into the last known good view.

Each domain decides on its own whether this cycle's data is trustworthy.
When it is, the items are replaced (an empty list included). When it isn't,
the items from the last good cycle stay and only the error is recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Union

from .items import (
    AgentItem,
    BeadItem,
    ConvoyItem,
    IdentityLine,
    LifecycleItem,
    MailItem,
    MergeRequestItem,
    PluginItem,
    RigItem,
    WorktreeItem,
)
from .models import Identity, LoadError, MergeRequest, Snapshot
from .utils import clock, truncate

logger = logging.getLogger(__name__)


class Domain(Enum):
    IDENTITY = "identity"
    RIGS = "rigs"
    AGENTS = "agents"
    CONVOYS = "convoys"
    CLOSED_CONVOYS = "closed_convoys"
    MERGE_QUEUE = "merge_queue"
    MAIL = "mail"
    LIFECYCLE = "lifecycle"
    WORKTREES = "worktrees"
    PLUGINS = "plugins"
    BEADS = "beads"


@dataclass(frozen=True)
class DomainInfo:
    """How a domain reconciles and how it reads when empty."""

    tags: tuple[str, ...]
    needs_town: bool
    noun: str
    empty_hint: str = "(empty)"
    loading_text: str = ""

    @property
    def loading_banner(self) -> str:
        return self.loading_text or f"Loading {self.noun}..."


DOMAIN_INFO: dict[Domain, DomainInfo] = {
    Domain.IDENTITY: DomainInfo(("town_status",), True, "identity", "(no identity configured)"),
    Domain.RIGS: DomainInfo(("town_status", "rigs"), True, "rigs", "(no rigs) press 'a' to add one"),
    Domain.AGENTS: DomainInfo(("town_status", "agents"), True, "agents"),
    Domain.CONVOYS: DomainInfo(("convoys",), False, "convoys", "(no active convoys)"),
    Domain.CLOSED_CONVOYS: DomainInfo(("closed_convoys",), False, "convoys", "(no landed convoys)"),
    Domain.MERGE_QUEUE: DomainInfo(
        ("merge_queue",), True, "items", "Queue clear - work landing", loading_text="Loading queue..."
    ),
    Domain.MAIL: DomainInfo(("mail",), False, "mail", "(inbox empty)"),
    Domain.LIFECYCLE: DomainInfo(("lifecycle",), False, "events", "(no lifecycle events)"),
    Domain.WORKTREES: DomainInfo(("worktrees",), True, "worktrees", "(no crew worktrees)"),
    Domain.PLUGINS: DomainInfo(("plugins",), True, "plugins", "(no plugins installed)"),
    Domain.BEADS: DomainInfo(("issues",), False, "beads", "(no beads)"),
}

TOWN_STATUS_COMMAND = "gt status --json --fast"


# ---------------------------------------------------------------------------
# Three-state result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NotYetLoaded:
    pass


@dataclass(frozen=True)
class Loaded:
    items: list[Any]


@dataclass(frozen=True)
class Failed:
    error: LoadError
    # Last known good items, shown under the banner
    stale_items: list[Any] = field(default_factory=list)


DomainResult = Union[NotYetLoaded, Loaded, Failed]


@dataclass
class DomainCache:
    """Last known good items for one domain plus its freshness state."""

    domain: Domain
    items: list[Any] = field(default_factory=list)
    loading: bool = True
    last_error: LoadError | None = None
    last_refresh: datetime | None = None

    @property
    def info(self) -> DomainInfo:
        return DOMAIN_INFO[self.domain]

    @property
    def result(self) -> DomainResult:
        if self.loading:
            return NotYetLoaded()
        if self.last_error is not None:
            return Failed(self.last_error, list(self.items))
        return Loaded(list(self.items))

    def apply_success(self, items: list[Any], loaded_at: datetime) -> None:
        self.items = list(items)
        self.last_error = None
        self.loading = False
        self.last_refresh = loaded_at

    def apply_failure(self, error: LoadError) -> None:
        if self.last_error is None:
            logger.info("Keeping %d cached %s after %s", len(self.items), self.domain.value, error)
        self.last_error = error
        self.loading = False


# ---------------------------------------------------------------------------
# Item builders
# ---------------------------------------------------------------------------


def identity_lines(identity: Identity | None) -> list[IdentityLine]:
    if identity is None:
        return []
    lines = [
        IdentityLine(key, value)
        for key, value in (
            ("Name", identity.name),
            ("Email", identity.email),
            ("Username", identity.username),
            ("Source", identity.source),
        )
        if value
    ]
    for commit in identity.last_commits:
        lines.append(IdentityLine(f"commit {commit.hash[:7]}", commit.subject))
    for issue in identity.last_beads:
        lines.append(IdentityLine(f"bead {issue.id}", issue.title))
    return lines


def agent_items(snapshot: Snapshot) -> list[AgentItem]:
    if snapshot.town is None:
        return []
    seen: set[str] = set()
    items = []
    for agent in snapshot.town.all_agents():
        key = agent.address or agent.name
        if key in seen:
            continue
        seen.add(key)
        items.append(AgentItem(agent))
    return items


def merge_request_items(queues: dict[str, list[MergeRequest]]) -> list[MergeRequestItem]:
    return [MergeRequestItem(rig, mr) for rig in sorted(queues) for mr in queues[rig]]


_SIMPLE_BUILDERS: dict[Domain, Callable[[Snapshot], list[Any]]] = {
    Domain.IDENTITY: lambda s: identity_lines(s.identity),
    Domain.AGENTS: agent_items,
    Domain.CONVOYS: lambda s: [ConvoyItem(c) for c in s.convoys],
    Domain.CLOSED_CONVOYS: lambda s: [ConvoyItem(c) for c in s.closed_convoys],
    Domain.MAIL: lambda s: [MailItem(m) for m in s.mail],
    Domain.LIFECYCLE: lambda s: [LifecycleItem(e) for e in s.lifecycle],
    Domain.WORKTREES: lambda s: [WorktreeItem(w) for w in s.worktrees],
    Domain.PLUGINS: lambda s: [PluginItem(p) for p in s.plugins],
    Domain.BEADS: lambda s: [BeadItem(i) for i in s.issues],
}


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class SnapshotCache:
    """All domain caches, reconciled together from one snapshot at a time."""

    def __init__(self) -> None:
        self.domains: dict[Domain, DomainCache] = {d: DomainCache(d) for d in Domain}
        # Unread count from gt status; survives mail and town failures
        self.mail_unread_count: int | None = None
        self.snapshot: Snapshot | None = None
        self._queues: dict[str, list[MergeRequest]] = {}

    def __getitem__(self, domain: Domain) -> DomainCache:
        return self.domains[domain]

    @property
    def merge_queues(self) -> dict[str, list[MergeRequest]]:
        """Per-rig MRs as last reconciled, including rigs preserved after a failure."""
        return self._queues

    def reconcile(self, snapshot: Snapshot) -> None:
        self.snapshot = snapshot
        if snapshot.town is not None:
            self.mail_unread_count = snapshot.town.overseer.unread_mail

        for domain, build in _SIMPLE_BUILDERS.items():
            cache = self.domains[domain]
            error = self._domain_error(snapshot, cache.info)
            if error is None:
                cache.apply_success(build(snapshot), snapshot.loaded_at)
            else:
                cache.apply_failure(error)

        self._reconcile_merge_queue(snapshot)
        self._reconcile_rigs(snapshot)

    def _domain_error(self, snapshot: Snapshot, info: DomainInfo) -> LoadError | None:
        if info.needs_town and snapshot.town is None:
            return town_unavailable(snapshot)
        return snapshot.find_error(*info.tags)

    def _reconcile_merge_queue(self, snapshot: Snapshot) -> None:
        cache = self.domains[Domain.MERGE_QUEUE]
        if snapshot.town is None:
            cache.apply_failure(town_unavailable(snapshot))
            return

        queues: dict[str, list[MergeRequest]] = {}
        for rig in snapshot.rig_names():
            if rig in snapshot.merge_queues:
                queues[rig] = snapshot.merge_queues[rig]
            elif snapshot.find_error(f"merge_queue_{rig}") is not None:
                # Failed this cycle: keep whatever this rig had before
                queues[rig] = self._queues.get(rig, [])
            else:
                queues[rig] = []
        self._queues = queues

        error = snapshot.find_error("merge_queue")
        if error is None:
            cache.apply_success(merge_request_items(queues), snapshot.loaded_at)
        else:
            cache.items = merge_request_items(queues)
            cache.apply_failure(error)

    def _reconcile_rigs(self, snapshot: Snapshot) -> None:
        cache = self.domains[Domain.RIGS]
        error = self._domain_error(snapshot, cache.info)
        if error is not None:
            cache.apply_failure(error)
            return
        items = [RigItem(rig, len(self._queues.get(rig.name, []))) for rig in snapshot.town.rigs]
        cache.apply_success(items, snapshot.loaded_at)


def town_unavailable(snapshot: Snapshot) -> LoadError:
    """The town status error, or a stand-in when none was recorded."""
    error = snapshot.find_error("town_status")
    if error is not None:
        return error
    return LoadError(
        source="town_status",
        command=TOWN_STATUS_COMMAND,
        error="town status unavailable",
        occurred_at=snapshot.loaded_at,
    )


# ---------------------------------------------------------------------------
# Render query
# ---------------------------------------------------------------------------


def render_domain(
    cache: DomainCache,
    *,
    services_stopped: bool,
    is_active: bool,
    width: int,
    max_lines: int,
    items: list[Any] | None = None,
    selection: int = 0,
    unread_count: int | None = None,
) -> list[str]:
    """Plain text lines for one sidebar section.

    Args:
        cache: The domain to draw.
        services_stopped: Whether the town looks deliberately stopped; turns
            error banners into neutral stale markers.
        is_active: Whether this section holds the cursor.
        width: Available columns.
        max_lines: Line budget, banners included.
        items: Filtered view of ``cache.items`` (defaults to all of them).
        selection: Index of the selected item within ``items``.
        unread_count: Mail only: unread count from town status.

    Returns:
        Lines in priority order: loading banner, error or stale banner,
        items, empty hint.
    """
    info = cache.info
    if cache.loading:
        return [info.loading_banner]

    items = cache.items if items is None else items
    lines: list[str] = []

    if cache.last_error is not None:
        last = f" (last: {clock(cache.last_refresh)})" if cache.last_refresh else ""
        if services_stopped:
            lines.append(f"◌ Services stopped / stale{last}")
        else:
            lines.append(f"! Load error{last}")
            lines.append(truncate("  " + cache.last_error.error, width))
        if cache.domain is Domain.MAIL and unread_count is not None:
            lines.append(f"{unread_count} unread (from status)")

    if not items:
        if cache.last_error is not None:
            lines.append(f"(no cached {info.noun})")
        elif services_stopped and cache.domain in (Domain.AGENTS, Domain.MERGE_QUEUE):
            lines.append("◌ Services stopped")
            if is_active:
                lines.append("Select rig, press 'b' to boot")
        else:
            lines.append(info.empty_hint)
        return lines[:max_lines] if max_lines > 0 else lines

    lines += render_items(items, selection, is_active, width, max(1, max_lines - len(lines)))
    return lines


def render_items(items: list[Any], selection: int, is_active: bool, width: int, max_lines: int) -> list[str]:
    """Item labels with the cursor marked, windowed to keep the cursor visible."""
    budget = max(1, max_lines)
    visible = budget if len(items) <= budget else max(1, budget - 1)
    start = 0
    if is_active and selection >= visible:
        start = selection - visible + 1
    shown = items[start : start + visible]

    lines = []
    for offset, item in enumerate(shown):
        prefix = "> " if is_active and start + offset == selection else "  "
        lines.append(prefix + truncate(item.label, max(1, width - 2)))

    remaining = len(items) - (start + len(shown))
    if remaining > 0:
        lines.append(f"... and {remaining} more")
    return lines
