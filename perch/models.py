"""Snapshot data model: what one fetch cycle knows about the town.

Every record is built from the JSON the gt/bd CLIs print (``from_dict``) or
from files under the town root. Missing keys fall back to empty values so a
CLI that grows or drops a field never breaks a refresh.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_time(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp into an aware datetime (None on failure)."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    # Go's zero time serialises as 0001-01-01
    if dt.year <= 1:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _list(value: Any) -> list:
    return list(value) if isinstance(value, list) else []


# ---------------------------------------------------------------------------
# Town status (gt status --json --fast)
# ---------------------------------------------------------------------------


@dataclass
class Overseer:
    name: str = ""
    email: str = ""
    username: str = ""
    source: str = ""
    unread_mail: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Overseer:
        data = data or {}
        return cls(
            name=data.get("name", ""),
            email=data.get("email", ""),
            username=data.get("username", ""),
            source=data.get("source", ""),
            unread_mail=int(data.get("unread_mail") or 0),
        )


@dataclass
class Agent:
    name: str
    address: str = ""
    session: str = ""
    role: str = ""
    running: bool = False
    has_work: bool = False
    unread_mail: int = 0
    first_subject: str = ""
    hooked_bead_id: str = ""
    hooked_status: str = ""
    hooked_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Agent:
        return cls(
            name=data.get("name", ""),
            address=data.get("address", ""),
            session=data.get("session", ""),
            role=data.get("role", ""),
            running=bool(data.get("running", False)),
            has_work=bool(data.get("has_work", False)),
            unread_mail=int(data.get("unread_mail") or 0),
            first_subject=data.get("first_subject", ""),
            hooked_bead_id=data.get("hooked_bead_id", ""),
            hooked_status=data.get("hooked_status", ""),
            hooked_at=parse_time(data.get("hooked_at")),
        )


@dataclass
class Hook:
    agent: str
    role: str = ""
    has_work: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Hook:
        return cls(
            agent=data.get("agent", ""),
            role=data.get("role", ""),
            has_work=bool(data.get("has_work", False)),
        )


@dataclass
class Rig:
    name: str
    polecats: list[str] = field(default_factory=list)
    polecat_count: int = 0
    crews: list[str] = field(default_factory=list)
    crew_count: int = 0
    has_witness: bool = False
    has_refinery: bool = False
    hooks: list[Hook] = field(default_factory=list)
    agents: list[Agent] = field(default_factory=list)
    active_hooks: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Rig:
        return cls(
            name=data.get("name", ""),
            polecats=_list(data.get("polecats")),
            polecat_count=int(data.get("polecat_count") or 0),
            crews=_list(data.get("crews")),
            crew_count=int(data.get("crew_count") or 0),
            has_witness=bool(data.get("has_witness", False)),
            has_refinery=bool(data.get("has_refinery", False)),
            hooks=[Hook.from_dict(h) for h in _list(data.get("hooks"))],
            agents=[Agent.from_dict(a) for a in _list(data.get("agents"))],
            active_hooks=int(data.get("active_hooks") or 0),
        )

    def agent_with_role(self, role: str) -> Agent | None:
        for agent in self.agents:
            if agent.role == role:
                return agent
        return None


@dataclass
class Summary:
    rig_count: int = 0
    polecat_count: int = 0
    crew_count: int = 0
    witness_count: int = 0
    refinery_count: int = 0
    active_hooks: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Summary:
        data = data or {}
        return cls(**{key: int(data.get(key) or 0) for key in cls.__dataclass_fields__})


@dataclass
class TownStatus:
    name: str = ""
    location: str = ""
    overseer: Overseer = field(default_factory=Overseer)
    agents: list[Agent] = field(default_factory=list)
    rigs: list[Rig] = field(default_factory=list)
    summary: Summary = field(default_factory=Summary)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TownStatus:
        return cls(
            name=data.get("name", ""),
            location=data.get("location", ""),
            overseer=Overseer.from_dict(data.get("overseer")),
            agents=[Agent.from_dict(a) for a in _list(data.get("agents"))],
            rigs=[Rig.from_dict(r) for r in _list(data.get("rigs"))],
            summary=Summary.from_dict(data.get("summary")),
        )

    def all_agents(self) -> list[Agent]:
        """Town-level agents followed by every rig's agents."""
        agents = list(self.agents)
        for rig in self.rigs:
            agents.extend(rig.agents)
        return agents

    def find_rig(self, name: str) -> Rig | None:
        for rig in self.rigs:
            if rig.name == name:
                return rig
        return None


# ---------------------------------------------------------------------------
# Work tracking (convoys, merge queue, beads, mail)
# ---------------------------------------------------------------------------


@dataclass
class Convoy:
    id: str
    title: str = ""
    status: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Convoy:
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            status=data.get("status", ""),
            created_at=parse_time(data.get("created_at")),
        )


@dataclass
class MergeRequest:
    id: str
    title: str = ""
    status: str = ""
    worker: str = ""
    branch: str = ""
    priority: int = 0
    has_conflicts: bool = False
    needs_rebase: bool = False
    conflict_info: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MergeRequest:
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            status=data.get("status", ""),
            worker=data.get("worker", ""),
            branch=data.get("branch", ""),
            priority=int(data.get("priority") or 0),
            has_conflicts=bool(data.get("has_conflicts", False)),
            needs_rebase=bool(data.get("needs_rebase", False)),
            conflict_info=data.get("conflict_info", ""),
            created_at=parse_time(data.get("created_at")),
        )

    @property
    def blocked(self) -> bool:
        return self.has_conflicts or self.needs_rebase


# Town-level beads live in the HQ database and are shared by every rig
TOWN_BEAD_PREFIX = "hq-"


def is_town_bead(issue_id: str) -> bool:
    return issue_id.startswith(TOWN_BEAD_PREFIX)


@dataclass
class Issue:
    id: str
    title: str = ""
    description: str = ""
    status: str = ""
    priority: int = 0
    issue_type: str = ""
    assignee: str = ""
    created_at: datetime | None = None
    created_by: str = ""
    updated_at: datetime | None = None
    labels: list[str] = field(default_factory=list)
    ephemeral: bool = False
    dependency_count: int = 0
    dependent_count: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            status=data.get("status", ""),
            priority=int(data.get("priority") or 0),
            issue_type=data.get("issue_type", ""),
            assignee=data.get("assignee", ""),
            created_at=parse_time(data.get("created_at")),
            created_by=data.get("created_by", ""),
            updated_at=parse_time(data.get("updated_at")),
            labels=_list(data.get("labels")),
            ephemeral=bool(data.get("ephemeral", False)),
            dependency_count=int(data.get("dependency_count") or 0),
            dependent_count=int(data.get("dependent_count") or 0),
        )

    @property
    def counts_as_work(self) -> bool:
        return not self.ephemeral and self.issue_type != "message"


@dataclass
class MailMessage:
    id: str
    sender: str = ""
    to: str = ""
    subject: str = ""
    body: str = ""
    timestamp: datetime | None = None
    read: bool = False
    priority: str = ""
    type: str = ""
    thread_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MailMessage:
        return cls(
            id=data.get("id", ""),
            sender=data.get("from", ""),
            to=data.get("to", ""),
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            timestamp=parse_time(data.get("timestamp")),
            read=bool(data.get("read", False)),
            priority=data.get("priority", ""),
            type=data.get("type", ""),
            thread_id=data.get("thread_id", ""),
        )


# ---------------------------------------------------------------------------
# Filesystem-derived records (town.log, crew worktrees, plugins, identity)
# ---------------------------------------------------------------------------

LIFECYCLE_EVENT_TYPES = ("spawn", "wake", "nudge", "handoff", "done", "crash", "kill")


@dataclass
class LifecycleEvent:
    timestamp: datetime
    event_type: str
    agent: str
    message: str


@dataclass
class Worktree:
    rig: str
    source_rig: str
    source_name: str
    path: str
    branch: str = "unknown"
    clean: bool = False
    status: str = "unknown"


@dataclass
class Plugin:
    name: str
    path: str
    scope: str
    title: str = ""
    description: str = ""
    enabled: bool = True
    has_error: bool = False
    last_error: str = ""
    last_run: datetime | None = None
    gate_type: str = ""
    schedule: str = ""


@dataclass
class CommitInfo:
    hash: str
    subject: str = ""
    author: str = ""
    date: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CommitInfo:
        return cls(
            hash=data.get("hash", ""),
            subject=data.get("subject", ""),
            author=data.get("author", ""),
            date=parse_time(data.get("date")),
        )


@dataclass
class Identity:
    name: str = ""
    email: str = ""
    username: str = ""
    source: str = ""
    last_commits: list[CommitInfo] = field(default_factory=list)
    last_beads: list[Issue] = field(default_factory=list)


@dataclass
class OperationalState:
    """Town-wide liveness signals: degraded mode, patrol, and the deacon watchdog."""

    watchdog_healthy: bool = True
    last_deacon_heartbeat: datetime | None = None
    degraded_mode: bool = False
    degraded_reason: str = ""
    degraded_action: str = ""
    patrol_muted: bool = False
    watchdog_reason: str = ""
    watchdog_action: str = ""
    last_witness_heartbeat: dict[str, datetime] = field(default_factory=dict)
    last_refinery_heartbeat: dict[str, datetime] = field(default_factory=dict)
    issues: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# One-shot detail records
# ---------------------------------------------------------------------------


@dataclass
class AuditEntry:
    timestamp: datetime | None
    actor: str = ""
    action: str = ""
    target: str = ""
    summary: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEntry:
        return cls(
            timestamp=parse_time(data.get("timestamp") or data.get("time")),
            actor=data.get("actor", ""),
            action=data.get("action") or data.get("type", ""),
            target=data.get("target", ""),
            summary=data.get("summary") or data.get("message", ""),
        )


@dataclass
class IssueDependency:
    id: str
    title: str = ""
    status: str = ""
    issue_type: str = ""
    priority: int = 0


@dataclass
class IssueDependencies:
    issue_id: str
    blocked_by: list[IssueDependency] = field(default_factory=list)
    blocking: list[IssueDependency] = field(default_factory=list)


@dataclass
class Comment:
    id: str
    author: str = ""
    text: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Comment:
        return cls(
            id=str(data.get("id", "")),
            author=data.get("author", ""),
            text=data.get("text") or data.get("body", ""),
            created_at=parse_time(data.get("created_at")),
        )


@dataclass
class RigSettings:
    name: str
    git_url: str = ""
    prefix: str = ""
    theme: str = ""
    max_workers: int = 0
    merge_queue: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass
class LoadError:
    """One data source that failed during a fetch cycle."""

    source: str
    command: str
    error: str
    occurred_at: datetime

    def __str__(self) -> str:
        return f"{self.source}: {self.error}"


@dataclass
class Snapshot:
    """A complete, possibly partial, view of the town at one point in time.

    ``town`` is None when ``gt status`` itself failed. An empty list never
    means "failed" on its own; check ``load_errors`` for that.
    """

    loaded_at: datetime = field(default_factory=utcnow)
    town: TownStatus | None = None
    convoys: list[Convoy] = field(default_factory=list)
    closed_convoys: list[Convoy] = field(default_factory=list)
    merge_queues: dict[str, list[MergeRequest]] = field(default_factory=dict)
    issues: list[Issue] = field(default_factory=list)
    hooked_issues: list[Issue] = field(default_factory=list)
    hooked_loaded: bool = False
    mail: list[MailMessage] = field(default_factory=list)
    lifecycle: list[LifecycleEvent] = field(default_factory=list)
    worktrees: list[Worktree] = field(default_factory=list)
    plugins: list[Plugin] = field(default_factory=list)
    identity: Identity | None = None
    operational_state: OperationalState | None = None
    load_errors: list[LoadError] = field(default_factory=list)
    last_success: dict[str, datetime] = field(default_factory=dict)

    def rig_names(self) -> list[str]:
        if self.town is None:
            return []
        return [rig.name for rig in self.town.rigs]

    def unread_mail_count(self) -> int:
        return sum(1 for m in self.mail if not m.read)

    def find_error(self, *tags: str) -> LoadError | None:
        """First load error whose source is, or is namespaced under, one of the tags.

        "merge_queue" matches "merge_queue" and "merge_queue_perch" but
        "convoys" does not match "closed_convoys".
        """
        for err in self.load_errors:
            for tag in tags:
                if tag and (err.source == tag or err.source.startswith(tag + "_")):
                    return err
        return None

    def enrich_with_hooked_beads(self) -> None:
        """Fold bead-level hook assignments into the town's agents and rigs.

        ``gt status`` only knows about handoff beads, so when the hooked
        issue list loaded we trust it for agent work and hook counts.
        """
        if self.town is None:
            return

        if self.hooked_loaded:
            self.town.summary.active_hooks = sum(1 for i in self.hooked_issues if i.counts_as_work)

        if not self.hooked_issues:
            return

        by_assignee = {i.assignee: i for i in self.hooked_issues if i.assignee}

        for agent in self.town.all_agents():
            issue = by_assignee.get(agent.address)
            if issue is not None:
                agent.has_work = True
                agent.first_subject = issue.title
                agent.hooked_bead_id = issue.id
                agent.hooked_status = issue.status
                agent.hooked_at = issue.updated_at

        for rig in self.town.rigs:
            counted: set[str] = set()
            for hook in rig.hooks:
                for address in _hook_addresses(hook.agent):
                    if address in by_assignee:
                        hook.has_work = True
                        counted.add(address)
                        break
            # Work hooked to agents gt status did not list as hooks
            extra = {
                i.assignee
                for i in self.hooked_issues
                if i.counts_as_work and i.assignee.startswith(rig.name + "/")
            }
            rig.active_hooks = len(counted) + len(extra - counted)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _hook_addresses(agent: str) -> list[str]:
    """Hook agents appear as "rig/name"; bead assignees as "rig/polecats/name"."""
    addresses = [agent]
    rig, sep, name = agent.partition("/")
    if sep and "/" not in name:
        addresses.append(f"{rig}/polecats/{name}")
    return addresses
