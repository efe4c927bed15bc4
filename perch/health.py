"""Subsystem health: synthesized judgements over one snapshot.

Everything here is a pure function of the snapshot and the current time.
Nothing is remembered between refreshes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from .config import HEARTBEAT_STALE_AFTER
from .items import AlertItem
from .models import Agent, MergeRequest, Rig, Snapshot, utcnow
from .utils import format_duration

# Agents with work hooked longer than this count as stale in the roll-up
AGENT_WORK_STALE_AFTER = timedelta(hours=2)

# Town-prefixed agent beads that are legitimately town level
_TOWN_AGENT_BEADS = frozenset({"gt-mayor", "gt-deacon"})


class SubsystemStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass
class SubsystemHealth:
    name: str
    subsystem_id: str
    status: SubsystemStatus = SubsystemStatus.HEALTHY
    message: str = ""
    details: str = ""
    recommended_action: str = ""
    rig: str = ""

    @property
    def kind(self) -> str:
        """Which infrastructure agent this row controls: deacon, witness or refinery."""
        return self.subsystem_id.split("_", 1)[0]


@dataclass
class OperatorState:
    subsystems: list[SubsystemHealth] = field(default_factory=list)

    @property
    def issue_count(self) -> int:
        return sum(1 for s in self.subsystems if s.status is SubsystemStatus.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for s in self.subsystems if s.status is SubsystemStatus.WARNING)

    @property
    def has_issues(self) -> bool:
        return self.issue_count + self.warning_count > 0


def services_appear_stopped(snapshot: Snapshot | None, now: datetime | None = None) -> bool:
    """True when the town looks deliberately shut down rather than broken.

    Checked before any load-error banner is drawn so a stopped town reads as
    stale, not failed.
    """
    if snapshot is None or snapshot.town is None:
        return True
    state = snapshot.operational_state
    if state is None:
        return False
    if not state.watchdog_healthy:
        return True
    if state.last_deacon_heartbeat is not None:
        now = now or utcnow()
        if now - state.last_deacon_heartbeat > HEARTBEAT_STALE_AFTER:
            return True
    return False


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def deacon_health(snapshot: Snapshot, now: datetime) -> SubsystemHealth:
    h = SubsystemHealth(name="Deacon", subsystem_id="deacon")
    state = snapshot.operational_state

    if state is None:
        h.status = SubsystemStatus.UNKNOWN
        h.message = "Status unknown"
        h.recommended_action = "Refresh to check status"
        return h

    if state.degraded_mode:
        h.status = SubsystemStatus.ERROR
        h.message = "Degraded mode"
        h.details = state.degraded_reason
        h.recommended_action = state.degraded_action or "Check tmux availability"
        return h

    if not state.watchdog_healthy:
        h.status = SubsystemStatus.ERROR
        h.message = "Watchdog down"
        h.details = state.watchdog_reason
        h.recommended_action = state.watchdog_action or "Press 'b' to start deacon"
        return h

    if state.patrol_muted:
        h.status = SubsystemStatus.WARNING
        h.message = "Patrol muted"
        h.details = "Deacon patrol is muted via GT_PATROL_MUTED"
        h.recommended_action = "unset GT_PATROL_MUTED to resume patrol"
        return h

    if state.last_deacon_heartbeat is None:
        h.message = "Running"
    else:
        age = now - state.last_deacon_heartbeat
        if age > HEARTBEAT_STALE_AFTER:
            h.status = SubsystemStatus.WARNING
            h.message = f"Stale heartbeat ({format_duration(age)} ago)"
            h.details = "Deacon hasn't checked in recently"
            h.recommended_action = "Press 'r' to restart deacon"
            return h
        h.message = f"Heartbeat: {format_duration(age)} ago"

    h.details = "Deacon is healthy and monitoring the town"
    return h


def beads_sync_health(snapshot: Snapshot) -> SubsystemHealth:
    h = SubsystemHealth(name="Beads Sync", subsystem_id="beads_sync")

    for err in snapshot.load_errors:
        if err.source in ("issues", "hooked_issues"):
            h.status = SubsystemStatus.ERROR
            h.message = "Load error"
            h.details = err.error
            h.recommended_action = "Run 'bd sync' to sync beads"
            return h

    if snapshot.issues:
        h.message = f"{len(snapshot.issues)} issues loaded"
        h.details = "Beads are syncing correctly"
    else:
        h.message = "No issues"
        h.details = "No beads issues loaded - this may be normal for a new project"
    return h


def legacy_agent_bead_ids(snapshot: Snapshot, town_prefix: str = "gt-") -> list[str]:
    """Agent bead IDs that still carry the town prefix instead of a rig prefix.

    Best-effort: agent beads are recognised by type or by the role infix
    in their ID.
    """
    legacy = []
    for issue in snapshot.issues:
        if not issue.id.startswith(town_prefix) or issue.id in _TOWN_AGENT_BEADS:
            continue
        looks_like_agent = issue.issue_type == "agent" or any(
            infix in issue.id for infix in ("-polecat-", "-witness-", "-refinery-")
        )
        if looks_like_agent:
            legacy.append(issue.id)
    return legacy


def migration_health(snapshot: Snapshot) -> SubsystemHealth | None:
    """Optional diagnostic row; only present when legacy IDs turn up."""
    legacy = legacy_agent_bead_ids(snapshot)
    if not legacy:
        return None
    return SubsystemHealth(
        name="Agent Bead Migration",
        subsystem_id="agent_migration",
        status=SubsystemStatus.WARNING,
        message=f"{len(legacy)} legacy agent bead IDs",
        details="Found agent beads using town prefix (gt-): " + ", ".join(legacy[:5]),
        recommended_action="Run 'gt migrate-agents' to update to new naming scheme",
    )


def all_agents_health(snapshot: Snapshot, now: datetime) -> SubsystemHealth:
    h = SubsystemHealth(name="All Agents", subsystem_id="all_agents")
    if snapshot.town is None:
        h.status = SubsystemStatus.UNKNOWN
        h.message = "No data"
        h.details = "Town status not available"
        h.recommended_action = "Refresh to check status"
        return h

    agents = [a for rig in snapshot.town.rigs for a in rig.agents]
    if not agents:
        h.status = SubsystemStatus.UNKNOWN
        h.message = "No agents"
        h.details = "No agents found in any rig"
        return h

    running = [a for a in agents if a.running]
    working = [a for a in running if a.has_work]
    stale = [a for a in working if a.hooked_at and now - a.hooked_at > AGENT_WORK_STALE_AFTER]
    with_mail = [a for a in agents if a.unread_mail > 0]

    if not running:
        h.status = SubsystemStatus.ERROR
        h.message = "All agents stopped"
        h.details = "No agents are currently running"
        h.recommended_action = "Press 'b' to boot services"
    elif stale:
        h.status = SubsystemStatus.WARNING
        h.message = f"{len(stale)}/{len(agents)} stale"
        h.details = f"{len(stale)} agents have work hooked for >2 hours"
        h.recommended_action = "Nudge stale agents to resume work"
    elif with_mail:
        h.status = SubsystemStatus.WARNING
        h.message = f"{len(with_mail)} with mail"
        h.details = f"{len(with_mail)} agents have unread mail"
    elif working:
        h.message = f"{len(working)}/{len(agents)} working"
        h.details = f"{len(working)} agents active, {len(running) - len(working)} idle"
    else:
        h.status = SubsystemStatus.WARNING
        h.message = f"{len(running)} idle"
        h.details = "All agents are running but none have work assigned"
        h.recommended_action = "Assign work via convoys or sling commands"
    return h


def _agent_subsystem(rig: Rig, role: str) -> tuple[SubsystemHealth, Agent | None]:
    """Shared configured / present / running checks for witness and refinery.

    Returns the health row and, when the agent is up, the agent record. A
    returned agent of None means the row is already final.
    """
    title = role.capitalize()
    h = SubsystemHealth(name=f"[{rig.name}] {title}", subsystem_id=f"{role}_{rig.name}", rig=rig.name)
    configured = rig.has_witness if role == "witness" else rig.has_refinery
    if not configured:
        h.status = SubsystemStatus.UNKNOWN
        h.message = "Not configured"
        h.details = f"No {role} configured for this rig"
        h.recommended_action = f"Press 'b' to start {role}"
        return h, None

    agent = rig.agent_with_role(role)
    if agent is None:
        h.status = SubsystemStatus.ERROR
        h.message = "Not found"
        h.details = f"{title} is configured but agent not found"
        h.recommended_action = f"Press 'b' to start {role}"
        return h, None

    if not agent.running:
        h.status = SubsystemStatus.ERROR
        h.message = "Stopped"
        h.details = f"{title} session is not running"
        h.recommended_action = f"Press 'b' to start {role}"
        return h, None

    h.details = f"{title} is active at {agent.address}"
    return h, agent


def witness_health(rig: Rig, heartbeat: datetime | None, now: datetime) -> SubsystemHealth:
    h, agent = _agent_subsystem(rig, "witness")
    if agent is None:
        return h
    if heartbeat is not None and now - heartbeat > HEARTBEAT_STALE_AFTER:
        h.status = SubsystemStatus.WARNING
        h.message = f"Stale heartbeat ({format_duration(now - heartbeat)} ago)"
        h.details = "Witness hasn't checked in recently"
        h.recommended_action = "Press 'r' to restart witness"
        return h
    h.message = "Running"
    return h


def refinery_health(
    rig: Rig, mrs: list[MergeRequest], heartbeat: datetime | None, now: datetime
) -> SubsystemHealth:
    h, agent = _agent_subsystem(rig, "refinery")
    if agent is None:
        return h

    blocked = sum(1 for mr in mrs if mr.blocked)
    if blocked:
        h.status = SubsystemStatus.WARNING
        h.message = f"Running ({blocked} conflicts)"
        h.details = f"{blocked} merge requests have conflicts or need rebase"
        h.recommended_action = "Nudge polecats to resolve conflicts (press 'n' in MQ section)"
        return h

    if heartbeat is not None and now - heartbeat > HEARTBEAT_STALE_AFTER:
        h.status = SubsystemStatus.WARNING
        h.message = f"Stale heartbeat ({format_duration(now - heartbeat)} ago)"
        h.details = "Refinery hasn't checked in recently"
        h.recommended_action = "Press 'r' to restart refinery"
        return h

    h.message = f"Running ({len(mrs)} queued)" if mrs else "Idle"
    return h


def hooks_health(rig: Rig) -> SubsystemHealth:
    h = SubsystemHealth(name=f"[{rig.name}] Hooks", subsystem_id=f"hooks_{rig.name}", rig=rig.name)
    stale = sum(1 for a in rig.agents if a.has_work and not a.running)
    if stale:
        h.status = SubsystemStatus.WARNING
        h.message = f"{stale} stale (agent stopped)"
        h.details = f"{stale} agents have hooked work but are not running"
        h.recommended_action = "Nudge agents to resume work or handoff"
        return h

    active = sum(1 for hook in rig.hooks if hook.has_work)
    if active:
        h.message = f"{active} active"
        h.details = f"{active} agents have hooked work"
    else:
        h.message = "No active hooks"
        h.details = "No agents have work hooked"
    return h


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def build_operator_state(snapshot: Snapshot, now: datetime | None = None) -> OperatorState:
    """Evaluate every subsystem check against one snapshot."""
    now = now or utcnow()
    state = OperatorState()
    state.subsystems.append(deacon_health(snapshot, now))
    state.subsystems.append(beads_sync_health(snapshot))

    migration = migration_health(snapshot)
    if migration is not None:
        state.subsystems.append(migration)

    state.subsystems.append(all_agents_health(snapshot, now))

    if snapshot.town is None:
        return state

    ops = snapshot.operational_state
    for rig in snapshot.town.rigs:
        witness_beat = ops.last_witness_heartbeat.get(rig.name) if ops else None
        refinery_beat = ops.last_refinery_heartbeat.get(rig.name) if ops else None
        state.subsystems.append(witness_health(rig, witness_beat, now))
        state.subsystems.append(
            refinery_health(rig, snapshot.merge_queues.get(rig.name, []), refinery_beat, now)
        )
        state.subsystems.append(hooks_health(rig))
    return state


def build_alerts(snapshot: Snapshot | None, now: datetime | None = None) -> list[AlertItem]:
    """One alert per failed source, worded as stale when the town looks stopped."""
    if snapshot is None:
        return []
    stale = services_appear_stopped(snapshot, now)
    return [AlertItem(error=err, stale=stale) for err in snapshot.load_errors]
