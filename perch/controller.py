"""The dashboard's event loop logic, independent of any UI toolkit.

``Controller.update`` consumes one message and returns the follow-up
commands: ``Task`` (background work whose return value is the next message)
and ``Timer`` (deliver a message later). The view runs tasks off the UI
thread and feeds every result back through ``update`` in order, so all state
here is only ever touched from one thread.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

from .actions import PRESET_NUDGES, ActionType
from .cache import Domain, SnapshotCache
from .config import STATUS_CANCEL_SECONDS, DashboardConfig
from .dispatcher import ActionDispatcher, ActionDone, PendingAction, call_with_deadline
from .errors import PerchError, ValidationError
from .health import OperatorState, build_alerts, build_operator_state, services_appear_stopped
from .items import (
    AgentItem,
    BeadItem,
    MailItem,
    MergeRequestItem,
    PluginItem,
    SubsystemItem,
    WorktreeItem,
)
from .models import AuditEntry, Comment, IssueDependencies, RigSettings, Snapshot, utcnow
from .navigation import NavigationState, Section
from .queue_health import QueueHealth, build_queue_health
from .utils import clock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class RefreshDone:
    snapshot: Snapshot | None
    error: str | None = None


@dataclass(frozen=True)
class StatusExpired:
    seq: int


@dataclass(frozen=True)
class AuditTimelineLoaded:
    actor: str
    entries: list[AuditEntry] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class BeadDependenciesLoaded:
    issue_id: str
    dependencies: IssueDependencies | None = None
    error: str | None = None


@dataclass(frozen=True)
class BeadCommentsLoaded:
    issue_id: str
    comments: list[Comment] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class RigSettingsLoaded:
    rig: str
    settings: RigSettings | None = None
    error: str | None = None


Message = Union[
    Tick,
    RefreshDone,
    ActionDone,
    StatusExpired,
    AuditTimelineLoaded,
    BeadDependenciesLoaded,
    BeadCommentsLoaded,
    RigSettingsLoaded,
]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Task:
    """Background work; ``run()`` returns the next message."""

    name: str
    run: Callable[[], Any]


@dataclass(frozen=True)
class Timer:
    delay: float
    message: Any


Command = Union[Task, Timer]


@dataclass(frozen=True)
class InputRequest:
    """Free text the operator must supply before an action can be built."""

    title: str
    fields: tuple[str, ...]
    build: Callable[[list[str]], PendingAction]
    defaults: tuple[str, ...] = ()

    def required(self, index: int) -> bool:
        return not self.fields[index].endswith("(optional)")


# ---------------------------------------------------------------------------
# Key map
# ---------------------------------------------------------------------------

KeyHandler = Callable[["Controller"], Optional[list]]

_KEYMAP: dict[str, KeyHandler] = {}


def keybinding(*keys: str) -> Callable[[KeyHandler], KeyHandler]:
    """Register a controller method as the handler for one or more keys.

    The handler returns the commands to run, or None when the key changed
    view state only.
    """

    def decorator(fn: KeyHandler) -> KeyHandler:
        for key in keys:
            _KEYMAP[key] = fn
        return fn

    return decorator


def _value(values: list[str], index: int) -> str:
    return values[index] if index < len(values) else ""


HELP_LINES = [
    ("tab / shift+tab", "next / previous section"),
    ("j k / down up", "move selection"),
    ("0-9", "jump to section"),
    ("r", "refresh (MQ: retry MR, Operator: restart)"),
    ("b / s / d / a", "boot / shutdown / delete / add rig (Beads: edit bead)"),
    ("C", "stop idle polecats"),
    ("x", "stop agent / remove worktree"),
    ("c", "stop polecat / comment on bead"),
    ("R", "restart session / restart refinery"),
    ("H", "handoff"),
    ("n", "nudge (agent menu, MR worker, refinery)"),
    ("m / M / A / p", "mail agent, mark read / unread, ack, reply"),
    ("N / X / O / g", "new, close, reopen, sling bead"),
    ("w", "create work and sling it"),
    ("space", "toggle plugin"),
    ("h / t / u", "convoy history, beads scope, unread only"),
    ("e", "rig settings"),
    ("D", "export snapshot"),
    ("?", "toggle help"),
    ("q", "quit"),
]


class Controller:
    """Owns every piece of dashboard state and all transitions on it.

    Args:
        config: Settings built at startup.
        loader: Provides ``load_all`` and the one-shot detail loads.
        execute: ``execute(action, target, *extra, timeout=...)``.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        config: DashboardConfig,
        loader: Any,
        execute: Callable[..., None],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.loader = loader
        self.clock = clock

        self.cache = SnapshotCache()
        self.nav = NavigationState(self.cache)
        self.dispatcher = ActionDispatcher(execute, config.timeouts, clock)

        self.is_refreshing = False
        self.refresh_pending = False
        self.error_count = 0
        self.last_refresh_error: str | None = None
        self.last_refresh: datetime | None = None

        self.operator = OperatorState()
        self.queue_health: dict[str, QueueHealth] = {}
        self.services_stopped = True

        self.show_help = False
        self.input_request: InputRequest | None = None
        self.nudge_target: str | None = None

        # One-shot details, keyed by the id they were requested for
        self.audit_actor: str | None = None
        self.audit_entries: list[AuditEntry] = []
        self.audit_loading = False
        self.bead_id: str | None = None
        self.bead_dependencies: IssueDependencies | None = None
        self.bead_dependencies_error: str | None = None
        self.bead_comments: list[Comment] = []
        self.bead_comments_error: str | None = None
        self.settings_rig: str | None = None
        self.rig_settings: RigSettings | None = None

    @property
    def snapshot(self) -> Snapshot | None:
        return self.cache.snapshot

    @property
    def status(self):
        return self.dispatcher.status

    # ------------------------------------------------------------------
    # Message loop
    # ------------------------------------------------------------------

    def start(self) -> list[Command]:
        """Commands to issue once the view is up: first fetch plus the tick."""
        return self._begin_refresh() + [Timer(self.config.refresh_interval, Tick())]

    def update(self, msg: Any) -> list[Command]:
        if isinstance(msg, Tick):
            commands: list[Command] = [Timer(self.config.refresh_interval, Tick())]
            if not self.is_refreshing:
                commands += self._begin_refresh()
            return commands
        if isinstance(msg, RefreshDone):
            return self._on_refresh_done(msg)
        if isinstance(msg, ActionDone):
            return self._on_action_done(msg)
        if isinstance(msg, StatusExpired):
            self.dispatcher.expire(msg.seq)
            return []
        if isinstance(msg, AuditTimelineLoaded):
            if msg.actor == self.audit_actor:
                self.audit_loading = False
                # Supplementary detail: a failure shows an empty timeline
                self.audit_entries = list(msg.entries) if msg.error is None else []
            return []
        if isinstance(msg, BeadDependenciesLoaded):
            if msg.issue_id == self.bead_id:
                self.bead_dependencies = msg.dependencies
                self.bead_dependencies_error = msg.error
            return []
        if isinstance(msg, BeadCommentsLoaded):
            if msg.issue_id == self.bead_id:
                self.bead_comments = list(msg.comments)
                self.bead_comments_error = msg.error
            return []
        if isinstance(msg, RigSettingsLoaded):
            return self._on_rig_settings(msg)
        logger.debug("Ignoring unknown message %r", msg)
        return []

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def request_refresh(self) -> list[Command]:
        """Refresh now, or as soon as the one in flight lands."""
        if self.is_refreshing:
            self.refresh_pending = True
            return []
        return self._begin_refresh()

    def _begin_refresh(self) -> list[Command]:
        self.is_refreshing = True
        return [Task("refresh", self._fetch)]

    def _fetch(self) -> RefreshDone:
        snapshot, error = self._bounded(self.loader.load_all, self.config.timeouts.refresh, "Refresh")
        return RefreshDone(snapshot, error)

    def _bounded(self, fn: Callable[[], Any], timeout: float, name: str) -> tuple[Any, str | None]:
        """Run fn under a deadline; returns (value, None) or (None, error). Never raises."""
        try:
            return call_with_deadline(fn, timeout, name), None
        except (PerchError, OSError) as e:
            return None, str(e)
        except Exception as e:
            logger.exception("%s crashed", name)
            return None, f"{type(e).__name__}: {e}"

    def _on_refresh_done(self, msg: RefreshDone) -> list[Command]:
        commands: list[Command] = []
        if msg.snapshot is None:
            self.error_count += 1
            self.last_refresh_error = msg.error
            logger.warning("Refresh failed: %s", msg.error)
        else:
            self.last_refresh_error = None
            self.apply_snapshot(msg.snapshot)
            commands += self._detail_loads()

        self.is_refreshing = False
        if self.refresh_pending:
            self.refresh_pending = False
            commands += self._begin_refresh()
        return commands

    def apply_snapshot(self, snapshot: Snapshot) -> None:
        """Reconcile caches and recompute everything derived from them."""
        now = self.clock()
        self.cache.reconcile(snapshot)
        self.operator = build_operator_state(snapshot, now)
        self.queue_health = build_queue_health(snapshot, now)
        self.services_stopped = services_appear_stopped(snapshot, now)
        self.nav.alerts = build_alerts(snapshot, now)
        self.nav.subsystems = [SubsystemItem(h) for h in self.operator.subsystems]
        self.nav.clamp_selection()
        self.nav.resync()
        self.last_refresh = snapshot.loaded_at

    # ------------------------------------------------------------------
    # Dependent detail loads
    # ------------------------------------------------------------------

    def _detail_loads(self) -> list[Command]:
        commands: list[Command] = []
        section = self.nav.section

        actor = self.nav.selected_agent
        if section is Section.AGENTS and actor and actor != self.audit_actor:
            self.audit_actor = actor
            self.audit_entries = []
            self.audit_loading = True
            commands.append(Task("audit_timeline", lambda: self._load_audit(actor)))

        bead = self.nav.selected_bead
        if section is Section.BEADS and bead and bead != self.bead_id:
            self.bead_id = bead
            self.bead_dependencies = None
            self.bead_dependencies_error = None
            self.bead_comments = []
            self.bead_comments_error = None
            commands.append(Task("bead_dependencies", lambda: self._load_dependencies(bead)))
            commands.append(Task("bead_comments", lambda: self._load_comments(bead)))
        return commands

    def _detail(self, fn: Callable[[], Any], name: str) -> tuple[Any, str | None]:
        return self._bounded(fn, self.config.timeouts.detail, name)

    def _load_audit(self, actor: str) -> AuditTimelineLoaded:
        entries, error = self._detail(
            lambda: self.loader.load_audit_timeline(actor, self.config.audit_limit), "Audit timeline"
        )
        return AuditTimelineLoaded(actor, entries or [], error)

    def _load_dependencies(self, issue_id: str) -> BeadDependenciesLoaded:
        deps, error = self._detail(lambda: self.loader.load_issue_dependencies(issue_id), "Dependencies")
        return BeadDependenciesLoaded(issue_id, deps, error)

    def _load_comments(self, issue_id: str) -> BeadCommentsLoaded:
        comments, error = self._detail(lambda: self.loader.load_issue_comments(issue_id), "Comments")
        return BeadCommentsLoaded(issue_id, comments or [], error)

    def _load_rig_settings(self, rig: str) -> RigSettingsLoaded:
        settings, error = self._detail(lambda: self.loader.load_rig_settings(rig), "Rig settings")
        return RigSettingsLoaded(rig, settings, error)

    def _on_rig_settings(self, msg: RigSettingsLoaded) -> list[Command]:
        if msg.rig != self.settings_rig:
            return []
        if msg.error is not None:
            self.rig_settings = None
            return self._status(f"Load settings failed: {msg.error}", is_error=True)
        self.rig_settings = msg.settings
        return []

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def dispatch(self, pending: PendingAction) -> list[Command]:
        work = self.dispatcher.request(pending)
        if work is None:
            return []
        return [Task(pending.action.value, work)]

    def _on_action_done(self, msg: ActionDone) -> list[Command]:
        status, refresh = self.dispatcher.complete(msg)
        commands: list[Command] = [Timer(status.duration, StatusExpired(status.seq))]
        if refresh:
            commands += self.request_refresh()
        return commands

    def _status(self, text: str, is_error: bool = False, duration: float | None = None) -> list[Command]:
        status = self.dispatcher.set_status(text, is_error, duration)
        return [Timer(status.duration, StatusExpired(status.seq))]

    def submit_input(self, values: list[str]) -> list[Command]:
        request, self.input_request = self.input_request, None
        if request is None:
            return []
        values = [v.strip() for v in values]
        for index, name in enumerate(request.fields):
            if request.required(index) and (index >= len(values) or not values[index]):
                return self._status(f"{name} is required", is_error=True)
        return self.dispatch(request.build(values))

    def cancel_input(self) -> list[Command]:
        self.input_request = None
        self.nudge_target = None
        return self._status("Action cancelled", duration=STATUS_CANCEL_SECONDS)

    def choose_nudge(self, index: int) -> list[Command]:
        """Pick an entry from the preset nudge menu."""
        target, self.nudge_target = self.nudge_target, None
        if target is None or not 0 <= index < len(PRESET_NUDGES):
            return []
        label, message = PRESET_NUDGES[index]
        if message is None:
            self.input_request = InputRequest(
                title=f"Nudge {target}",
                fields=("Message",),
                build=lambda v: PendingAction(ActionType.PRESET_NUDGE, target, (v[0],)),
            )
            return []
        return self.dispatch(PendingAction(ActionType.PRESET_NUDGE, target, (message,)))

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def handle_key(self, key: str) -> tuple[bool, list[Command]]:
        """Route one key press.

        Returns:
            Whether view state changed, and the commands to run.
        """
        if self.dispatcher.pending is not None:
            if key in ("y", "Y"):
                name = self.dispatcher.pending.action.value
                work = self.dispatcher.confirm()
                return True, [Task(name, work)] if work else []
            if key in ("n", "N", "escape"):
                status = self.dispatcher.cancel()
                return True, [Timer(status.duration, StatusExpired(status.seq))]
            return False, []

        if self.show_help:
            if key in ("?", "escape"):
                self.show_help = False
                return True, []
            return False, []

        if key.isdigit() and len(key) == 1:
            changed = self.nav.jump(int(key))
            return changed, self._detail_loads() if changed else []

        handler = _KEYMAP.get(key)
        if handler is None:
            return False, []
        try:
            commands = handler(self)
        except ValidationError as e:
            return True, self._status(str(e), is_error=True)
        return True, list(commands or [])

    # Navigation

    @keybinding("tab")
    def _key_next_section(self) -> list[Command]:
        self.nav.next_section()
        return self._detail_loads()

    @keybinding("shift+tab")
    def _key_prev_section(self) -> list[Command]:
        self.nav.prev_section()
        return self._detail_loads()

    @keybinding("j", "down")
    def _key_down(self) -> list[Command]:
        self.nav.select_next()
        return self._detail_loads()

    @keybinding("k", "up")
    def _key_up(self) -> list[Command]:
        self.nav.select_prev()
        return self._detail_loads()

    @keybinding("h")
    def _key_convoy_history(self) -> None:
        self.nav.toggle_convoy_history()

    @keybinding("t")
    def _key_beads_scope(self) -> list[Command]:
        self.nav.toggle_beads_scope()
        return self._detail_loads()

    @keybinding("u")
    def _key_unread_only(self) -> None:
        self.nav.toggle_mail_unread_only()

    @keybinding("question_mark", "?")
    def _key_help(self) -> None:
        self.show_help = True

    # Selection helpers

    def _rig(self) -> str:
        if not self.nav.selected_rig:
            raise ValidationError("No rig selected. Use j/k to select a rig.")
        return self.nav.selected_rig

    def _agent(self) -> AgentItem:
        item = self.nav.selected_item()
        if self.nav.section is not Section.AGENTS or not isinstance(item, AgentItem):
            raise ValidationError("No agent selected. Use j/k to select an agent.")
        return item

    def _selected(self, section: Section, kind: type, noun: str) -> Any:
        item = self.nav.selected_item()
        if self.nav.section is not section or not isinstance(item, kind):
            raise ValidationError(f"No {noun} selected. Go to {section.title} and use j/k to select one.")
        return item

    def _subsystem_action(self, verb: str) -> PendingAction:
        item = self.nav.selected_item()
        if not isinstance(item, SubsystemItem):
            raise ValidationError("No subsystem selected. Use j/k to select one.")
        health = item.health
        choices = {
            "deacon": (ActionType.START_DEACON, ActionType.STOP_DEACON, ActionType.RESTART_DEACON),
            "witness": (ActionType.START_WITNESS, ActionType.STOP_WITNESS, ActionType.RESTART_WITNESS),
            "refinery": (
                ActionType.START_REFINERY,
                ActionType.STOP_REFINERY,
                ActionType.RESTART_REFINERY_SERVICE,
            ),
        }
        if health.kind not in choices:
            raise ValidationError("Select the deacon, a witness or a refinery to control.")
        action = choices[health.kind][("start", "stop", "restart").index(verb)]
        target = "deacon" if health.kind == "deacon" else health.rig
        return PendingAction(action, target)

    # Section-dependent actions

    @keybinding("r")
    def _key_refresh(self) -> list[Command]:
        section = self.nav.section
        if section is Section.MERGE_QUEUE:
            item = self._selected(Section.MERGE_QUEUE, MergeRequestItem, "merge request")
            return self.dispatch(PendingAction(ActionType.MQ_RETRY, item.rig, (item.mr.id,)))
        if section is Section.OPERATOR:
            return self.dispatch(self._subsystem_action("restart"))
        return self._status("Refreshing...") + self.request_refresh()

    @keybinding("b")
    def _key_boot(self) -> list[Command] | None:
        if self.nav.section is Section.BEADS:
            self._edit_bead()
            return None
        if self.nav.section is Section.AGENTS:
            return self.dispatch(PendingAction(ActionType.START_SESSION, self._agent().id))
        if self.nav.section is Section.OPERATOR:
            return self.dispatch(self._subsystem_action("start"))
        return self.dispatch(PendingAction(ActionType.BOOT_RIG, self._rig()))

    @keybinding("s")
    def _key_shutdown(self) -> list[Command]:
        if self.nav.section is Section.OPERATOR:
            return self.dispatch(self._subsystem_action("stop"))
        return self.dispatch(PendingAction(ActionType.SHUTDOWN_RIG, self._rig()))

    @keybinding("d")
    def _key_delete(self) -> list[Command]:
        return self.dispatch(PendingAction(ActionType.DELETE_RIG, self._rig()))

    @keybinding("a")
    def _key_add_rig(self) -> None:
        self.input_request = InputRequest(
            title="Add rig",
            fields=("Name", "Git URL", "Prefix (optional)"),
            build=lambda v: PendingAction(ActionType.ADD_RIG, v[0], (v[1], v[2] if len(v) > 2 else "")),
        )

    @keybinding("C")
    def _key_stop_idle(self) -> list[Command]:
        return self.dispatch(PendingAction(ActionType.STOP_ALL_IDLE, self._rig()))

    @keybinding("x")
    def _key_stop_or_remove(self) -> list[Command]:
        if self.nav.section is Section.WORKTREES:
            item = self._selected(Section.WORKTREES, WorktreeItem, "worktree")
            return self.dispatch(PendingAction(ActionType.REMOVE_WORKTREE, item.id))
        return self.dispatch(PendingAction(ActionType.STOP_AGENT, self._agent().id))

    @keybinding("c")
    def _key_stop_polecat_or_comment(self) -> list[Command] | None:
        if self.nav.section is Section.BEADS:
            bead = self._selected(Section.BEADS, BeadItem, "bead").id
            self.input_request = InputRequest(
                title=f"Comment on {bead}",
                fields=("Comment",),
                build=lambda v: PendingAction(ActionType.ADD_COMMENT, bead, (v[0],)),
            )
            return None
        return self.dispatch(PendingAction(ActionType.STOP_POLECAT, self._agent().id))

    @keybinding("R")
    def _key_restart(self) -> list[Command]:
        if self.nav.section is Section.MERGE_QUEUE:
            return self.dispatch(PendingAction(ActionType.RESTART_REFINERY, self._rig()))
        return self.dispatch(PendingAction(ActionType.RESTART_SESSION, self._agent().id))

    @keybinding("H")
    def _key_handoff(self) -> list[Command]:
        return self.dispatch(PendingAction(ActionType.HANDOFF, self._agent().id))

    @keybinding("n")
    def _key_nudge(self) -> list[Command] | None:
        section = self.nav.section
        if section is Section.MERGE_QUEUE:
            item = self._selected(Section.MERGE_QUEUE, MergeRequestItem, "merge request")
            if not item.mr.worker:
                raise ValidationError("Selected MR has no worker to nudge.")
            kind = "conflict" if item.mr.has_conflicts else "rebase"
            return self.dispatch(
                PendingAction(ActionType.NUDGE_POLECAT, item.rig, (item.mr.worker, item.mr.branch, kind))
            )
        if section is Section.RIGS:
            return self.dispatch(PendingAction(ActionType.NUDGE_REFINERY, self._rig()))
        self.nudge_target = self._agent().id
        return None

    @keybinding("m")
    def _key_mail(self) -> list[Command] | None:
        if self.nav.section is Section.MAIL:
            item = self._selected(Section.MAIL, MailItem, "message")
            return self.dispatch(PendingAction(ActionType.MARK_MAIL_READ, item.id))
        address = self._agent().id
        self.input_request = InputRequest(
            title=f"Mail {address}",
            fields=("Subject", "Message"),
            build=lambda v: PendingAction(ActionType.MAIL_AGENT, address, (v[0], v[1])),
        )
        return None

    @keybinding("M")
    def _key_mark_unread(self) -> list[Command]:
        item = self._selected(Section.MAIL, MailItem, "message")
        return self.dispatch(PendingAction(ActionType.MARK_MAIL_UNREAD, item.id))

    @keybinding("A")
    def _key_ack(self) -> list[Command]:
        item = self._selected(Section.MAIL, MailItem, "message")
        return self.dispatch(PendingAction(ActionType.ACK_MAIL, item.id))

    @keybinding("p")
    def _key_reply(self) -> None:
        item = self._selected(Section.MAIL, MailItem, "message")
        self.input_request = InputRequest(
            title=f"Reply to {item.message.sender}",
            fields=("Reply",),
            build=lambda v: PendingAction(ActionType.REPLY_MAIL, item.id, (v[0],)),
        )

    @keybinding("N")
    def _key_new_bead(self) -> None:
        self.input_request = InputRequest(
            title="New bead",
            fields=("Title", "Description (optional)"),
            build=lambda v: PendingAction(ActionType.CREATE_BEAD, v[0], (v[1] if len(v) > 1 else "",)),
        )

    def _edit_bead(self) -> None:
        issue = self._selected(Section.BEADS, BeadItem, "bead").issue
        self.input_request = InputRequest(
            title=f"Edit {issue.id}",
            fields=("Title", "Description (optional)", "Type (optional)", "Priority"),
            defaults=(issue.title, issue.description, issue.issue_type, str(issue.priority)),
            build=lambda v: PendingAction(
                ActionType.UPDATE_BEAD, issue.id, (v[0], _value(v, 1), _value(v, 2), _value(v, 3))
            ),
        )

    @keybinding("w")
    def _key_create_work(self) -> None:
        self.input_request = InputRequest(
            title="Create work",
            fields=("Title", "Description (optional)", "Rig (optional)", "Polecat (optional)"),
            defaults=("", "", self.nav.selected_rig or "", ""),
            build=lambda v: PendingAction(
                ActionType.CREATE_WORK, v[0], (_value(v, 1), _value(v, 2), _value(v, 3))
            ),
        )

    @keybinding("X")
    def _key_close_bead(self) -> list[Command]:
        bead = self._selected(Section.BEADS, BeadItem, "bead")
        return self.dispatch(PendingAction(ActionType.CLOSE_BEAD, bead.id))

    @keybinding("O")
    def _key_reopen_bead(self) -> list[Command]:
        bead = self._selected(Section.BEADS, BeadItem, "bead")
        return self.dispatch(PendingAction(ActionType.REOPEN_BEAD, bead.id))

    @keybinding("g")
    def _key_sling(self) -> None:
        bead = self._selected(Section.BEADS, BeadItem, "bead").id
        default = self.nav.selected_agent or ""
        self.input_request = InputRequest(
            title=f"Sling {bead}",
            fields=("Agent address",),
            defaults=(default,),
            build=lambda v: PendingAction(ActionType.SLING_WORK, v[0], (bead,)),
        )

    @keybinding("space")
    def _key_toggle_plugin(self) -> list[Command]:
        plugin = self._selected(Section.PLUGINS, PluginItem, "plugin")
        return self.dispatch(PendingAction(ActionType.TOGGLE_PLUGIN, plugin.id))

    @keybinding("e")
    def _key_rig_settings(self) -> list[Command]:
        rig = self._rig()
        self.settings_rig = rig
        self.rig_settings = None
        return [Task("rig_settings", lambda: self._load_rig_settings(rig))]

    @keybinding("D")
    def _key_export(self) -> list[Command]:
        # Serialized here so the worker never reads live state
        payload = json.dumps(self.export_payload(), default=str)
        return self.dispatch(
            PendingAction(ActionType.EXPORT_SNAPSHOT, str(self.config.snapshot_export_path), (payload,))
        )

    # ------------------------------------------------------------------
    # View queries
    # ------------------------------------------------------------------

    def hud_text(self) -> str:
        town = self.snapshot.town if self.snapshot else None
        parts = [town.name if town and town.name else "perch"]
        parts.append(
            f"{len(self.cache[Domain.RIGS].items)} rigs  "
            f"{len(self.cache[Domain.AGENTS].items)} agents  "
            f"{len(self.cache[Domain.MERGE_QUEUE].items)} MRs  "
            f"{self.cache.mail_unread_count or 0} unread"
        )
        if self.is_refreshing:
            parts.append("refreshing…")
        elif self.last_refresh is not None:
            parts.append(f"updated {clock(self.last_refresh, with_seconds=True)}")
        if self.error_count:
            parts.append(f"errors: {self.error_count}")
        if self.operator.has_issues:
            parts.append(f"{self.operator.issue_count} issues, {self.operator.warning_count} warnings")
        return " | ".join(parts)

    def footer_text(self) -> str:
        prompt = self.dispatcher.prompt
        if prompt:
            return prompt
        if self.status is not None:
            return self.status.text
        return "tab: section  j/k: select  r: refresh  ?: help  q: quit"

    def export_payload(self) -> dict[str, Any]:
        """The current snapshot plus which domains are showing stale data."""
        return {
            "stale": {d.value: c.last_error is not None for d, c in self.cache.domains.items()},
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
        }
