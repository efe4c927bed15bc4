"""Mutating actions: what each key intent runs against the town.

Handlers are registered per ``ActionType`` and receive the runner, the
target (rig, agent address, bead id, ...) and any extra input the operator
typed. They either return normally or raise ``CommandError``.

Usage:
    runner = ActionRunner(town_root)
    runner.execute(ActionType.BOOT_RIG, "perch", timeout=30)
"""

from __future__ import annotations

import json
import logging
import os
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import ActionTimeouts
from .errors import CommandError
from .models import utcnow
from .runner import CommandRunner

logger = logging.getLogger(__name__)


class ActionType(Enum):
    # Rigs
    BOOT_RIG = "boot_rig"
    SHUTDOWN_RIG = "shutdown_rig"
    DELETE_RIG = "delete_rig"
    ADD_RIG = "add_rig"
    STOP_ALL_IDLE = "stop_all_idle"

    # Merge queue
    NUDGE_REFINERY = "nudge_refinery"
    RESTART_REFINERY = "restart_refinery"
    NUDGE_POLECAT = "nudge_polecat"
    MQ_RETRY = "mq_retry"

    # Agents
    STOP_POLECAT = "stop_polecat"
    STOP_AGENT = "stop_agent"
    NUDGE_AGENT = "nudge_agent"
    PRESET_NUDGE = "preset_nudge"
    MAIL_AGENT = "mail_agent"
    START_SESSION = "start_session"
    RESTART_SESSION = "restart_session"
    HANDOFF = "handoff"

    # Mail
    MARK_MAIL_READ = "mark_mail_read"
    MARK_MAIL_UNREAD = "mark_mail_unread"
    ACK_MAIL = "ack_mail"
    REPLY_MAIL = "reply_mail"

    # Worktrees and plugins
    REMOVE_WORKTREE = "remove_worktree"
    TOGGLE_PLUGIN = "toggle_plugin"

    # Beads
    CREATE_BEAD = "create_bead"
    UPDATE_BEAD = "update_bead"
    CREATE_WORK = "create_work"
    CLOSE_BEAD = "close_bead"
    REOPEN_BEAD = "reopen_bead"
    ADD_COMMENT = "add_comment"
    SLING_WORK = "sling_work"

    # Infrastructure agents
    START_DEACON = "start_deacon"
    STOP_DEACON = "stop_deacon"
    RESTART_DEACON = "restart_deacon"
    START_WITNESS = "start_witness"
    STOP_WITNESS = "stop_witness"
    RESTART_WITNESS = "restart_witness"
    START_REFINERY = "start_refinery"
    STOP_REFINERY = "stop_refinery"
    RESTART_REFINERY_SERVICE = "restart_refinery_service"

    # Diagnostics
    EXPORT_SNAPSHOT = "export_snapshot"

    @property
    def display_name(self) -> str:
        return ACTION_NAMES[self]

    @property
    def destructive(self) -> bool:
        return self in DESTRUCTIVE_ACTIONS


ACTION_NAMES: Dict[ActionType, str] = {
    ActionType.BOOT_RIG: "Boot",
    ActionType.SHUTDOWN_RIG: "Shutdown",
    ActionType.DELETE_RIG: "Delete",
    ActionType.ADD_RIG: "Add rig",
    ActionType.STOP_ALL_IDLE: "Stop all idle",
    ActionType.NUDGE_REFINERY: "Nudge refinery",
    ActionType.RESTART_REFINERY: "Restart refinery",
    ActionType.NUDGE_POLECAT: "Nudge",
    ActionType.MQ_RETRY: "Retry MR",
    ActionType.STOP_POLECAT: "Stop polecat",
    ActionType.STOP_AGENT: "Stop agent",
    ActionType.NUDGE_AGENT: "Nudge",
    ActionType.PRESET_NUDGE: "Nudge",
    ActionType.MAIL_AGENT: "Mail",
    ActionType.START_SESSION: "Start session",
    ActionType.RESTART_SESSION: "Restart session",
    ActionType.HANDOFF: "Handoff",
    ActionType.MARK_MAIL_READ: "Mark read",
    ActionType.MARK_MAIL_UNREAD: "Mark unread",
    ActionType.ACK_MAIL: "Acknowledge",
    ActionType.REPLY_MAIL: "Reply",
    ActionType.REMOVE_WORKTREE: "Remove worktree",
    ActionType.TOGGLE_PLUGIN: "Toggle plugin",
    ActionType.CREATE_BEAD: "Create bead",
    ActionType.UPDATE_BEAD: "Update bead",
    ActionType.CREATE_WORK: "Create work",
    ActionType.CLOSE_BEAD: "Close bead",
    ActionType.REOPEN_BEAD: "Reopen bead",
    ActionType.ADD_COMMENT: "Add comment",
    ActionType.SLING_WORK: "Sling work",
    ActionType.START_DEACON: "Start deacon",
    ActionType.STOP_DEACON: "Stop deacon",
    ActionType.RESTART_DEACON: "Restart deacon",
    ActionType.START_WITNESS: "Start witness",
    ActionType.STOP_WITNESS: "Stop witness",
    ActionType.RESTART_WITNESS: "Restart witness",
    ActionType.START_REFINERY: "Start refinery",
    ActionType.STOP_REFINERY: "Stop refinery",
    ActionType.RESTART_REFINERY_SERVICE: "Restart refinery",
    ActionType.EXPORT_SNAPSHOT: "Export snapshot",
}

# Actions that only run after the operator answers y
DESTRUCTIVE_ACTIONS = frozenset(
    {
        ActionType.SHUTDOWN_RIG,
        ActionType.DELETE_RIG,
        ActionType.RESTART_REFINERY,
        ActionType.RESTART_REFINERY_SERVICE,
        ActionType.STOP_POLECAT,
        ActionType.STOP_ALL_IDLE,
        ActionType.REMOVE_WORKTREE,
        ActionType.STOP_AGENT,
        ActionType.RESTART_SESSION,
        ActionType.STOP_DEACON,
        ActionType.RESTART_DEACON,
        ActionType.STOP_WITNESS,
        ActionType.RESTART_WITNESS,
        ActionType.STOP_REFINERY,
    }
)

# (label, message); a None message asks the operator for text
PRESET_NUDGES: list[tuple[str, Optional[str]]] = [
    ("Check mail", "Check your mail and respond to any pending items."),
    ("Status update", "Please provide a status update on your current work."),
    ("Resume work", "Resume working on your hooked task."),
    ("Wrap up", "Please wrap up your current task and prepare for handoff."),
    ("Custom...", None),
]


# bd writes that can sit behind a database sync
WORK_CREATION_ACTIONS = frozenset(
    {
        ActionType.CREATE_BEAD,
        ActionType.UPDATE_BEAD,
        ActionType.CREATE_WORK,
        ActionType.CLOSE_BEAD,
        ActionType.REOPEN_BEAD,
    }
)


def timeout_for(action: ActionType, timeouts: ActionTimeouts) -> float:
    """Deadline for one action: cloning a rig and bead writes get longer."""
    if action is ActionType.ADD_RIG:
        return timeouts.long
    if action in WORK_CREATION_ACTIONS:
        return timeouts.create
    return timeouts.default


def confirmation_prompt(action: ActionType, target: str) -> str:
    if action is ActionType.UPDATE_BEAD:
        return f"Edit town-level bead {target}? This affects all rigs. (y/n)"
    return f"{action.display_name} {target}? (y/n)"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

Handler = Callable[["ActionRunner", str, tuple, float], None]

_HANDLER_REGISTRY: Dict[ActionType, Handler] = {}


def register_action_handler(*actions: ActionType) -> Callable[[Handler], Handler]:
    """Decorator to register a function as the handler for one or more actions.

    Args:
        actions: The action types this handler serves.

    Returns:
        Decorator that registers the function and returns it unchanged.
    """

    def decorator(fn: Handler) -> Handler:
        for action in actions:
            _HANDLER_REGISTRY[action] = fn
        return fn

    return decorator


def get_handler(action: ActionType) -> Optional[Handler]:
    return _HANDLER_REGISTRY.get(action)


def _register_command(action: ActionType, build: Callable[[str, tuple], list[str]]) -> None:
    """Register an action that is exactly one CLI invocation."""

    def handler(runner: ActionRunner, target: str, extra: tuple, timeout: float) -> None:
        runner.run(build(target, extra), timeout)

    _HANDLER_REGISTRY[action] = handler


def _arg(extra: tuple, index: int, default: str = "") -> str:
    return extra[index] if len(extra) > index and extra[index] is not None else default


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------

# Rigs
_register_command(ActionType.BOOT_RIG, lambda t, x: ["gt", "rig", "boot", t])
_register_command(ActionType.SHUTDOWN_RIG, lambda t, x: ["gt", "rig", "shutdown", t])
_register_command(ActionType.DELETE_RIG, lambda t, x: ["gt", "rig", "remove", t])
_register_command(ActionType.STOP_ALL_IDLE, lambda t, x: ["gt", "polecat", "stop", "--idle", t])

# Merge queue
_register_command(
    ActionType.NUDGE_REFINERY,
    lambda t, x: [
        "gt", "mail", "send", f"{t}/refinery",
        "-s", "Nudge: Process queue",
        "-m", "Dashboard nudge: Please check and process any waiting merge requests.",
    ],
)
_register_command(ActionType.RESTART_REFINERY, lambda t, x: ["gt", "agent", "restart", f"{t}/refinery"])
_register_command(ActionType.MQ_RETRY, lambda t, x: ["gt", "mq", "retry", _arg(x, 0), "--rig", t])

# Agents
_register_command(ActionType.STOP_POLECAT, lambda t, x: ["gt", "polecat", "stop", t])
_register_command(ActionType.STOP_AGENT, lambda t, x: ["gt", "polecat", "nuke", t])
_register_command(ActionType.START_SESSION, lambda t, x: ["gt", "session", "start", t])
_register_command(ActionType.RESTART_SESSION, lambda t, x: ["gt", "session", "restart", t])
_register_command(ActionType.HANDOFF, lambda t, x: ["gt", "handoff", "--target", t])
_register_command(ActionType.NUDGE_AGENT, lambda t, x: ["gt", "nudge", t, "-m", _arg(x, 0)])
_register_command(ActionType.PRESET_NUDGE, lambda t, x: ["gt", "nudge", t, "-m", _arg(x, 0)])
_register_command(
    ActionType.MAIL_AGENT, lambda t, x: ["gt", "mail", "send", t, "-s", _arg(x, 0), "-m", _arg(x, 1)]
)

# Mail
_register_command(ActionType.MARK_MAIL_READ, lambda t, x: ["gt", "mail", "read", t])
_register_command(ActionType.MARK_MAIL_UNREAD, lambda t, x: ["gt", "mail", "unread", t])
_register_command(ActionType.ACK_MAIL, lambda t, x: ["gt", "mail", "ack", t])
_register_command(ActionType.REPLY_MAIL, lambda t, x: ["gt", "mail", "reply", t, "-m", _arg(x, 0)])

# Worktrees
_register_command(ActionType.REMOVE_WORKTREE, lambda t, x: ["git", "worktree", "remove", t])

# Beads
_register_command(ActionType.CLOSE_BEAD, lambda t, x: ["bd", "close", t])
_register_command(ActionType.REOPEN_BEAD, lambda t, x: ["bd", "update", t, "--status", "open"])
_register_command(ActionType.ADD_COMMENT, lambda t, x: ["bd", "comments", "add", t, _arg(x, 0)])
_register_command(ActionType.SLING_WORK, lambda t, x: ["gt", "sling", _arg(x, 0), t])

# Infrastructure agents
_register_command(ActionType.START_DEACON, lambda t, x: ["gt", "deacon", "start"])
_register_command(ActionType.STOP_DEACON, lambda t, x: ["gt", "deacon", "stop"])
_register_command(ActionType.RESTART_DEACON, lambda t, x: ["gt", "deacon", "restart"])
_register_command(ActionType.START_WITNESS, lambda t, x: ["gt", "witness", "start", t])
_register_command(ActionType.STOP_WITNESS, lambda t, x: ["gt", "witness", "stop", t])
_register_command(ActionType.RESTART_WITNESS, lambda t, x: ["gt", "witness", "restart", t])
_register_command(ActionType.START_REFINERY, lambda t, x: ["gt", "refinery", "start", t])
_register_command(ActionType.STOP_REFINERY, lambda t, x: ["gt", "refinery", "stop", t])
_register_command(ActionType.RESTART_REFINERY_SERVICE, lambda t, x: ["gt", "refinery", "restart", t])


@register_action_handler(ActionType.ADD_RIG)
def _handle_add_rig(runner: ActionRunner, target: str, extra: tuple, timeout: float) -> None:
    """Clone a new rig.

    Expects:
        target: Rig name
        extra[0]: Git URL
        extra[1]: Optional bead prefix
    """
    args = ["gt", "rig", "add", target, _arg(extra, 0)]
    prefix = _arg(extra, 1)
    if prefix:
        args += ["--prefix", prefix]
    runner.run(args, timeout)


@register_action_handler(ActionType.NUDGE_POLECAT)
def _handle_nudge_polecat(runner: ActionRunner, target: str, extra: tuple, timeout: float) -> None:
    """Mail the worker behind a blocked MR.

    Expects:
        target: Rig name
        extra[0]: Worker name
        extra[1]: Branch
        extra[2]: "conflict" when the MR has conflicts, otherwise it needs a rebase
    """
    worker, branch = _arg(extra, 0), _arg(extra, 1)
    message = f"Your branch '{branch}' needs attention. "
    if _arg(extra, 2) == "conflict":
        message += "Merge conflicts detected. Please rebase on main and resolve conflicts."
    else:
        message += "Branch needs to be rebased on main."
    message += "\n\nRun: git fetch origin main && git rebase origin/main"
    runner.run(
        ["gt", "mail", "send", f"{target}/{worker}", "-s", "Nudge: Resolve merge conflicts", "-m", message],
        timeout,
    )


@register_action_handler(ActionType.CREATE_BEAD)
def _handle_create_bead(runner: ActionRunner, target: str, extra: tuple, timeout: float) -> None:
    """Create a task bead.

    Expects:
        target: Title
        extra[0]: Optional description
    """
    args = ["bd", "create", "--title", target, "--type", "task", "--priority", "2"]
    description = _arg(extra, 0)
    if description:
        args += ["--description", description]
    runner.run(args, timeout)


@register_action_handler(ActionType.UPDATE_BEAD)
def _handle_update_bead(runner: ActionRunner, target: str, extra: tuple, timeout: float) -> None:
    """Edit a bead in place.

    Expects:
        target: Bead id
        extra[0]: Title
        extra[1]: Optional description
        extra[2]: Optional issue type
        extra[3]: Priority (0-4)
    """
    args = ["bd", "update", target, "--title", _arg(extra, 0)]
    description = _arg(extra, 1)
    if description:
        args += ["--description", description]
    issue_type = _arg(extra, 2)
    if issue_type:
        args += ["--type", issue_type]
    args += ["--priority", str(_priority(_arg(extra, 3, "2")))]
    runner.run(args, timeout)


@register_action_handler(ActionType.CREATE_WORK)
def _handle_create_work(runner: ActionRunner, target: str, extra: tuple, timeout: float) -> None:
    """Create a task bead and sling it, both under one deadline.

    Expects:
        target: Title
        extra[0]: Optional description
        extra[1]: Optional rig; without one the bead is only created
        extra[2]: Optional polecat in that rig; without one gt spawns a new one
    """
    args = ["bd", "create", "--title", target]
    description = _arg(extra, 0)
    if description:
        args += ["--description", description]
    args += ["--type", "task", "--priority", "2", "--json"]
    out = runner.run(args, timeout)

    try:
        issue_id = json.loads(out).get("id", "")
    except (ValueError, AttributeError) as e:
        raise CommandError(f"parsing bd create output: {e}") from e
    if not issue_id:
        raise CommandError("no issue id in bd create output")

    rig = _arg(extra, 1)
    if not rig:
        return
    polecat = _arg(extra, 2)
    runner.run(["gt", "sling", issue_id, f"{rig}/{polecat}" if polecat else rig], timeout)


def _priority(value: str) -> int:
    try:
        priority = int(value)
    except ValueError:
        raise CommandError(f"priority must be a number from 0 to 4, got {value!r}") from None
    if not 0 <= priority <= 4:
        raise CommandError(f"priority must be a number from 0 to 4, got {value!r}")
    return priority


@register_action_handler(ActionType.TOGGLE_PLUGIN)
def _handle_toggle_plugin(runner: ActionRunner, target: str, extra: tuple, timeout: float) -> None:
    """Flip a plugin's ``.disabled`` marker (target is the plugin directory)."""
    marker = Path(target) / ".disabled"
    try:
        if marker.exists():
            marker.unlink()
        else:
            marker.write_text("disabled\n")
    except OSError as e:
        raise CommandError(f"toggling plugin: {e}") from e


@register_action_handler(ActionType.EXPORT_SNAPSHOT)
def _handle_export_snapshot(runner: ActionRunner, target: str, extra: tuple, timeout: float) -> None:
    """Write a snapshot the dashboard already serialized.

    Expects:
        target: Output file
        extra[0]: The snapshot as JSON
    """
    try:
        snapshot = json.loads(_arg(extra, 0, "null"))
    except ValueError as e:
        raise CommandError(f"bad snapshot payload: {e}") from e
    runner.export_snapshot(Path(target), snapshot)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class ActionRunner:
    """Executes actions against the town root.

    Args:
        town_root: Directory every command runs in.
        runner: Command runner (defaults to a real subprocess runner).
    """

    def __init__(self, town_root: Path | str, runner: CommandRunner | None = None):
        self.town_root = Path(town_root)
        self.runner = runner or CommandRunner(self.town_root)

    def run(self, args: list[str], timeout: float) -> str:
        return self.runner.run(args, timeout)

    def execute(self, action: ActionType, target: str, *extra: str, timeout: float) -> None:
        handler = get_handler(action)
        if handler is None:
            raise CommandError(f"no handler for {action.value}")
        logger.debug("Executing %s on %s", action.value, target)
        handler(self, target, extra, timeout)

    def export_snapshot(self, path: Path, snapshot: Any) -> Path:
        payload = {
            "exported_at": utcnow().isoformat(),
            "timestamp": int(time.time()),
            "snapshot": snapshot,
        }
        try:
            os.makedirs(path.parent, exist_ok=True)
            path.write_text(json.dumps(payload, indent=2, default=str))
        except OSError as e:
            raise CommandError(f"writing snapshot file: {e}") from e
        return path
