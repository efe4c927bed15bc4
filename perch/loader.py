"""Snapshot acquisition: shell out to gt/bd/git and read town files.

``Loader.load_all`` never fails because one source failed; each failure is
recorded as a ``LoadError`` tagged with its source so the domain caches can
decide what to preserve. It only raises when nothing at all can be loaded.
"""

from __future__ import annotations

import concurrent.futures
import json
import logging
import os
import re
import time
import tomllib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from .config import DEFAULT_ACTION_TIMEOUTS, DEFAULT_LIFECYCLE_LIMIT, IDENTITY_RECENT_LIMIT
from .errors import CommandError
from .models import (
    AuditEntry,
    Comment,
    CommitInfo,
    Convoy,
    Identity,
    Issue,
    IssueDependencies,
    IssueDependency,
    LifecycleEvent,
    LoadError,
    MailMessage,
    MergeRequest,
    OperationalState,
    Overseer,
    Plugin,
    RigSettings,
    Snapshot,
    TownStatus,
    Worktree,
    parse_time,
    utcnow,
)
from .runner import CommandRunner

logger = logging.getLogger(__name__)

# "2026-01-02 07:09:03 [done] gastown-ui/rictus completed rictus-mjx03nhm"
_LIFECYCLE_LINE = re.compile(r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}) \[(\w+)\] (.+)$")

_FIELD_SEP = "\x1f"

# Role gt status reports for the deacon
DEACON_ROLE = "health-check"

# Well-formed JSON whose fields have the wrong shape
MALFORMED_OUTPUT = (ValueError, TypeError, AttributeError, KeyError)


def parse_lifecycle_line(line: str) -> LifecycleEvent | None:
    """Parse one town.log line, or None if it is not a lifecycle event."""
    match = _LIFECYCLE_LINE.match(line)
    if not match:
        return None
    try:
        # town.log is written in local time
        timestamp = datetime.strptime(match.group(1), "%Y-%m-%d %H:%M:%S").astimezone()
    except ValueError:
        return None
    message = match.group(3)
    words = message.split()
    return LifecycleEvent(
        timestamp=timestamp,
        event_type=match.group(2),
        agent=words[0] if words else "",
        message=message,
    )


def parse_worktree_name(name: str) -> tuple[str, str]:
    """Split a crew dir name like "gastown-joe" into (source_rig, name)."""
    source_rig, sep, source_name = name.partition("-")
    if not sep:
        return "", name
    return source_rig, source_name


def recent_beads(issues: list[Issue], limit: int = IDENTITY_RECENT_LIMIT) -> list[Issue]:
    """Most recently updated issues first."""
    undated = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(issues, key=lambda i: i.updated_at or undated, reverse=True)[:limit]


class Loader:
    """Loads town data from the gt/bd CLIs and the town directory."""

    def __init__(
        self,
        town_root: Path | str,
        runner: CommandRunner | None = None,
        timeout: float = DEFAULT_ACTION_TIMEOUTS["default"],
        lifecycle_limit: int = DEFAULT_LIFECYCLE_LIMIT,
        environ: Mapping[str, str] | None = None,
    ):
        self.town_root = Path(town_root)
        self.runner = runner or CommandRunner(self.town_root)
        self.timeout = timeout
        self.lifecycle_limit = lifecycle_limit
        self.environ = os.environ if environ is None else environ

    # ------------------------------------------------------------------
    # Fleet-wide snapshot
    # ------------------------------------------------------------------

    def load_all(self) -> Snapshot:
        """Load every source into one snapshot.

        Raises:
            CommandError: If the town root does not exist (nothing can load).
        """
        if not self.town_root.is_dir():
            raise CommandError(f"town root not found: {self.town_root}")

        started = time.monotonic()
        snap = Snapshot(loaded_at=utcnow())

        def record_error(source: str, command: str, exc: Exception) -> None:
            logger.warning("Load of %s failed: %s", source, exc)
            snap.load_errors.append(
                LoadError(source=source, command=command, error=str(exc), occurred_at=snap.loaded_at)
            )

        def attempt(source: str, command: str, fn: Callable[[], Any]) -> tuple[bool, Any]:
            try:
                value = fn()
            except (CommandError, OSError) as e:
                record_error(source, command, e)
                return False, None
            except MALFORMED_OUTPUT as e:
                record_error(source, command, CommandError(f"unexpected output from {command}: {e}"))
                return False, None
            snap.last_success[source] = snap.loaded_at
            return True, value

        ok, town = attempt("town_status", "gt status --json --fast", self.load_town_status)
        if ok:
            snap.town = town

        # Independent sources run side by side; results are applied on this thread
        independent: list[tuple[str, str, Callable[[], Any]]] = [
            ("convoys", "gt convoy list --json", self.load_convoys),
            ("closed_convoys", "gt convoy list --status=closed --json", lambda: self.load_convoys(closed=True)),
            ("issues", "bd list --json --limit 0", self.load_issues),
            ("hooked_issues", "bd list --json --status hooked --limit 0", lambda: self.load_issues("hooked")),
            ("mail", "gt mail inbox --json", self.load_mail),
            ("lifecycle", "$GT_ROOT/logs/town.log", self.load_lifecycle),
        ]
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(independent)) as pool:
            futures = [(source, command, pool.submit(fn)) for source, command, fn in independent]

        for source, command, future in futures:
            ok, value = attempt(source, command, future.result)
            if not ok:
                continue
            if source == "hooked_issues":
                snap.hooked_issues = value
                snap.hooked_loaded = True
            else:
                setattr(snap, source, value)

        snap.operational_state = self.load_operational_state(snap.town)

        if snap.town is not None:
            rig_names = snap.rig_names()
            for rig in rig_names:
                ok, mrs = attempt(
                    f"merge_queue_{rig}", f"gt mq list {rig} --json", lambda rig=rig: self.load_merge_queue(rig)
                )
                if ok:
                    snap.merge_queues[rig] = mrs
            ok, worktrees = attempt(
                "worktrees", "filesystem scan of crew directories", lambda: self.load_worktrees(rig_names)
            )
            if ok:
                snap.worktrees = worktrees
            ok, plugins = attempt(
                "plugins", "scan of plugin directories", lambda: self.load_plugins(rig_names)
            )
            if ok:
                snap.plugins = plugins

        snap.identity = self.load_identity(snap.town.overseer if snap.town else None, snap.issues)
        snap.enrich_with_hooked_beads()

        logger.debug(
            "Snapshot loaded in %.2fs with %d error(s)", time.monotonic() - started, len(snap.load_errors)
        )
        return snap

    # ------------------------------------------------------------------
    # Individual sources
    # ------------------------------------------------------------------

    def _json_list(self, args: list[str]) -> list[dict[str, Any]]:
        data = self.runner.run_json(args, self.timeout)
        if data is None:
            return []
        if not isinstance(data, list):
            raise CommandError(f"{' '.join(args[:3])}: expected a JSON list", args=args)
        return data

    def load_town_status(self) -> TownStatus:
        data = self.runner.run_json(["gt", "status", "--json", "--fast"], self.timeout)
        if not isinstance(data, dict):
            raise CommandError("gt status: expected a JSON object")
        return TownStatus.from_dict(data)

    def load_convoys(self, closed: bool = False) -> list[Convoy]:
        args = ["gt", "convoy", "list", "--json"]
        if closed:
            args.insert(3, "--status=closed")
        return [Convoy.from_dict(c) for c in self._json_list(args)]

    def load_issues(self, status: str | None = None) -> list[Issue]:
        args = ["bd", "list", "--json"]
        if status:
            args += ["--status", status]
        args += ["--limit", "0"]
        return [Issue.from_dict(i) for i in self._json_list(args)]

    def load_mail(self) -> list[MailMessage]:
        return [MailMessage.from_dict(m) for m in self._json_list(["gt", "mail", "inbox", "--json"])]

    def load_merge_queue(self, rig: str) -> list[MergeRequest]:
        return [MergeRequest.from_dict(m) for m in self._json_list(["gt", "mq", "list", rig, "--json"])]

    def load_lifecycle(self, limit: int | None = None) -> list[LifecycleEvent]:
        """Parse the tail of town.log, newest event first.

        A missing log is an empty history, not an error.
        """
        limit = limit or self.lifecycle_limit
        log_path = self.town_root / "logs" / "town.log"
        try:
            lines = log_path.read_text(errors="replace").splitlines()
        except FileNotFoundError:
            return []

        events = []
        for line in reversed(lines[-limit:]):
            event = parse_lifecycle_line(line)
            if event is not None:
                events.append(event)
        return events

    def load_operational_state(self, town: TownStatus | None) -> OperationalState:
        """Derive liveness from the environment and the deacon's agent record."""
        state = OperationalState()

        if self.environ.get("GT_DEGRADED"):
            state.degraded_mode = True
            state.degraded_reason = "tmux unavailable"
            state.degraded_action = "run 'gt boot' with tmux installed"
            state.issues.append("tmux unavailable - running in degraded mode")

        if self.environ.get("GT_PATROL_MUTED"):
            state.patrol_muted = True

        if town is None:
            return state

        now = utcnow()
        deacon = next((a for a in town.agents if a.role == DEACON_ROLE), None)
        if deacon is None:
            state.watchdog_healthy = False
            state.watchdog_reason = "deacon not registered"
            state.watchdog_action = "run 'gt boot' to initialize"
            state.issues.append("deacon not found - run 'gt boot' to initialize")
        elif deacon.running:
            state.last_deacon_heartbeat = now
        else:
            state.watchdog_healthy = False
            state.watchdog_reason = "deacon stopped"
            state.watchdog_action = "run 'gt deacon start'"
            state.issues.append("deacon not running - watchdog disabled")

        for rig in town.rigs:
            for agent in rig.agents:
                if not agent.running:
                    continue
                if agent.role == "witness":
                    state.last_witness_heartbeat[rig.name] = now
                elif agent.role == "refinery":
                    state.last_refinery_heartbeat[rig.name] = now
        return state

    def load_worktrees(self, rigs: list[str]) -> list[Worktree]:
        """Find cross-rig worktrees under each rig's crew/ directory."""
        worktrees = []
        for rig in rigs:
            crew_dir = self.town_root / rig / "crew"
            if not crew_dir.is_dir():
                continue
            for entry in sorted(crew_dir.iterdir()):
                # A worktree has a .git file, a clone has a .git directory
                if not entry.is_dir() or not (entry / ".git").is_file():
                    continue
                source_rig, source_name = parse_worktree_name(entry.name)
                worktree = Worktree(rig=rig, source_rig=source_rig, source_name=source_name, path=str(entry))
                self._fill_worktree_status(worktree)
                worktrees.append(worktree)
        return worktrees

    def _fill_worktree_status(self, worktree: Worktree) -> None:
        try:
            worktree.branch = self.runner.run(
                ["git", "rev-parse", "--abbrev-ref", "HEAD"], self.timeout, cwd=worktree.path
            ).strip()
        except CommandError:
            worktree.branch = "unknown"
        try:
            porcelain = self.runner.run(["git", "status", "--porcelain"], self.timeout, cwd=worktree.path)
        except CommandError:
            worktree.status = "unknown"
            return
        changes = [line for line in porcelain.splitlines() if line.strip()]
        worktree.clean = not changes
        worktree.status = "clean" if not changes else f"{len(changes)} uncommitted"

    def load_plugins(self, rigs: list[str]) -> list[Plugin]:
        plugins = self._scan_plugin_dir(self.town_root / "plugins", "town")
        for rig in rigs:
            plugins.extend(self._scan_plugin_dir(self.town_root / rig / "plugins", rig))
        return plugins

    def _scan_plugin_dir(self, directory: Path, scope: str) -> list[Plugin]:
        if not directory.is_dir():
            return []
        return [read_plugin(entry, scope) for entry in sorted(directory.iterdir()) if entry.is_dir()]

    def load_identity(self, overseer: Overseer | None, issues: list[Issue]) -> Identity:
        identity = Identity()
        if overseer is not None:
            identity.name = overseer.name
            identity.email = overseer.email
            identity.username = overseer.username
            identity.source = overseer.source
        identity.last_commits = self._recent_commits(IDENTITY_RECENT_LIMIT)
        identity.last_beads = recent_beads(issues)
        return identity

    def _recent_commits(self, limit: int) -> list[CommitInfo]:
        pretty = _FIELD_SEP.join(["%h", "%s", "%an", "%aI"])
        try:
            out = self.runner.run(["git", "log", f"-n{limit}", f"--pretty=format:{pretty}"], self.timeout)
        except CommandError as e:
            # Town root need not be a git repo
            logger.debug("No recent commits: %s", e)
            return []
        commits = []
        for line in out.splitlines():
            parts = line.split(_FIELD_SEP)
            if len(parts) == 4:
                commits.append(
                    CommitInfo(hash=parts[0], subject=parts[1], author=parts[2], date=parse_time(parts[3]))
                )
        return commits

    # ------------------------------------------------------------------
    # One-shot detail loads
    # ------------------------------------------------------------------

    def load_audit_timeline(self, actor: str, limit: int) -> list[AuditEntry]:
        args = ["gt", "audit", "--json"]
        if actor:
            args.append(f"--actor={actor}")
        if limit > 0:
            args += ["--limit", str(limit)]
        return [AuditEntry.from_dict(e) for e in self._json_list(args)]

    def load_issue_dependencies(self, issue_id: str) -> IssueDependencies:
        """Split ``bd dep list`` into blocked-by and blocking issues."""
        result = IssueDependencies(issue_id=issue_id)
        for dep in self._json_list(["bd", "dep", "list", issue_id, "--json"]):
            try:
                record = IssueDependency(
                    id=dep.get("id", ""),
                    title=dep.get("title", ""),
                    status=dep.get("status", ""),
                    issue_type=dep.get("issue_type", ""),
                    priority=int(dep.get("priority") or 0),
                )
            except MALFORMED_OUTPUT as e:
                raise CommandError(f"bd dep list {issue_id}: unexpected output: {e}") from e
            kind = dep.get("dependency_type")
            if kind == "blocks":
                result.blocked_by.append(record)
            elif kind == "blocked_by":
                result.blocking.append(record)
        return result

    def load_issue_comments(self, issue_id: str) -> list[Comment]:
        return [Comment.from_dict(c) for c in self._json_list(["bd", "comments", issue_id, "--json"])]

    def load_rig_settings(self, rig: str) -> RigSettings:
        """Merge mayor/rigs.json with the rig's settings/config.json.

        Either file may be missing; what is there is used.
        """
        settings = RigSettings(name=rig)

        registry = _read_json_file(self.town_root / "mayor" / "rigs.json")
        config = _read_json_file(self.town_root / rig / "mayor" / "rig" / "settings" / "config.json")
        try:
            entry = (registry.get("rigs") or {}).get(rig) or {}
            settings.git_url = entry.get("git_url", "")
            settings.prefix = (entry.get("beads") or {}).get("prefix", "")

            settings.theme = config.get("theme", "")
            settings.max_workers = int(config.get("max_workers") or 0)
            settings.merge_queue = config.get("merge_queue") or {}
        except MALFORMED_OUTPUT as e:
            raise CommandError(f"unexpected rig settings for {rig}: {e}") from e
        return settings


def _read_json_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as e:
        raise CommandError(f"parsing {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def read_plugin(path: Path, scope: str) -> Plugin:
    """Build a Plugin from its directory: marker files plus plugin.md frontmatter."""
    plugin = Plugin(name=path.name, path=str(path), scope=scope)
    plugin.enabled = not (path / ".disabled").exists()

    error_file = path / ".last_error"
    if error_file.is_file():
        plugin.last_error = error_file.read_text().strip()
        plugin.has_error = bool(plugin.last_error)

    last_run_file = path / ".last_run"
    if last_run_file.is_file():
        plugin.last_run = parse_time(last_run_file.read_text().strip())

    meta = _plugin_frontmatter(path / "plugin.md")
    plugin.title = str(meta.get("title") or path.name)
    plugin.description = str(meta.get("description", ""))
    plugin.gate_type = str(meta.get("gate", ""))
    for key in ("schedule", "cooldown", "cron"):
        if meta.get(key):
            plugin.schedule = str(meta[key])
    return plugin


def _plugin_frontmatter(md_path: Path) -> dict[str, Any]:
    """TOML frontmatter between ``+++`` fences at the top of plugin.md."""
    try:
        text = md_path.read_text()
    except FileNotFoundError:
        return {}

    lines = text.splitlines()
    if not lines or lines[0].strip() != "+++":
        return {}
    try:
        end = next(i for i, line in enumerate(lines[1:], start=1) if line.strip() == "+++")
    except StopIteration:
        return {}
    try:
        return tomllib.loads("\n".join(lines[1:end]))
    except tomllib.TOMLDecodeError as e:
        logger.warning("Bad frontmatter in %s: %s", md_path, e)
        return {}
