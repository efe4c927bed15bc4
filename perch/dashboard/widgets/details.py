"""Details pane: everything known about the selected item."""

from __future__ import annotations

from typing import Any

from textual.containers import VerticalScroll
from textual.widgets import Static

from ...controller import Controller
from ...items import (
    AgentItem,
    AlertItem,
    BeadItem,
    ConvoyItem,
    IdentityLine,
    LifecycleItem,
    MailItem,
    MergeRequestItem,
    PluginItem,
    RigItem,
    SubsystemItem,
    WorktreeItem,
)
from ...models import IssueDependency
from ...navigation import Section
from ...queue_health import age_badge
from ...utils import clock, format_duration


def _row(key: str, value: Any) -> str:
    return f"{key + ':':<11}{value}"


def _when(value) -> str:
    return clock(value, with_seconds=True) if value is not None else "-"


def describe(controller: Controller) -> list[str]:
    """Lines for the details pane given the current selection."""
    nav = controller.nav
    item = nav.selected_item()
    lines: list[str] = [nav.section_title(nav.section).upper(), ""]

    if item is None:
        if nav.section is Section.MERGE_QUEUE and nav.selected_rig:
            return lines + _queue_health(controller, nav.selected_rig)
        lines.append("(nothing selected)")
        return lines

    describer = _DESCRIBERS.get(type(item))
    if describer is None:
        lines.append(item.label)
        return lines
    lines += describer(controller, item)
    return lines


def _describe_rig(controller: Controller, item: RigItem) -> list[str]:
    rig = item.rig
    lines = [
        _row("Rig", rig.name),
        _row("Polecats", ", ".join(rig.polecats) or f"{rig.polecat_count}"),
        _row("Crew", ", ".join(rig.crews) or f"{rig.crew_count}"),
        _row("Witness", "yes" if rig.has_witness else "no"),
        _row("Refinery", "yes" if rig.has_refinery else "no"),
        _row("Hooks", f"{rig.active_hooks} active"),
        _row("MRs", item.mr_count),
    ]
    if controller.settings_rig == rig.name and controller.rig_settings is not None:
        settings = controller.rig_settings
        lines += ["", "SETTINGS"]
        lines.append(_row("Git URL", settings.git_url or "-"))
        lines.append(_row("Prefix", settings.prefix or "-"))
        if settings.theme:
            lines.append(_row("Theme", settings.theme))
        if settings.max_workers:
            lines.append(_row("Workers", settings.max_workers))
        for key, value in sorted(settings.merge_queue.items()):
            lines.append(_row(f"mq.{key}", value))
    else:
        lines += ["", "press 'e' to load settings"]
    return lines


def _describe_agent(controller: Controller, item: AgentItem) -> list[str]:
    agent = item.agent
    lines = [
        _row("Address", agent.address or agent.name),
        _row("Role", agent.role or "-"),
        _row("Session", agent.session or "-"),
        _row("State", item.status),
        _row("Mail", f"{agent.unread_mail} unread"),
    ]
    if agent.first_subject:
        lines.append(_row("Latest", agent.first_subject))
    if agent.hooked_bead_id:
        lines.append(_row("Hooked", f"{agent.hooked_bead_id} ({agent.hooked_status or '?'})"))
        if agent.hooked_at is not None:
            lines.append(_row("Since", _when(agent.hooked_at)))

    lines += ["", "AUDIT"]
    if controller.audit_actor != item.id or controller.audit_loading:
        lines.append("Loading...")
    elif not controller.audit_entries:
        lines.append("(no recent activity)")
    else:
        for entry in controller.audit_entries:
            lines.append(f"{_when(entry.timestamp)} {entry.action} {entry.target} {entry.summary}".rstrip())
    return lines


def _queue_health(controller: Controller, rig: str) -> list[str]:
    health = controller.queue_health.get(rig)
    if health is None:
        return [_row("Rig", rig), "(no queue data)"]
    since = health.time_since_last_merge(controller.clock())
    lines = [
        "QUEUE HEALTH",
        _row("Rig", rig),
        _row("Refinery", health.state.value),
        _row("Queued", len(health.mrs)),
        _row("Oldest", format_duration(health.oldest_age) if health.mrs else "-"),
        _row("Last merge", format_duration(since) + " ago" if since is not None else "never"),
        "",
        health.guidance(),
    ]
    for queued in health.mrs:
        lines.append(f"  {queued.badge:<4} {queued.mr.id} {queued.mr.title}")
    return lines


def _describe_mr(controller: Controller, item: MergeRequestItem) -> list[str]:
    mr = item.mr
    lines = [
        _row("MR", mr.id),
        _row("Title", mr.title or "-"),
        _row("Branch", mr.branch or "-"),
        _row("Worker", mr.worker or "-"),
        _row("Priority", f"P{mr.priority}"),
        _row("Status", item.status),
    ]
    if mr.created_at is not None:
        lines.append(_row("Age", age_badge(controller.clock() - mr.created_at)))
    if mr.conflict_info:
        lines.append(_row("Conflict", mr.conflict_info))
    return lines + [""] + _queue_health(controller, item.rig)


def _describe_convoy(controller: Controller, item: ConvoyItem) -> list[str]:
    convoy = item.convoy
    return [
        _row("Convoy", convoy.id),
        _row("Title", convoy.title or "-"),
        _row("Status", convoy.status or "-"),
        _row("Created", _when(convoy.created_at)),
    ]


def _describe_mail(controller: Controller, item: MailItem) -> list[str]:
    msg = item.message
    lines = [
        _row("From", msg.sender),
        _row("To", msg.to or "-"),
        _row("Subject", msg.subject),
        _row("Sent", _when(msg.timestamp)),
        _row("State", item.status),
    ]
    if msg.priority:
        lines.append(_row("Priority", msg.priority))
    if msg.thread_id:
        lines.append(_row("Thread", msg.thread_id))
    if msg.body:
        lines += [""] + msg.body.splitlines()
    return lines


def _describe_lifecycle(controller: Controller, item: LifecycleItem) -> list[str]:
    event = item.event
    return [
        _row("Time", _when(event.timestamp)),
        _row("Type", event.event_type),
        _row("Agent", event.agent),
        "",
        event.message,
    ]


def _describe_worktree(controller: Controller, item: WorktreeItem) -> list[str]:
    tree = item.worktree
    return [
        _row("Rig", tree.rig),
        _row("Source", f"{tree.source_rig or '?'}/{tree.source_name}"),
        _row("Path", tree.path),
        _row("Branch", tree.branch),
        _row("Status", tree.status),
    ]


def _describe_plugin(controller: Controller, item: PluginItem) -> list[str]:
    plugin = item.plugin
    lines = [
        _row("Plugin", plugin.name),
        _row("Scope", plugin.scope),
        _row("Status", item.status),
        _row("Path", plugin.path),
    ]
    if plugin.gate_type:
        lines.append(_row("Gate", plugin.gate_type))
    if plugin.schedule:
        lines.append(_row("Schedule", plugin.schedule))
    if plugin.last_run is not None:
        lines.append(_row("Last run", _when(plugin.last_run)))
    if plugin.last_error:
        lines.append(_row("Error", plugin.last_error))
    if plugin.description:
        lines += ["", plugin.description]
    return lines


def _dependency_line(dep: IssueDependency) -> str:
    return f"  {dep.id} [{dep.status or '?'}] {dep.title}"


def _describe_bead(controller: Controller, item: BeadItem) -> list[str]:
    issue = item.issue
    lines = [
        _row("Bead", issue.id),
        _row("Title", issue.title),
        _row("Type", issue.issue_type or "-"),
        _row("Status", issue.status or "-"),
        _row("Priority", f"P{issue.priority}"),
        _row("Assignee", issue.assignee or "-"),
        _row("Updated", _when(issue.updated_at)),
    ]
    if issue.labels:
        lines.append(_row("Labels", ", ".join(issue.labels)))
    if issue.description:
        lines += [""] + issue.description.splitlines()

    lines += ["", "DEPENDENCIES"]
    if controller.bead_id != issue.id:
        lines.append("Loading...")
    elif controller.bead_dependencies_error:
        lines.append(f"! {controller.bead_dependencies_error}")
    elif controller.bead_dependencies is None:
        lines.append("Loading...")
    else:
        deps = controller.bead_dependencies
        lines.append("Blocked by:" if deps.blocked_by else "Blocked by: (none)")
        lines += [_dependency_line(d) for d in deps.blocked_by]
        lines.append("Blocking:" if deps.blocking else "Blocking: (none)")
        lines += [_dependency_line(d) for d in deps.blocking]

    lines += ["", "COMMENTS"]
    if controller.bead_id != issue.id:
        lines.append("Loading...")
    elif controller.bead_comments_error:
        lines.append(f"! {controller.bead_comments_error}")
    elif not controller.bead_comments:
        lines.append("(no comments)")
    else:
        for comment in controller.bead_comments:
            lines.append(f"{_when(comment.created_at)} {comment.author}: {comment.text}")
    return lines


def _describe_subsystem(controller: Controller, item: SubsystemItem) -> list[str]:
    health = item.health
    lines = [
        _row("Subsystem", health.name),
        _row("Status", health.status.value),
        _row("Message", health.message),
    ]
    if health.details:
        lines.append(_row("Details", health.details))
    if health.recommended_action:
        lines += ["", f"Suggested: {health.recommended_action}"]
    if health.kind in ("deacon", "witness", "refinery"):
        lines += ["", "b: start  s: stop  r: restart"]
    return lines


def _describe_alert(controller: Controller, item: AlertItem) -> list[str]:
    error = item.error
    return [
        _row("Source", error.source),
        _row("Command", error.command),
        _row("When", _when(error.occurred_at)),
        "",
        error.error,
    ]


def _describe_identity(controller: Controller, item: IdentityLine) -> list[str]:
    return [_row(item.key, item.value)]


_DESCRIBERS = {
    RigItem: _describe_rig,
    AgentItem: _describe_agent,
    MergeRequestItem: _describe_mr,
    ConvoyItem: _describe_convoy,
    MailItem: _describe_mail,
    LifecycleItem: _describe_lifecycle,
    WorktreeItem: _describe_worktree,
    PluginItem: _describe_plugin,
    BeadItem: _describe_bead,
    SubsystemItem: _describe_subsystem,
    AlertItem: _describe_alert,
    IdentityLine: _describe_identity,
}


class DetailsPane(VerticalScroll, can_focus=False):
    DEFAULT_CSS = """
    DetailsPane {
        height: 100%;
        border: round $secondary;
        padding: 0 1;
    }
    """

    def compose(self):
        yield Static("", id="details-body", markup=False)

    def show(self, controller: Controller) -> None:
        self.query_one("#details-body", Static).update("\n".join(describe(controller)))
