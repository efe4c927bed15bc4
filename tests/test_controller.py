"""Tests for perch.controller: the message loop, key routing and detail loads."""

import json
from unittest.mock import MagicMock

import pytest

from perch.actions import ActionType
from perch.cache import Domain, render_domain
from perch.controller import (
    HELP_LINES,
    AuditTimelineLoaded,
    BeadCommentsLoaded,
    BeadDependenciesLoaded,
    Controller,
    RefreshDone,
    RigSettingsLoaded,
    StatusExpired,
    Task,
    Tick,
    Timer,
)
from perch.dispatcher import ActionDone
from perch.errors import CommandError
from perch.models import AuditEntry, Comment, Convoy, Issue, IssueDependencies, MailMessage, OperationalState
from perch.navigation import Section
from tests.fixtures.snapshots import NOW, make_agent, make_error, make_mr, make_rig, make_snapshot


@pytest.fixture
def loader():
    loader = MagicMock()
    loader.load_all.return_value = make_snapshot()
    return loader


@pytest.fixture
def execute():
    return MagicMock()


@pytest.fixture
def controller(config, loader, execute, clock):
    return Controller(config, loader, execute, clock)


def tasks(commands):
    return [c for c in commands if isinstance(c, Task)]


def task_names(commands):
    return [t.name for t in tasks(commands)]


def loaded(controller, snapshot):
    """Deliver a finished refresh carrying this snapshot."""
    controller.is_refreshing = True
    return controller.update(RefreshDone(snapshot))


def press(controller, *keys):
    commands = []
    for key in keys:
        _, cmds = controller.handle_key(key)
        commands += cmds
    return commands


class TestRefreshLoop:
    def test_start_fetches_and_ticks(self, controller):
        commands = controller.start()
        assert task_names(commands) == ["refresh"]
        assert Timer(10.0, Tick()) in commands
        assert controller.is_refreshing

    def test_at_most_one_refresh_in_flight(self, controller):
        controller.start()
        commands = controller.update(Tick())
        assert tasks(commands) == []
        assert commands == [Timer(10.0, Tick())]

    def test_tick_when_idle_refreshes(self, controller):
        assert task_names(controller.update(Tick())) == ["refresh"]

    def test_manual_refresh_during_fetch_is_queued(self, controller):
        controller.start()
        assert controller.request_refresh() == []
        assert controller.refresh_pending

        commands = controller.update(RefreshDone(make_snapshot()))

        assert not controller.refresh_pending
        assert controller.is_refreshing
        assert "refresh" in task_names(commands)

    def test_fetch_task_wraps_loader(self, controller, loader):
        [task] = tasks(controller.start())
        msg = task.run()
        assert isinstance(msg, RefreshDone)
        assert msg.snapshot is loader.load_all.return_value

    def test_fetch_task_reports_failure(self, controller, loader):
        loader.load_all.side_effect = CommandError("town root not found: /nope")
        [task] = tasks(controller.start())
        assert task.run() == RefreshDone(None, "town root not found: /nope")

    def test_fetch_task_reports_crash(self, controller, loader):
        loader.load_all.side_effect = ValueError("invalid literal for int() with base 10: 'P1'")
        [task] = tasks(controller.start())

        msg = task.run()

        assert msg == RefreshDone(None, "ValueError: invalid literal for int() with base 10: 'P1'")
        controller.update(msg)
        assert not controller.is_refreshing
        assert controller.error_count == 1

    def test_failed_refresh_keeps_data(self, controller):
        loaded(controller, make_snapshot(convoys=[Convoy(id="cv-1")]))
        controller.is_refreshing = True

        assert controller.update(RefreshDone(None, "Refresh timed out after 1s")) == []

        assert controller.error_count == 1
        assert controller.last_refresh_error == "Refresh timed out after 1s"
        assert not controller.is_refreshing
        assert [i.id for i in controller.cache[Domain.CONVOYS].items] == ["cv-1"]
        assert "errors: 1" in controller.hud_text()

    def test_apply_snapshot_derives_state(self, controller):
        snap = make_snapshot(rigs=[make_rig("perch"), make_rig("wren")], errors=[make_error("mail")])
        loaded(controller, snap)

        assert controller.snapshot is snap
        assert set(controller.queue_health) == {"perch", "wren"}
        assert controller.nav.selected_rig == "perch"
        assert [a.label for a in controller.nav.alerts] == ["Mail failed (press 9 for details)"]
        assert controller.nav.subsystems[0].id == "deacon"
        assert not controller.services_stopped
        assert controller.last_refresh == NOW


class TestStoppedVersusFailed:
    def _render(self, controller):
        return "\n".join(
            render_domain(
                controller.cache[Domain.CONVOYS],
                services_stopped=controller.services_stopped,
                is_active=False,
                width=60,
                max_lines=8,
            )
        ).lower()

    def test_stopped_town_reads_stale(self, controller):
        loaded(controller, make_snapshot(convoys=[Convoy(id="cv-1", title="Ship")]))
        loaded(
            controller,
            make_snapshot(errors=[make_error("convoys")], ops=OperationalState(watchdog_healthy=False)),
        )

        text = self._render(controller)
        assert controller.services_stopped
        assert "stale" in text
        assert "error" not in text
        assert "ship" in text

    def test_running_town_reads_failed(self, controller):
        loaded(controller, make_snapshot(convoys=[Convoy(id="cv-1", title="Ship")]))
        loaded(controller, make_snapshot(errors=[make_error("convoys")]))

        text = self._render(controller)
        assert not controller.services_stopped
        assert "error" in text
        assert "ship" in text


class TestActionKeys:
    def test_boot_needs_a_rig(self, controller):
        loaded(controller, make_snapshot(rigs=[]))
        changed, commands = controller.handle_key("b")
        assert changed
        assert tasks(commands) == []
        assert controller.status.is_error
        assert controller.status.text == "No rig selected. Use j/k to select a rig."

    def test_boot_runs_at_once(self, controller, execute):
        loaded(controller, make_snapshot())
        [task] = tasks(press(controller, "b"))
        assert task.name == "boot_rig"

        done = task.run()
        execute.assert_called_once_with(ActionType.BOOT_RIG, "perch", timeout=1.0)

        commands = controller.update(done)
        assert controller.footer_text() == "Boot completed for perch"
        assert task_names(commands) == ["refresh"]
        assert StatusExpired(controller.status.seq) in [c.message for c in commands if isinstance(c, Timer)]

    def test_failed_action_does_not_refresh(self, controller):
        loaded(controller, make_snapshot())
        commands = controller.update(ActionDone(ActionType.BOOT_RIG, "perch", error="boom"))
        assert tasks(commands) == []
        assert controller.footer_text() == "Boot failed: boom"

    def test_delete_asks_first(self, controller, execute):
        loaded(controller, make_snapshot())
        assert tasks(press(controller, "d")) == []
        assert controller.footer_text() == "Delete perch? (y/n)"

        # Anything but y/n is ignored while the prompt is up
        assert controller.handle_key("j") == (False, [])
        execute.assert_not_called()

        [task] = tasks(press(controller, "y"))
        assert task.name == "delete_rig"
        task.run()
        execute.assert_called_once_with(ActionType.DELETE_RIG, "perch", timeout=1.0)

    def test_delete_declined(self, controller, execute):
        loaded(controller, make_snapshot())
        press(controller, "d", "n")
        assert controller.dispatcher.pending is None
        assert controller.footer_text() == "Action cancelled"
        execute.assert_not_called()

    def test_stop_agent_needs_agents_section(self, controller):
        loaded(controller, make_snapshot())
        press(controller, "x")
        assert controller.status.text == "No agent selected. Use j/k to select an agent."

    def test_stop_agent(self, controller):
        loaded(controller, make_snapshot(rigs=[make_rig("perch", agents=[make_agent("perch/polecats/joe")])]))
        press(controller, "4", "x")
        assert controller.footer_text() == "Stop agent perch/polecats/joe? (y/n)"

    def test_mq_retry_and_nudge(self, controller):
        mr = make_mr("mr-1", worker="joe", branch="feature/x", has_conflicts=True)
        loaded(controller, make_snapshot(merge_queues={"perch": [mr]}))
        press(controller, "3")

        [retry] = tasks(press(controller, "r"))
        assert retry.name == "mq_retry"

        [nudge] = tasks(press(controller, "n"))
        assert nudge.name == "nudge_polecat"
        nudge.run()
        controller.dispatcher.execute.assert_called_with(
            ActionType.NUDGE_POLECAT, "perch", "joe", "feature/x", "conflict", timeout=1.0
        )

    def test_mq_nudge_without_worker(self, controller):
        loaded(controller, make_snapshot(merge_queues={"perch": [make_mr("mr-1")]}))
        press(controller, "3", "n")
        assert controller.status.text == "Selected MR has no worker to nudge."

    def test_operator_restart_targets_subsystem(self, controller):
        loaded(controller, make_snapshot())
        controller.nav.jump(Section.OPERATOR.value)
        press(controller, "r")
        assert controller.footer_text() == "Restart deacon deacon? (y/n)"

    def test_operator_row_without_agent(self, controller):
        loaded(controller, make_snapshot())
        controller.nav.jump(Section.OPERATOR.value)
        press(controller, "j")  # beads_sync
        press(controller, "b")
        assert controller.status.text == "Select the deacon, a witness or a refinery to control."

    def test_refresh_key(self, controller):
        loaded(controller, make_snapshot())
        commands = press(controller, "r")
        assert controller.footer_text() == "Refreshing..."
        assert task_names(commands) == ["refresh"]

    def test_toggle_plugin_outside_plugins(self, controller):
        loaded(controller, make_snapshot())
        press(controller, "space")
        assert controller.status.text.startswith("No plugin selected.")

    def test_export_captures_state_at_key_press(self, controller, config, execute):
        loaded(controller, make_snapshot(errors=[make_error("mail")]))
        [task] = tasks(press(controller, "D"))

        # A refresh landing before the worker runs must not change the export
        loaded(controller, make_snapshot())
        task.run()

        action, path, payload = execute.call_args[0]
        assert action is ActionType.EXPORT_SNAPSHOT
        assert path == str(config.snapshot_export_path)
        assert execute.call_args[1] == {"timeout": 1.0}
        assert json.loads(payload)["stale"]["mail"] is True

    def test_unknown_key(self, controller):
        assert controller.handle_key("F12") == (False, [])


class TestInput:
    def test_add_rig_requires_name(self, controller):
        press(controller, "a")
        assert controller.input_request.title == "Add rig"

        commands = controller.submit_input(["  ", "git@host:wren.git", ""])
        assert tasks(commands) == []
        assert controller.input_request is None
        assert controller.status.text == "Name is required"

    def test_add_rig_optional_prefix(self, controller, execute):
        press(controller, "a")
        [task] = tasks(controller.submit_input(["wren", "git@host:wren.git", ""]))
        task.run()
        execute.assert_called_once_with(ActionType.ADD_RIG, "wren", "git@host:wren.git", "", timeout=2.0)

    def test_new_bead_uses_create_timeout(self, controller, execute):
        press(controller, "N")
        [task] = tasks(controller.submit_input(["Fix login", ""]))
        task.run()
        execute.assert_called_once_with(ActionType.CREATE_BEAD, "Fix login", "", timeout=1.5)

    def test_edit_bead_prefills_fields(self, controller, execute):
        loaded(controller, make_snapshot(issues=[Issue(id="pe-1", title="Fix", issue_type="bug", priority=1)]))
        controller.nav.jump(Section.BEADS.value)
        press(controller, "b")

        request = controller.input_request
        assert request.title == "Edit pe-1"
        assert request.defaults == ("Fix", "", "bug", "1")

        [task] = tasks(controller.submit_input(["Fix login", "", "bug", "0"]))
        assert task.name == "update_bead"
        task.run()
        execute.assert_called_once_with(ActionType.UPDATE_BEAD, "pe-1", "Fix login", "", "bug", "0", timeout=1.5)

    def test_edit_town_bead_asks_first(self, controller, execute):
        loaded(controller, make_snapshot(issues=[Issue(id="hq-1", title="Roadmap")]))
        controller.nav.jump(Section.BEADS.value)
        press(controller, "t", "b")

        assert tasks(controller.submit_input(["Roadmap", "", "", "2"])) == []
        assert controller.footer_text() == "Edit town-level bead hq-1? This affects all rigs. (y/n)"

        [task] = tasks(press(controller, "y"))
        assert task.name == "update_bead"
        execute.assert_not_called()

    def test_create_work_defaults_to_selected_rig(self, controller, execute):
        loaded(controller, make_snapshot())
        press(controller, "w")
        assert controller.input_request.defaults == ("", "", "perch", "")

        [task] = tasks(controller.submit_input(["Fix", "", "perch", ""]))
        assert task.name == "create_work"
        task.run()
        execute.assert_called_once_with(ActionType.CREATE_WORK, "Fix", "", "perch", "", timeout=1.5)

    def test_cancel(self, controller):
        press(controller, "a")
        controller.cancel_input()
        assert controller.input_request is None
        assert controller.footer_text() == "Action cancelled"

    def test_submit_without_request(self, controller):
        assert controller.submit_input(["x"]) == []

    def test_sling_defaults_to_selected_agent(self, controller):
        snap = make_snapshot(
            rigs=[make_rig("perch", agents=[make_agent("perch/polecats/joe")])],
            issues=[Issue(id="pe-1")],
        )
        loaded(controller, snap)
        press(controller, "4")
        controller.nav.jump(Section.BEADS.value)
        press(controller, "g")
        assert controller.input_request.defaults == ("perch/polecats/joe",)
        [task] = tasks(controller.submit_input(["perch/polecats/joe"]))
        assert task.name == "sling_work"

    def test_mail_agent(self, controller, execute):
        loaded(controller, make_snapshot(rigs=[make_rig("perch", agents=[make_agent("perch/polecats/joe")])]))
        press(controller, "4", "m")
        assert controller.input_request.fields == ("Subject", "Message")
        [task] = tasks(controller.submit_input(["Hi", "Please check in"]))
        task.run()
        execute.assert_called_once_with(
            ActionType.MAIL_AGENT, "perch/polecats/joe", "Hi", "Please check in", timeout=1.0
        )

    def test_mark_mail_read(self, controller):
        loaded(controller, make_snapshot(mail=[MailMessage(id="m-1", sender="mayor/", subject="hi")]))
        [task] = tasks(press(controller, "5", "m"))
        assert task.name == "mark_mail_read"


class TestNudgeMenu:
    @pytest.fixture
    def on_agent(self, controller):
        loaded(controller, make_snapshot(rigs=[make_rig("perch", agents=[make_agent("perch/polecats/joe")])]))
        press(controller, "4", "n")
        assert controller.nudge_target == "perch/polecats/joe"
        return controller

    def test_preset(self, on_agent, execute):
        [task] = tasks(on_agent.choose_nudge(0))
        task.run()
        execute.assert_called_once_with(
            ActionType.PRESET_NUDGE,
            "perch/polecats/joe",
            "Check your mail and respond to any pending items.",
            timeout=1.0,
        )
        assert on_agent.nudge_target is None

    def test_custom_asks_for_text(self, on_agent, execute):
        assert on_agent.choose_nudge(4) == []
        assert on_agent.input_request.title == "Nudge perch/polecats/joe"
        [task] = tasks(on_agent.submit_input(["hello"]))
        task.run()
        execute.assert_called_once_with(ActionType.PRESET_NUDGE, "perch/polecats/joe", "hello", timeout=1.0)

    def test_out_of_range(self, on_agent):
        assert on_agent.choose_nudge(17) == []
        assert on_agent.nudge_target is None


class TestHelp:
    def test_help_swallows_keys(self, controller):
        press(controller, "?")
        assert controller.show_help
        assert controller.handle_key("b") == (False, [])
        assert controller.handle_key("escape") == (True, [])
        assert not controller.show_help

    def test_help_lists_quit(self):
        assert ("q", "quit") in HELP_LINES


class TestDetailLoads:
    def _with_agents(self, controller, *names):
        rig = make_rig("perch", agents=[make_agent(f"perch/{n}") for n in names])
        loaded(controller, make_snapshot(rigs=[rig]))

    def test_audit_timeline_on_agent(self, controller, loader, config):
        self._with_agents(controller, "joe", "ann")
        [task] = tasks(press(controller, "4"))
        assert task.name == "audit_timeline"
        assert controller.audit_loading

        entries = [AuditEntry(timestamp=NOW, actor="perch/joe", action="sling")]
        loader.load_audit_timeline.return_value = entries
        msg = task.run()
        loader.load_audit_timeline.assert_called_once_with("perch/joe", config.audit_limit)

        controller.update(msg)
        assert controller.audit_entries == entries
        assert not controller.audit_loading

    def test_stale_audit_result_is_dropped(self, controller):
        self._with_agents(controller, "joe", "ann")
        press(controller, "4", "j")
        assert controller.audit_actor == "perch/ann"

        controller.update(AuditTimelineLoaded("perch/joe", [AuditEntry(timestamp=NOW)]))
        assert controller.audit_entries == []
        assert controller.audit_loading

    def test_audit_failure_shows_empty(self, controller, loader):
        self._with_agents(controller, "joe")
        [task] = tasks(press(controller, "4"))
        loader.load_audit_timeline.side_effect = CommandError("gt audit: exit status 1")
        controller.update(task.run())
        assert controller.audit_entries == []
        assert not controller.audit_loading

    def test_same_agent_not_reloaded(self, controller):
        self._with_agents(controller, "joe")
        press(controller, "4")
        assert tasks(loaded(controller, make_snapshot(rigs=[make_rig("perch", agents=[make_agent("perch/joe")])]))) == []

    def test_bead_details(self, controller, loader):
        loaded(controller, make_snapshot(issues=[Issue(id="pe-1"), Issue(id="pe-2")]))
        controller.nav.jump(Section.BEADS.value)
        commands = press(controller, "j")
        assert task_names(commands) == ["bead_dependencies", "bead_comments"]
        assert controller.bead_id == "pe-2"

        deps = IssueDependencies(issue_id="pe-2")
        loader.load_issue_dependencies.return_value = deps
        loader.load_issue_comments.return_value = [Comment(id="1", text="lgtm")]
        for task in tasks(commands):
            controller.update(task.run())

        assert controller.bead_dependencies is deps
        assert [c.text for c in controller.bead_comments] == ["lgtm"]

    def test_stale_bead_results_are_dropped(self, controller):
        controller.bead_id = "pe-2"
        controller.update(BeadDependenciesLoaded("pe-1", IssueDependencies(issue_id="pe-1")))
        controller.update(BeadCommentsLoaded("pe-1", [Comment(id="1")]))
        assert controller.bead_dependencies is None
        assert controller.bead_comments == []

    def test_rig_settings(self, controller, loader):
        loaded(controller, make_snapshot())
        [task] = tasks(press(controller, "e"))
        assert controller.settings_rig == "perch"

        loader.load_rig_settings.side_effect = CommandError("parsing settings: bad json")
        commands = controller.update(task.run())
        assert controller.rig_settings is None
        assert controller.status.text == "Load settings failed: parsing settings: bad json"
        assert any(isinstance(c, Timer) for c in commands)

    def test_rig_settings_crash_is_reported(self, controller, loader):
        loaded(controller, make_snapshot())
        [task] = tasks(press(controller, "e"))
        loader.load_rig_settings.side_effect = AttributeError("'list' object has no attribute 'get'")

        msg = task.run()
        assert msg == RigSettingsLoaded("perch", error="AttributeError: 'list' object has no attribute 'get'")

        controller.update(msg)
        assert controller.status.is_error
        assert controller.status.text.startswith("Load settings failed: AttributeError: ")

    def test_dependency_crash_is_reported(self, controller, loader):
        loaded(controller, make_snapshot(issues=[Issue(id="pe-1"), Issue(id="pe-2")]))
        controller.nav.jump(Section.BEADS.value)
        commands = press(controller, "j")

        loader.load_issue_dependencies.side_effect = ValueError("invalid literal for int()")
        loader.load_issue_comments.return_value = []
        for task in tasks(commands):
            controller.update(task.run())

        assert controller.bead_dependencies is None
        assert controller.bead_dependencies_error == "ValueError: invalid literal for int()"
        assert controller.bead_comments_error is None

    def test_settings_for_other_rig_ignored(self, controller):
        controller.settings_rig = "perch"
        assert controller.update(RigSettingsLoaded("wren", error="nope")) == []
        assert controller.status is None


class TestViewQueries:
    def test_hud(self, controller):
        snap = make_snapshot(merge_queues={"perch": [make_mr("mr-1")]})
        snap.town.overseer.unread_mail = 2
        loaded(controller, snap)
        hud = controller.hud_text()
        assert hud.startswith("gt | 1 rigs  2 agents  1 MRs  2 unread | updated ")
        assert "errors" not in hud

    def test_hud_while_refreshing(self, controller):
        controller.start()
        assert "refreshing" in controller.hud_text()

    def test_footer_default(self, controller):
        assert "?: help" in controller.footer_text()

    def test_status_expiry(self, controller):
        loaded(controller, make_snapshot(rigs=[]))
        _, commands = controller.handle_key("b")
        [timer] = commands
        assert timer.delay == 5
        controller.update(timer.message)
        assert controller.status is None

    def test_expired_timer_for_old_status(self, controller):
        first = controller.dispatcher.set_status("one")
        controller.dispatcher.set_status("two")
        controller.update(StatusExpired(first.seq))
        assert controller.footer_text() == "two"

    def test_export_payload(self, controller):
        loaded(controller, make_snapshot(errors=[make_error("mail")]))
        payload = controller.export_payload()
        assert payload["stale"]["mail"] is True
        assert payload["stale"]["convoys"] is False
        assert payload["snapshot"]["town"]["name"] == "gt"
