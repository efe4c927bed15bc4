"""Tests for perch.actions: command lines, handler registry and snapshot export."""

import json
from unittest.mock import MagicMock

import pytest

from perch.actions import (
    DESTRUCTIVE_ACTIONS,
    PRESET_NUDGES,
    ActionRunner,
    ActionType,
    confirmation_prompt,
    get_handler,
    timeout_for,
)
from perch.config import ActionTimeouts
from perch.errors import CommandError


@pytest.fixture
def actions(town_root, mock_runner):
    return ActionRunner(town_root, runner=mock_runner)


def argv(mock_runner):
    return mock_runner.run.call_args[0][0]


class TestCommandLines:
    @pytest.mark.parametrize(
        "action, target, extra, expected",
        [
            (ActionType.BOOT_RIG, "perch", (), ["gt", "rig", "boot", "perch"]),
            (ActionType.SHUTDOWN_RIG, "perch", (), ["gt", "rig", "shutdown", "perch"]),
            (ActionType.DELETE_RIG, "perch", (), ["gt", "rig", "remove", "perch"]),
            (ActionType.STOP_AGENT, "perch/polecats/joe", (), ["gt", "polecat", "nuke", "perch/polecats/joe"]),
            (ActionType.NUDGE_AGENT, "perch/joe", ("wake up",), ["gt", "nudge", "perch/joe", "-m", "wake up"]),
            (ActionType.MAIL_AGENT, "mayor/", ("Hi", "Body"), ["gt", "mail", "send", "mayor/", "-s", "Hi", "-m", "Body"]),
            (ActionType.MARK_MAIL_READ, "m-1", (), ["gt", "mail", "read", "m-1"]),
            (ActionType.CLOSE_BEAD, "pe-1", (), ["bd", "close", "pe-1"]),
            (ActionType.REOPEN_BEAD, "pe-1", (), ["bd", "update", "pe-1", "--status", "open"]),
            (ActionType.ADD_COMMENT, "pe-1", ("lgtm",), ["bd", "comments", "add", "pe-1", "lgtm"]),
            (ActionType.SLING_WORK, "perch", ("pe-1",), ["gt", "sling", "pe-1", "perch"]),
            (ActionType.MQ_RETRY, "perch", ("mr-7",), ["gt", "mq", "retry", "mr-7", "--rig", "perch"]),
            (ActionType.START_DEACON, "", (), ["gt", "deacon", "start"]),
            (ActionType.RESTART_WITNESS, "perch", (), ["gt", "witness", "restart", "perch"]),
        ],
    )
    def test_builds_argv(self, actions, mock_runner, action, target, extra, expected):
        actions.execute(action, target, *extra, timeout=5)
        mock_runner.run.assert_called_once_with(expected, 5)

    def test_nudge_refinery_mails_the_refinery(self, actions, mock_runner):
        actions.execute(ActionType.NUDGE_REFINERY, "perch", timeout=5)
        args = argv(mock_runner)
        assert args[:4] == ["gt", "mail", "send", "perch/refinery"]
        assert "Nudge: Process queue" in args

    def test_add_rig_with_prefix(self, actions, mock_runner):
        actions.execute(ActionType.ADD_RIG, "perch", "git@host:perch.git", "pe", timeout=5)
        assert argv(mock_runner) == ["gt", "rig", "add", "perch", "git@host:perch.git", "--prefix", "pe"]

    def test_add_rig_without_prefix(self, actions, mock_runner):
        actions.execute(ActionType.ADD_RIG, "perch", "git@host:perch.git", "", timeout=5)
        assert argv(mock_runner) == ["gt", "rig", "add", "perch", "git@host:perch.git"]

    def test_create_bead(self, actions, mock_runner):
        actions.execute(ActionType.CREATE_BEAD, "Fix login", "details", timeout=5)
        assert argv(mock_runner) == [
            "bd", "create", "--title", "Fix login", "--type", "task", "--priority", "2",
            "--description", "details",
        ]

    @pytest.mark.parametrize(
        "kind, phrase",
        [("conflict", "Merge conflicts detected"), ("rebase", "needs to be rebased on main")],
    )
    def test_nudge_polecat_message(self, actions, mock_runner, kind, phrase):
        actions.execute(ActionType.NUDGE_POLECAT, "perch", "joe", "feature/x", kind, timeout=5)
        args = argv(mock_runner)
        assert args[:4] == ["gt", "mail", "send", "perch/joe"]
        message = args[args.index("-m") + 1]
        assert "'feature/x'" in message
        assert phrase in message
        assert message.endswith("git fetch origin main && git rebase origin/main")

    def test_errors_propagate(self, actions, mock_runner):
        mock_runner.run.side_effect = CommandError("gt rig boot: exit status 1")
        with pytest.raises(CommandError, match="exit status 1"):
            actions.execute(ActionType.BOOT_RIG, "perch", timeout=5)


class TestTogglePlugin:
    def test_toggles_marker(self, actions, temp_dir, mock_runner):
        plugin = temp_dir / "plugins" / "lint"
        plugin.mkdir(parents=True)

        actions.execute(ActionType.TOGGLE_PLUGIN, str(plugin), timeout=5)
        assert (plugin / ".disabled").exists()

        actions.execute(ActionType.TOGGLE_PLUGIN, str(plugin), timeout=5)
        assert not (plugin / ".disabled").exists()
        mock_runner.run.assert_not_called()

    def test_missing_directory(self, actions, temp_dir):
        with pytest.raises(CommandError, match="toggling plugin"):
            actions.execute(ActionType.TOGGLE_PLUGIN, str(temp_dir / "gone"), timeout=5)


class TestExport:
    def test_writes_given_payload(self, actions, temp_dir, mock_runner):
        path = temp_dir / "out" / "last_snapshot.json"

        actions.execute(ActionType.EXPORT_SNAPSHOT, str(path), json.dumps({"rigs": ["perch"]}), timeout=5)

        data = json.loads(path.read_text())
        assert data["snapshot"] == {"rigs": ["perch"]}
        assert "exported_at" in data
        assert isinstance(data["timestamp"], int)
        mock_runner.run.assert_not_called()

    def test_bad_payload(self, actions, temp_dir):
        with pytest.raises(CommandError, match="bad snapshot payload"):
            actions.execute(ActionType.EXPORT_SNAPSHOT, str(temp_dir / "x.json"), "{not json", timeout=5)

    def test_unwritable_path(self, actions, temp_dir):
        blocker = temp_dir / "file"
        blocker.write_text("")
        with pytest.raises(CommandError, match="writing snapshot file"):
            actions.execute(ActionType.EXPORT_SNAPSHOT, str(blocker / "snap.json"), "null", timeout=5)


class TestBeadEdits:
    def test_update_bead(self, actions, mock_runner):
        actions.execute(ActionType.UPDATE_BEAD, "pe-1", "New title", "", "bug", "1", timeout=5)
        assert argv(mock_runner) == ["bd", "update", "pe-1", "--title", "New title", "--type", "bug", "--priority", "1"]

    def test_update_bead_with_description(self, actions, mock_runner):
        actions.execute(ActionType.UPDATE_BEAD, "pe-1", "T", "more", "", "3", timeout=5)
        assert argv(mock_runner) == ["bd", "update", "pe-1", "--title", "T", "--description", "more", "--priority", "3"]

    @pytest.mark.parametrize("priority", ["P1", "9", "-1"])
    def test_update_bead_rejects_priority(self, actions, mock_runner, priority):
        with pytest.raises(CommandError, match="priority must be a number from 0 to 4"):
            actions.execute(ActionType.UPDATE_BEAD, "pe-1", "T", "", "", priority, timeout=5)
        mock_runner.run.assert_not_called()

    def test_create_work_slings_to_polecat(self, actions, mock_runner):
        mock_runner.run.side_effect = ['{"id": "pe-42", "title": "Fix"}', ""]

        actions.execute(ActionType.CREATE_WORK, "Fix", "details", "perch", "joe", timeout=5)

        create, sling = [c[0][0] for c in mock_runner.run.call_args_list]
        assert create == [
            "bd", "create", "--title", "Fix", "--description", "details",
            "--type", "task", "--priority", "2", "--json",
        ]
        assert sling == ["gt", "sling", "pe-42", "perch/joe"]

    def test_create_work_slings_to_rig(self, actions, mock_runner):
        mock_runner.run.side_effect = ['{"id": "pe-42"}', ""]
        actions.execute(ActionType.CREATE_WORK, "Fix", "", "perch", "", timeout=5)
        assert argv(mock_runner) == ["gt", "sling", "pe-42", "perch"]

    def test_create_work_without_rig_only_creates(self, actions, mock_runner):
        mock_runner.run.return_value = '{"id": "pe-42"}'
        actions.execute(ActionType.CREATE_WORK, "Fix", "", "", "", timeout=5)
        assert mock_runner.run.call_count == 1

    @pytest.mark.parametrize("out, message", [("oops", "parsing bd create output"), ("{}", "no issue id")])
    def test_create_work_bad_output(self, actions, mock_runner, out, message):
        mock_runner.run.return_value = out
        with pytest.raises(CommandError, match=message):
            actions.execute(ActionType.CREATE_WORK, "Fix", "", "perch", "", timeout=5)
        assert mock_runner.run.call_count == 1


class TestRegistry:
    def test_every_action_has_a_handler_and_name(self):
        for action in ActionType:
            assert get_handler(action) is not None, action
            assert action.display_name

    def test_unknown_handler(self, actions, monkeypatch):
        monkeypatch.setattr("perch.actions._HANDLER_REGISTRY", {})
        with pytest.raises(CommandError, match="no handler for boot_rig"):
            actions.execute(ActionType.BOOT_RIG, "perch", timeout=5)

    def test_destructive_set(self):
        for action in (ActionType.DELETE_RIG, ActionType.SHUTDOWN_RIG, ActionType.STOP_AGENT):
            assert action in DESTRUCTIVE_ACTIONS
            assert action.destructive
        assert not ActionType.BOOT_RIG.destructive

    def test_timeouts(self):
        timeouts = ActionTimeouts(default=1, long=9, create=4)
        assert timeout_for(ActionType.ADD_RIG, timeouts) == 9
        assert timeout_for(ActionType.CREATE_BEAD, timeouts) == 4
        assert timeout_for(ActionType.CREATE_WORK, timeouts) == 4
        assert timeout_for(ActionType.UPDATE_BEAD, timeouts) == 4
        assert timeout_for(ActionType.CLOSE_BEAD, timeouts) == 4
        assert timeout_for(ActionType.REOPEN_BEAD, timeouts) == 4
        assert timeout_for(ActionType.ADD_COMMENT, timeouts) == 1
        assert timeout_for(ActionType.BOOT_RIG, timeouts) == 1

    def test_prompt(self):
        assert confirmation_prompt(ActionType.DELETE_RIG, "perch") == "Delete perch? (y/n)"
        assert confirmation_prompt(ActionType.UPDATE_BEAD, "hq-1") == (
            "Edit town-level bead hq-1? This affects all rigs. (y/n)"
        )

    def test_last_preset_asks_for_text(self):
        assert PRESET_NUDGES[-1][1] is None
        assert all(message for _, message in PRESET_NUDGES[:-1])

    def test_default_runner(self, town_root):
        runner = ActionRunner(town_root)
        assert runner.runner.town_root == town_root
        assert not isinstance(runner.runner, MagicMock)
