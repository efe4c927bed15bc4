"""Tests for perch.models: CLI JSON parsing and snapshot helpers."""

from datetime import datetime, timezone

from perch.models import (
    Hook,
    Issue,
    MailMessage,
    MergeRequest,
    TownStatus,
    parse_time,
)
from tests.fixtures.snapshots import make_agent, make_error, make_rig, make_snapshot


class TestParseTime:
    def test_z_suffix(self):
        assert parse_time("2026-01-02T07:09:03Z") == datetime(2026, 1, 2, 7, 9, 3, tzinfo=timezone.utc)

    def test_naive_assumed_utc(self):
        assert parse_time("2026-01-02T07:09:03").tzinfo == timezone.utc

    def test_go_zero_time_is_none(self):
        assert parse_time("0001-01-01T00:00:00Z") is None

    def test_garbage_is_none(self):
        assert parse_time("yesterday") is None
        assert parse_time("") is None
        assert parse_time(None) is None


class TestFromDict:
    def test_town_status(self):
        town = TownStatus.from_dict(
            {
                "name": "gt",
                "overseer": {"name": "Ada", "unread_mail": 3},
                "agents": [{"name": "deacon", "role": "health-check", "running": True}],
                "rigs": [
                    {
                        "name": "perch",
                        "polecat_count": 2,
                        "has_refinery": True,
                        "hooks": [{"agent": "perch/joe", "has_work": True}],
                        "agents": [{"name": "refinery", "address": "perch/refinery", "role": "refinery"}],
                    }
                ],
                "summary": {"rig_count": 1},
            }
        )
        assert town.overseer.unread_mail == 3
        assert town.rigs[0].polecat_count == 2
        assert town.rigs[0].agent_with_role("refinery").address == "perch/refinery"
        assert town.summary.rig_count == 1
        assert [a.name for a in town.all_agents()] == ["deacon", "refinery"]

    def test_missing_and_null_fields(self):
        town = TownStatus.from_dict({"rigs": None, "agents": "nope"})
        assert town.rigs == []
        assert town.agents == []
        mr = MergeRequest.from_dict({"id": "mr-1", "priority": None})
        assert mr.priority == 0
        assert mr.created_at is None

    def test_mail_uses_from_key(self):
        msg = MailMessage.from_dict({"id": "m1", "from": "mayor/", "subject": "hi"})
        assert msg.sender == "mayor/"
        assert msg.read is False

    def test_mr_blocked(self):
        assert MergeRequest(id="a", needs_rebase=True).blocked
        assert MergeRequest(id="b", has_conflicts=True).blocked
        assert not MergeRequest(id="c").blocked


class TestFindError:
    def test_exact_and_namespaced_match(self):
        snap = make_snapshot(errors=[make_error("merge_queue_perch")])
        assert snap.find_error("merge_queue") is not None
        assert snap.find_error("merge_queue_perch") is not None

    def test_no_substring_match(self):
        snap = make_snapshot(errors=[make_error("closed_convoys")])
        assert snap.find_error("convoys") is None
        assert snap.find_error("closed_convoys") is not None

    def test_first_of_several_tags(self):
        snap = make_snapshot(errors=[make_error("agents")])
        assert snap.find_error("town_status", "agents").source == "agents"


class TestEnrichWithHookedBeads:
    def _snapshot(self, hooked, loaded=True):
        joe = make_agent("perch/polecats/joe")
        rig = make_rig("perch", agents=[joe], hooks=[Hook(agent="perch/joe")])
        return make_snapshot(rigs=[rig], hooked_issues=hooked, hooked_loaded=loaded), joe, rig

    def test_hooked_issue_marks_agent_and_hook(self):
        issue = Issue(id="pe-1", title="Fix it", status="hooked", assignee="perch/polecats/joe")
        snap, joe, rig = self._snapshot([issue])
        snap.enrich_with_hooked_beads()
        assert joe.has_work
        assert joe.hooked_bead_id == "pe-1"
        assert joe.first_subject == "Fix it"
        assert rig.hooks[0].has_work
        assert rig.active_hooks == 1
        assert snap.town.summary.active_hooks == 1

    def test_hooks_outside_gt_status_are_counted(self):
        issues = [Issue(id="pe-2", assignee="perch/polecats/ann")]
        snap, joe, rig = self._snapshot(issues)
        snap.enrich_with_hooked_beads()
        assert not joe.has_work
        assert rig.active_hooks == 1

    def test_messages_do_not_count_as_work(self):
        issues = [Issue(id="pe-3", issue_type="message", assignee="perch/polecats/ann")]
        snap, _, rig = self._snapshot(issues)
        snap.enrich_with_hooked_beads()
        assert snap.town.summary.active_hooks == 0
        assert rig.active_hooks == 0

    def test_no_town_is_noop(self):
        snap = make_snapshot(town=False, hooked_issues=[Issue(id="x", assignee="a")])
        snap.enrich_with_hooked_beads()
        assert snap.town is None


class TestSnapshotHelpers:
    def test_rig_names_and_unread(self):
        snap = make_snapshot(
            rigs=[make_rig("a"), make_rig("b")],
            mail=[MailMessage(id="1"), MailMessage(id="2", read=True)],
        )
        assert snap.rig_names() == ["a", "b"]
        assert snap.unread_mail_count() == 1

    def test_to_dict_is_plain(self):
        data = make_snapshot().to_dict()
        assert data["town"]["name"] == "gt"
        assert data["load_errors"] == []
