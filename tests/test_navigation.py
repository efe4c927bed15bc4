"""Tests for perch.navigation: sections, selection clamping and derived selections."""

import pytest

from perch.cache import SnapshotCache
from perch.models import Convoy, Issue, MailMessage
from perch.navigation import SECTIONS, BeadsScope, NavigationState, Section
from tests.fixtures.snapshots import make_agent, make_mr, make_rig, make_snapshot


def nav_for(snapshot):
    cache = SnapshotCache()
    cache.reconcile(snapshot)
    nav = NavigationState(cache)
    nav.resync()
    return nav


def agents_snapshot(*names):
    return make_snapshot(rigs=[make_rig("perch", agents=[make_agent(f"perch/{n}") for n in names])])


class TestSections:
    def test_twelve_sections_in_order(self):
        assert len(SECTIONS) == 12
        assert SECTIONS[0] is Section.IDENTITY
        assert SECTIONS[9] is Section.ALERTS
        assert Section.ERRORS is Section.ALERTS
        assert SECTIONS[11] is Section.OPERATOR

    def test_next_wraps(self):
        nav = nav_for(make_snapshot())
        nav.section = Section.OPERATOR
        nav.next_section()
        assert nav.section is Section.IDENTITY
        nav.prev_section()
        assert nav.section is Section.OPERATOR

    def test_jump(self):
        nav = nav_for(make_snapshot())
        nav.selection = 3
        assert nav.jump(4)
        assert nav.section is Section.AGENTS
        assert nav.selection == 0

    @pytest.mark.parametrize("index", [-1, 12, 99])
    def test_jump_out_of_range(self, index):
        nav = nav_for(make_snapshot())
        assert not nav.jump(index)
        assert nav.section is Section.IDENTITY


class TestSelection:
    def test_clamp_after_list_shrinks(self):
        cache = SnapshotCache()
        cache.reconcile(agents_snapshot("a", "b", "c"))
        nav = NavigationState(cache)
        nav.jump(Section.AGENTS.value)
        nav.selection = 2

        cache.reconcile(agents_snapshot("a", "b"))
        nav.clamp_selection()

        assert nav.selection == 1
        assert nav.selected_item().id == "perch/b"

    def test_clamp_on_empty_list(self):
        cache = SnapshotCache()
        cache.reconcile(agents_snapshot("a"))
        nav = NavigationState(cache)
        nav.jump(Section.AGENTS.value)
        cache.reconcile(agents_snapshot())
        nav.clamp_selection()
        assert nav.selection == 0
        assert nav.selected_item() is None

    @pytest.mark.parametrize("count", [0, 1, 3, 7])
    def test_selection_always_in_bounds(self, count):
        cache = SnapshotCache()
        cache.reconcile(agents_snapshot(*[f"p{i}" for i in range(8)]))
        nav = NavigationState(cache)
        nav.jump(Section.AGENTS.value)
        nav.selection = 7

        cache.reconcile(agents_snapshot(*[f"p{i}" for i in range(count)]))
        nav.clamp_selection()

        assert nav.selection >= 0
        assert count == 0 or nav.selection < count

    def test_select_wraps(self):
        nav = nav_for(agents_snapshot("a", "b"))
        nav.jump(Section.AGENTS.value)
        nav.select_prev()
        assert nav.selection == 1
        nav.select_next()
        assert nav.selection == 0

    def test_select_on_empty_is_noop(self):
        nav = nav_for(make_snapshot())
        nav.jump(Section.MAIL.value)
        nav.select_next()
        assert nav.selection == 0


class TestResync:
    def test_defaults_to_first_rig(self):
        nav = nav_for(make_snapshot(rigs=[make_rig("perch"), make_rig("wren")]))
        assert nav.selected_rig == "perch"

    def test_cursor_on_rig_wins(self):
        nav = nav_for(make_snapshot(rigs=[make_rig("perch"), make_rig("wren")]))
        nav.jump(Section.RIGS.value)
        nav.select_next()
        assert nav.selected_rig == "wren"

    def test_merge_request_selects_its_rig(self):
        nav = nav_for(
            make_snapshot(rigs=[make_rig("perch"), make_rig("wren")], merge_queues={"wren": [make_mr("mr-1")]})
        )
        nav.jump(Section.MERGE_QUEUE.value)
        assert nav.selected_rig == "wren"

    def test_vanished_rig_falls_back(self):
        cache = SnapshotCache()
        cache.reconcile(make_snapshot(rigs=[make_rig("perch"), make_rig("wren")]))
        nav = NavigationState(cache)
        nav.jump(Section.RIGS.value)
        nav.select_next()
        nav.jump(Section.IDENTITY.value)
        assert nav.selected_rig == "wren"

        cache.reconcile(make_snapshot(rigs=[make_rig("perch")]))
        nav.resync()
        assert nav.selected_rig == "perch"

    def test_selected_agent_kept_while_present(self):
        cache = SnapshotCache()
        cache.reconcile(agents_snapshot("a", "b"))
        nav = NavigationState(cache)
        nav.jump(Section.AGENTS.value)
        nav.select_next()
        nav.jump(Section.MAIL.value)
        assert nav.selected_agent == "perch/b"

        cache.reconcile(agents_snapshot("a"))
        nav.resync()
        assert nav.selected_agent is None


class TestFilters:
    def test_beads_scope(self):
        issues = [Issue(id="hq-1", title="town"), Issue(id="pe-1", title="rig"), Issue(id="pe-2")]
        nav = nav_for(make_snapshot(issues=issues))
        nav.jump(Section.BEADS.value)
        assert [i.id for i in nav.current_items()] == ["pe-1", "pe-2"]
        assert nav.section_title(Section.BEADS) == "Beads [R] (2)"

        nav.toggle_beads_scope()
        assert nav.beads_scope is BeadsScope.TOWN
        assert [i.id for i in nav.current_items()] == ["hq-1"]
        assert nav.section_title(Section.BEADS) == "Beads [T] (1)"
        assert nav.selected_bead == "hq-1"

    def test_mail_unread_filter(self):
        mail = [MailMessage(id="1", read=True), MailMessage(id="2"), MailMessage(id="3")]
        nav = nav_for(make_snapshot(mail=mail))
        nav.jump(Section.MAIL.value)
        nav.selection = 2
        nav.toggle_mail_unread_only()
        assert [i.id for i in nav.current_items()] == ["2", "3"]
        assert nav.selection == 0
        assert nav.section_title(Section.MAIL) == "Mail (2) [unread]"

    def test_convoy_history(self):
        nav = nav_for(make_snapshot(convoys=[Convoy(id="cv-1")], closed_convoys=[Convoy(id="cv-0"), Convoy(id="cv-x")]))
        nav.jump(Section.CONVOYS.value)
        assert nav.section_title(Section.CONVOYS) == "Convoys [A]"
        assert nav.selected_convoy == "cv-1"

        nav.toggle_convoy_history()
        assert nav.section_title(Section.CONVOYS) == "Convoys [H]"
        assert [i.id for i in nav.current_items()] == ["cv-0", "cv-x"]
        assert nav.selected_convoy == "cv-0"

    def test_plain_titles(self):
        nav = nav_for(make_snapshot())
        assert nav.section_title(Section.OPERATOR) == "Operator"
        assert nav.section_title(Section.MAIL) == "Mail"
        assert nav.section_title(Section.ALERTS) == "Alerts"
