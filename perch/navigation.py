"""Sidebar navigation: active section, selection index, and derived selections."""

from __future__ import annotations

from enum import Enum
from typing import Any

from .cache import Domain, SnapshotCache
from .items import AgentItem, AlertItem, BeadItem, ConvoyItem, MergeRequestItem, PluginItem, RigItem, SubsystemItem
from .models import is_town_bead


class Section(Enum):
    IDENTITY = 0
    RIGS = 1
    CONVOYS = 2
    MERGE_QUEUE = 3
    AGENTS = 4
    MAIL = 5
    LIFECYCLE = 6
    WORKTREES = 7
    PLUGINS = 8
    ALERTS = 9
    BEADS = 10
    OPERATOR = 11

    # Display alias; Enum makes it the same member as ALERTS
    ERRORS = 9

    @property
    def title(self) -> str:
        return _SECTION_TITLES[self]


_SECTION_TITLES = {
    Section.IDENTITY: "Identity",
    Section.RIGS: "Rigs",
    Section.CONVOYS: "Convoys",
    Section.MERGE_QUEUE: "Merge Queue",
    Section.AGENTS: "Agents",
    Section.MAIL: "Mail",
    Section.LIFECYCLE: "Lifecycle",
    Section.WORKTREES: "Worktrees",
    Section.PLUGINS: "Plugins",
    Section.ALERTS: "Alerts",
    Section.BEADS: "Beads",
    Section.OPERATOR: "Operator",
}

SECTIONS: list[Section] = list(Section)

# Sections whose items come straight from one domain cache
SECTION_DOMAINS: dict[Section, Domain] = {
    Section.IDENTITY: Domain.IDENTITY,
    Section.RIGS: Domain.RIGS,
    Section.MERGE_QUEUE: Domain.MERGE_QUEUE,
    Section.AGENTS: Domain.AGENTS,
    Section.MAIL: Domain.MAIL,
    Section.LIFECYCLE: Domain.LIFECYCLE,
    Section.WORKTREES: Domain.WORKTREES,
    Section.PLUGINS: Domain.PLUGINS,
    Section.BEADS: Domain.BEADS,
}

class BeadsScope(Enum):
    RIG = "rig"
    TOWN = "town"


class NavigationState:
    """Where the cursor is, and what that means for actions.

    ``selection`` always indexes into ``current_items()``; ``clamp_selection``
    restores that after any list changes. The ``selected_*`` attributes are
    what actions target and are recomputed by ``resync``.
    """

    def __init__(self, cache: SnapshotCache):
        self.cache = cache
        self.section = Section.IDENTITY
        self.selection = 0

        self.show_convoy_history = False
        self.beads_scope = BeadsScope.RIG
        self.mail_unread_only = False

        # Derived each refresh, not cached per domain
        self.alerts: list[AlertItem] = []
        self.subsystems: list[SubsystemItem] = []

        self.selected_rig: str | None = None
        self.selected_agent: str | None = None
        self.selected_bead: str | None = None
        self.selected_plugin: str | None = None
        self.selected_convoy: str | None = None

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def convoy_domain(self) -> Domain:
        return Domain.CLOSED_CONVOYS if self.show_convoy_history else Domain.CONVOYS

    def domain_for(self, section: Section) -> Domain | None:
        if section is Section.CONVOYS:
            return self.convoy_domain()
        return SECTION_DOMAINS.get(section)

    def items_for(self, section: Section) -> list[Any]:
        if section is Section.ALERTS:
            return list(self.alerts)
        if section is Section.OPERATOR:
            return list(self.subsystems)

        domain = self.domain_for(section)
        items = list(self.cache[domain].items)
        if section is Section.BEADS:
            town = self.beads_scope is BeadsScope.TOWN
            items = [i for i in items if is_town_bead(i.id) == town]
        elif section is Section.MAIL and self.mail_unread_only:
            items = [i for i in items if not i.message.read]
        return items

    def current_items(self) -> list[Any]:
        return self.items_for(self.section)

    def selected_item(self) -> Any | None:
        items = self.current_items()
        if 0 <= self.selection < len(items):
            return items[self.selection]
        return None

    # ------------------------------------------------------------------
    # Movement
    # ------------------------------------------------------------------

    def next_section(self) -> None:
        self.section = SECTIONS[(self.section.value + 1) % len(SECTIONS)]
        self.selection = 0
        self.resync()

    def prev_section(self) -> None:
        self.section = SECTIONS[(self.section.value - 1) % len(SECTIONS)]
        self.selection = 0
        self.resync()

    def jump(self, index: int) -> bool:
        """Go straight to the section with this index; False if there is none."""
        if not 0 <= index < len(SECTIONS):
            return False
        self.section = SECTIONS[index]
        self.selection = 0
        self.resync()
        return True

    def select_next(self) -> None:
        count = len(self.current_items())
        if count:
            self.selection = (self.selection + 1) % count
            self.resync()

    def select_prev(self) -> None:
        count = len(self.current_items())
        if count:
            self.selection = (self.selection - 1) % count
            self.resync()

    def clamp_selection(self) -> None:
        count = len(self.current_items())
        if self.selection >= count:
            self.selection = count - 1
        if self.selection < 0:
            self.selection = 0

    # ------------------------------------------------------------------
    # Toggles
    # ------------------------------------------------------------------

    def toggle_convoy_history(self) -> None:
        self.show_convoy_history = not self.show_convoy_history
        self._after_filter_change()

    def toggle_beads_scope(self) -> None:
        self.beads_scope = BeadsScope.TOWN if self.beads_scope is BeadsScope.RIG else BeadsScope.RIG
        self._after_filter_change()

    def toggle_mail_unread_only(self) -> None:
        self.mail_unread_only = not self.mail_unread_only
        self._after_filter_change()

    def _after_filter_change(self) -> None:
        self.selection = 0
        self.clamp_selection()
        self.resync()

    # ------------------------------------------------------------------
    # Derived selections
    # ------------------------------------------------------------------

    def resync(self) -> None:
        """Recompute the selected rig, agent, bead, plugin and convoy.

        The item under the cursor wins. Otherwise a previous choice is kept
        only while it still exists; a vanished rig falls back to the first rig.
        """
        item = self.selected_item()

        rig_ids = [i.id for i in self.cache[Domain.RIGS].items]
        if isinstance(item, RigItem):
            self.selected_rig = item.id
        elif isinstance(item, MergeRequestItem):
            self.selected_rig = item.rig
        elif self.selected_rig not in rig_ids:
            self.selected_rig = rig_ids[0] if rig_ids else None

        self.selected_agent = self._keep(item, AgentItem, self.selected_agent, Domain.AGENTS)
        self.selected_bead = self._keep(item, BeadItem, self.selected_bead, Domain.BEADS)
        self.selected_plugin = self._keep(item, PluginItem, self.selected_plugin, Domain.PLUGINS)
        self.selected_convoy = self._keep(item, ConvoyItem, self.selected_convoy, self.convoy_domain())

    def _keep(self, item: Any, kind: type, current: str | None, domain: Domain) -> str | None:
        if isinstance(item, kind):
            return item.id
        if current is None:
            return None
        if any(i.id == current for i in self.cache[domain].items):
            return current
        return None

    # ------------------------------------------------------------------
    # Display helpers
    # ------------------------------------------------------------------

    def section_title(self, section: Section) -> str:
        title = section.title
        if section is Section.CONVOYS:
            return f"{title} [{'H' if self.show_convoy_history else 'A'}]"
        if section is Section.BEADS:
            scope = "T" if self.beads_scope is BeadsScope.TOWN else "R"
            return f"{title} [{scope}] ({len(self.items_for(section))})"
        if section is Section.ALERTS and self.alerts:
            return f"{title} ({len(self.alerts)})"
        if section is Section.MAIL:
            unread = sum(1 for i in self.cache[Domain.MAIL].items if not i.message.read)
            suffix = " [unread]" if self.mail_unread_only else ""
            return f"{title} ({unread}){suffix}" if unread else f"{title}{suffix}"
        return title
