"""Sidebar widget: every section stacked, the active one given the most room."""

from __future__ import annotations

from textual.widgets import Static

from ...cache import render_domain, render_items
from ...controller import Controller
from ...navigation import SECTIONS, Section

# Lines each inactive section may use (header excluded)
INACTIVE_SECTION_LINES = 2


def render_sidebar(controller: Controller, width: int, height: int) -> list[str]:
    """Plain sidebar lines for the controller's current state."""
    nav = controller.nav
    inactive_total = (len(SECTIONS) - 1) * (INACTIVE_SECTION_LINES + 1)
    active_lines = max(3, height - inactive_total - 1)

    lines: list[str] = []
    for section in SECTIONS:
        is_active = section is nav.section
        budget = active_lines if is_active else INACTIVE_SECTION_LINES
        marker = "▸" if is_active else " "
        lines.append(f"{marker}{section.value} {nav.section_title(section)}")
        body = _section_body(controller, section, is_active, width - 2, budget)
        lines.extend("  " + line for line in body)
    return lines


def _section_body(controller: Controller, section: Section, is_active: bool, width: int, budget: int) -> list[str]:
    nav = controller.nav
    items = nav.items_for(section)
    selection = nav.selection if is_active else 0

    domain = nav.domain_for(section)
    if domain is not None:
        return render_domain(
            controller.cache[domain],
            services_stopped=controller.services_stopped,
            is_active=is_active,
            width=width,
            max_lines=budget,
            items=items,
            selection=selection,
            unread_count=controller.cache.mail_unread_count,
        )

    if controller.snapshot is None:
        return ["Loading..."]
    if not items:
        return ["(no alerts)" if section is Section.ALERTS else "(no subsystems)"]
    return render_items(items, selection, is_active, width, budget)


class Sidebar(Static):
    DEFAULT_CSS = """
    Sidebar {
        width: 48;
        height: 100%;
        border: round $primary;
        padding: 0 1;
    }
    """

    def __init__(self, **kwargs: object) -> None:
        super().__init__("", markup=False, **kwargs)

    def show(self, controller: Controller) -> None:
        width = max(10, self.size.width - 4)
        height = max(len(SECTIONS) * 3, self.size.height - 2)
        self.update("\n".join(render_sidebar(controller, width, height)))
