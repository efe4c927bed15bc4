"""perch dashboard: Textual TUI app.

Launch with: python -m perch.dashboard
"""

from __future__ import annotations

import logging
from typing import Any

from textual import events, work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal
from textual.css.query import NoMatches
from textual.widgets import Static

from ..actions import ActionRunner
from ..config import DashboardConfig
from ..controller import Command, Controller, RefreshDone, Task, Timer
from ..loader import Loader
from .widgets.details import DetailsPane
from .widgets.dialogs import HelpScreen, InputModal, NudgeMenu
from .widgets.sidebar import Sidebar

logger = logging.getLogger(__name__)


def normalize_key(event: events.Key) -> str:
    """The name the controller's key map uses for this press."""
    if event.character and event.character.isprintable() and event.character != " ":
        return event.character
    return event.key


class PerchDashboard(App):
    """Gas Town fleet dashboard.

    Every section is stacked in the sidebar; the details pane follows the
    selection. All state lives in the Controller: this class only runs its
    commands and draws what it reports.
    """

    TITLE = "perch"

    CSS = """
    #hud { height: 1; background: $primary-background; padding: 0 1; }
    #body { height: 1fr; }
    #status { height: 1; padding: 0 1; }
    #status.error { color: $error; }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit", show=True),
        Binding("ctrl+c", "quit", "Quit", show=False),
        Binding("tab", "key('tab')", "Next section", show=False, priority=True),
        Binding("shift+tab", "key('shift+tab')", "Previous section", show=False, priority=True),
    ]

    def __init__(self, config: DashboardConfig, **kwargs: object) -> None:
        super().__init__(**kwargs)
        self._config = config
        loader = Loader(
            config.town_root,
            timeout=config.timeouts.default,
            lifecycle_limit=config.lifecycle_limit,
        )
        self._actions = ActionRunner(config.town_root)
        self.controller = Controller(config, loader, self._actions.execute)

    def compose(self) -> ComposeResult:
        yield Static("", id="hud", markup=False)
        with Horizontal(id="body"):
            yield Sidebar(id="sidebar")
            yield DetailsPane(id="details")
        yield Static("", id="status", markup=False)

    def on_mount(self) -> None:
        self._run_commands(self.controller.start())

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    def _run_commands(self, commands: list[Command]) -> None:
        for command in commands:
            if isinstance(command, Task):
                self._run_task(command)
            elif isinstance(command, Timer):
                self.set_timer(command.delay, lambda m=command.message: self._deliver(m))
        self._redraw()

    @work(thread=True)
    def _run_task(self, task: Task) -> None:
        try:
            msg = task.run()
        except Exception as exc:
            logger.exception("Task %s crashed", task.name)
            if task.name != "refresh":
                return
            # The controller must hear back or it stays refreshing forever
            msg = RefreshDone(None, str(exc))
        self.call_from_thread(self._deliver, msg)

    def _deliver(self, msg: Any) -> None:
        self._run_commands(self.controller.update(msg))

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def check_action(self, action: str, parameters: tuple[object, ...]) -> bool | None:
        if action == "key" and len(self.screen_stack) > 1:
            # Let modal inputs keep tab for focus movement
            return False
        return True

    def action_key(self, key: str) -> None:
        self._handle_key(key)

    def on_key(self, event: events.Key) -> None:
        if len(self.screen_stack) > 1:
            return
        if self._handle_key(normalize_key(event)):
            event.stop()

    def _handle_key(self, key: str) -> bool:
        changed, commands = self.controller.handle_key(key)
        if changed or commands:
            self._run_commands(commands)
        self._open_dialogs()
        return changed or bool(commands)

    def _open_dialogs(self) -> None:
        controller = self.controller
        if len(self.screen_stack) > 1:
            return
        if controller.input_request is not None:
            self.push_screen(InputModal(controller.input_request), self._on_input_closed)
        elif controller.nudge_target is not None:
            self.push_screen(NudgeMenu(controller.nudge_target), self._on_nudge_closed)
        elif controller.show_help:
            self.push_screen(HelpScreen(), self._on_help_closed)

    def _on_input_closed(self, values: list[str] | None) -> None:
        if values is None:
            self._run_commands(self.controller.cancel_input())
        else:
            self._run_commands(self.controller.submit_input(values))
        self.call_later(self._open_dialogs)

    def _on_nudge_closed(self, index: int | None) -> None:
        if index is None:
            self._run_commands(self.controller.cancel_input())
        else:
            self._run_commands(self.controller.choose_nudge(index))
        # A custom nudge leads straight into a text prompt
        self.call_later(self._open_dialogs)

    def _on_help_closed(self, _result: object = None) -> None:
        self.controller.show_help = False
        self._redraw()

    # ------------------------------------------------------------------
    # Drawing
    # ------------------------------------------------------------------

    def _redraw(self) -> None:
        controller = self.controller
        try:
            self.query_one("#hud", Static).update(controller.hud_text())
            self.query_one("#sidebar", Sidebar).show(controller)
            self.query_one("#details", DetailsPane).show(controller)
            status = self.query_one("#status", Static)
        except NoMatches:
            # Widgets are not mounted yet, or already torn down
            logger.debug("Skipping redraw", exc_info=True)
            return
        status.update(controller.footer_text())
        is_error = controller.status is not None and controller.status.is_error
        status.set_class(is_error and controller.dispatcher.prompt is None, "error")
