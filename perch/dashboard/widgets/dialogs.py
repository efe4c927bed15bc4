"""Modal screens: free-text input, the preset nudge menu and key help."""

from __future__ import annotations

from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Container
from textual.screen import ModalScreen
from textual.widgets import Input, Label, OptionList

from ...actions import PRESET_NUDGES
from ...controller import HELP_LINES, InputRequest

_MODAL_CSS = """
{name} {{
    align: center middle;
}}
{name} > Container {{
    width: 70;
    height: auto;
    max-height: 90%;
    border: thick $primary;
    background: $surface;
    padding: 1 2;
}}
{name} .modal-title {{
    text-style: bold;
    margin-bottom: 1;
}}
"""


class InputModal(ModalScreen):
    """Collects one value per field; dismisses with the values or None."""

    DEFAULT_CSS = _MODAL_CSS.format(name="InputModal")

    BINDINGS = [Binding("escape", "cancel", "Cancel", show=True)]

    def __init__(self, request: InputRequest, **kwargs: object) -> None:
        super().__init__(**kwargs)
        self._request = request

    def compose(self) -> ComposeResult:
        request = self._request
        with Container():
            yield Label(f"{request.title}  [Enter to submit, Esc to cancel]", classes="modal-title", markup=False)
            for index, name in enumerate(request.fields):
                default = request.defaults[index] if index < len(request.defaults) else ""
                yield Label(name, markup=False)
                yield Input(value=default, id=f"field-{index}")

    def on_mount(self) -> None:
        self.query_one("#field-0", Input).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        inputs = list(self.query(Input))
        index = inputs.index(event.input)
        if index + 1 < len(inputs):
            inputs[index + 1].focus()
            return
        self.dismiss([i.value for i in inputs])

    def action_cancel(self) -> None:
        self.dismiss(None)


class NudgeMenu(ModalScreen):
    """Preset nudge messages; dismisses with the chosen index or None."""

    DEFAULT_CSS = _MODAL_CSS.format(name="NudgeMenu")

    BINDINGS = [Binding("escape", "cancel", "Cancel", show=True)]

    def __init__(self, target: str, **kwargs: object) -> None:
        super().__init__(**kwargs)
        self._target = target

    def compose(self) -> ComposeResult:
        with Container():
            yield Label(f"Nudge {self._target}", classes="modal-title", markup=False)
            yield OptionList(*(label for label, _ in PRESET_NUDGES), id="nudges")

    def on_mount(self) -> None:
        self.query_one("#nudges", OptionList).focus()

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        self.dismiss(event.option_index)

    def action_cancel(self) -> None:
        self.dismiss(None)


class HelpScreen(ModalScreen):
    DEFAULT_CSS = _MODAL_CSS.format(name="HelpScreen")

    BINDINGS = [
        Binding("escape", "dismiss", "Close", show=True),
        Binding("question_mark", "dismiss", "Close", show=False),
    ]

    def compose(self) -> ComposeResult:
        with Container():
            yield Label("Keys  [Esc to close]", classes="modal-title", markup=False)
            for keys, text in HELP_LINES:
                yield Label(f"{keys:<18}{text}", markup=False)
