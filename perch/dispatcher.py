"""Action dispatch: confirmation gating, bounded execution, outcome messages."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .actions import ActionType, confirmation_prompt, timeout_for
from .config import (
    STATUS_CANCEL_SECONDS,
    STATUS_ERROR_SECONDS,
    STATUS_INFO_SECONDS,
    STATUS_SUCCESS_SECONDS,
    ActionTimeouts,
)
from .errors import CommandTimeout, PerchError
from .models import is_town_bead, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingAction:
    action: ActionType
    target: str
    extra: tuple[str, ...] = ()

    @property
    def requires_confirmation(self) -> bool:
        if self.action is ActionType.UPDATE_BEAD:
            # Town-level beads are shared by every rig
            return is_town_bead(self.target)
        return self.action.destructive


@dataclass(frozen=True)
class StatusMessage:
    text: str
    is_error: bool
    expires_at: datetime
    duration: float
    # Expiry timers carry this; a newer message makes older timers no-ops
    seq: int


@dataclass(frozen=True)
class ActionDone:
    """Outcome of one executed action, delivered back to the controller."""

    action: ActionType
    target: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def call_with_deadline(fn: Callable[[], Any], timeout: float, name: str = "call") -> Any:
    """Run fn on a daemon thread and give up waiting after timeout seconds.

    The worker is abandoned, not killed; subprocess calls under it carry
    their own timeout and wind down on their own. Being a daemon, an
    abandoned worker never holds up interpreter exit.

    Raises:
        CommandTimeout: If fn did not finish in time.
    """
    future: concurrent.futures.Future = concurrent.futures.Future()

    def target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except Exception as e:
            future.set_exception(e)

    threading.Thread(target=target, name=f"perch-{name}", daemon=True).start()
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        raise CommandTimeout(f"{name} timed out after {timeout:g}s", timeout=timeout) from None


class ActionDispatcher:
    """Turns pending actions into bounded calls and their outcomes into messages.

    Args:
        execute: ``execute(action, target, *extra, timeout=...)``; raises on failure.
        timeouts: Per-class deadlines.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        execute: Callable[..., None],
        timeouts: ActionTimeouts | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.execute = execute
        self.timeouts = timeouts or ActionTimeouts()
        self.clock = clock
        self.pending: PendingAction | None = None
        self.status: StatusMessage | None = None
        self._seq = 0

    # ------------------------------------------------------------------
    # Status line
    # ------------------------------------------------------------------

    def set_status(self, text: str, is_error: bool = False, duration: float | None = None) -> StatusMessage:
        if duration is None:
            duration = STATUS_ERROR_SECONDS if is_error else STATUS_INFO_SECONDS
        self._seq += 1
        self.status = StatusMessage(
            text=text,
            is_error=is_error,
            expires_at=self.clock() + timedelta(seconds=duration),
            duration=duration,
            seq=self._seq,
        )
        return self.status

    def expire(self, seq: int) -> bool:
        """Clear the status if it is still the message this timer was for."""
        if self.status is not None and self.status.seq == seq:
            self.status = None
            return True
        return False

    @property
    def prompt(self) -> str | None:
        if self.pending is None:
            return None
        return confirmation_prompt(self.pending.action, self.pending.target)

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------

    def request(self, pending: PendingAction) -> Callable[[], ActionDone] | None:
        """Start an action, or park it until the operator confirms.

        Returns:
            The work to run in the background, or None when waiting for y/n.
        """
        if pending.requires_confirmation:
            self.pending = pending
            return None
        return self._work(pending)

    def confirm(self) -> Callable[[], ActionDone] | None:
        pending, self.pending = self.pending, None
        if pending is None:
            return None
        return self._work(pending)

    def cancel(self) -> StatusMessage:
        self.pending = None
        return self.set_status("Action cancelled", duration=STATUS_CANCEL_SECONDS)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _work(self, pending: PendingAction) -> Callable[[], ActionDone]:
        return lambda: self.run(pending)

    def run(self, pending: PendingAction) -> ActionDone:
        """Execute under the action's deadline. Never raises."""
        timeout = timeout_for(pending.action, self.timeouts)

        def call() -> None:
            self.execute(pending.action, pending.target, *pending.extra, timeout=timeout)

        try:
            call_with_deadline(call, timeout, pending.action.display_name)
        except (PerchError, OSError) as e:
            return ActionDone(pending.action, pending.target, error=str(e))
        except Exception as e:
            logger.exception("%s crashed for %s", pending.action.value, pending.target)
            return ActionDone(pending.action, pending.target, error=str(e) or type(e).__name__)
        return ActionDone(pending.action, pending.target)

    def complete(self, done: ActionDone) -> tuple[StatusMessage, bool]:
        """Report an outcome.

        Returns:
            The status message and whether a refresh should follow.
        """
        name = done.action.display_name
        if done.error is not None:
            logger.warning("%s failed for %s: %s", name, done.target, done.error)
            return self.set_status(f"{name} failed: {done.error}", is_error=True), False
        return self.set_status(f"{name} completed for {done.target}", duration=STATUS_SUCCESS_SECONDS), True
