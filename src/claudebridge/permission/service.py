"""Arbitration of permission, question and plan-approval requests.

A bridge child asks for a decision, the service registers a pending future
under a fresh correlation id, pushes a dialog to the presenter, and resolves
the future when the matching decision message arrives. Every pending entry
is resolved exactly once and removed from the map on:

- the user's decision
- its timeout (when one is configured for the request kind)
- cancel_channel (channel interrupted / process exited) or cancel_all
- failure to show the dialog at all

Timeout, cancel and dispatch failure resolve to the safe default: DENY for
permissions, None for questions and plans.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from claudebridge.config.schema import PermissionConfig
from claudebridge.host import ImmediateUiContext, UiContext, call_on_ui
from claudebridge.logging import get_logger
from claudebridge.permission.models import (
    Dialog,
    PermissionDecisionMessage,
    PermissionDialog,
    PlanDialog,
    PlanResponseMessage,
    QuestionDialog,
    QuestionResponseMessage,
)
from claudebridge.permission.types import (
    CorrelationId,
    PermissionDecision,
    PermissionResponse,
    RequestKind,
    Resolution,
    new_correlation_id,
)

log = get_logger("permission")

DecisionCallback = Callable[[PermissionDecision], None]

# Denials that reach the denied callback; cancels and dispatch failures do not
_REPORTED_DENIALS = (Resolution.DECISION, Resolution.TIMEOUT)


class PresenterNotReady(Exception):
    """The presentation layer cannot show dialogs yet; retry shortly."""


class DialogPresenter(Protocol):
    """Shows and dismisses dialogs in the presentation layer."""

    def show_dialog(self, dialog: Dialog) -> None: ...

    def close_dialog(self, request_id: str) -> None: ...


@dataclass
class _Outcome:
    resolution: Resolution
    value: Any = None


@dataclass
class _Pending:
    kind: RequestKind
    channel_id: str | None
    future: asyncio.Future[_Outcome]
    timer: asyncio.TimerHandle | None = None


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class PermissionService:
    """Correlates dialog requests with decisions from the presenter.

    All bookkeeping runs on the event loop that issued the first request.
    ``submit_*`` and ``cancel_*`` may be called from other threads; they
    are marshalled onto that loop.

    Args:
        presenter: Shows dialogs. Without one, every request resolves to
            its safe default immediately.
        config: Timeouts and dialog retry policy.
        ui: Where presenter calls and notification callbacks run.
    """

    def __init__(
        self,
        presenter: DialogPresenter | None = None,
        config: PermissionConfig | None = None,
        ui: UiContext | None = None,
    ) -> None:
        self._presenter = presenter
        self._config = config or PermissionConfig()
        self._ui: UiContext = ui or ImmediateUiContext()
        self._pending: dict[CorrelationId, _Pending] = {}
        self._remembered: dict[str, PermissionResponse] = {}
        self._denied_callback: DecisionCallback | None = None
        self._decision_listener: DecisionCallback | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    # -- wiring --------------------------------------------------------------

    def set_presenter(self, presenter: DialogPresenter | None) -> None:
        self._presenter = presenter

    def set_permission_denied_callback(self, callback: DecisionCallback | None) -> None:
        """Called once per denied permission (user or timeout)."""
        self._denied_callback = callback

    def set_decision_listener(self, listener: DecisionCallback | None) -> None:
        """Called with every resolved permission decision."""
        self._decision_listener = listener

    # -- inspection ----------------------------------------------------------

    def pending_count(self, kind: RequestKind | None = None) -> int:
        if kind is None:
            return len(self._pending)
        return sum(1 for entry in self._pending.values() if entry.kind is kind)

    def pending_ids(self, kind: RequestKind | None = None) -> list[CorrelationId]:
        return [cid for cid, entry in self._pending.items() if kind is None or entry.kind is kind]

    def remembered_response(self, tool_name: str) -> PermissionResponse | None:
        return self._remembered.get(tool_name)

    def clear_remembered(self) -> None:
        self._remembered.clear()

    # -- permission requests -------------------------------------------------

    async def request_permission(
        self,
        channel_id: str | None,
        tool_name: str,
        inputs: Mapping[str, Any] | None = None,
        suggestions: list[Any] | None = None,
    ) -> PermissionResponse:
        """Ask whether a tool may run; remembered answers skip the dialog."""
        decision = await self.decide_permission(channel_id, tool_name, inputs, suggestions)
        return decision.response

    async def show_frontend_permission_dialog(
        self,
        tool_name: str,
        inputs: Mapping[str, Any] | None = None,
        channel_id: str | None = None,
    ) -> PermissionResponse:
        """Always show a dialog, ignoring remembered answers."""
        decision = await self.decide_permission(
            channel_id, tool_name, inputs, use_memory=False
        )
        return decision.response

    async def decide_permission(
        self,
        channel_id: str | None,
        tool_name: str,
        inputs: Mapping[str, Any] | None = None,
        suggestions: list[Any] | None = None,
        use_memory: bool = True,
    ) -> PermissionDecision:
        """Full decision, including the user's message and edited input."""
        tool_inputs = dict(inputs or {})

        if use_memory:
            remembered = self._remembered.get(tool_name)
            if remembered is not None:
                log.debug("Using remembered %s for %s", remembered.name, tool_name)
                decision = PermissionDecision(
                    tool_name, tool_inputs, remembered, Resolution.REMEMBERED, channel_id
                )
                self._report(decision)
                return decision

        cid = new_correlation_id()
        dialog = PermissionDialog(
            request_id=cid,
            channel_id=channel_id,
            tool_name=tool_name,
            inputs=tool_inputs,
            suggestions=suggestions,
        )
        outcome = await self._request(
            cid, RequestKind.PERMISSION, channel_id, dialog, self._config.permission_timeout
        )

        message = outcome.value
        if outcome.resolution is Resolution.DECISION and isinstance(message, PermissionDecisionMessage):
            response = PermissionResponse.from_decision(message.allow, message.remember)
            if message.remember and response.allowed:
                self._remembered[tool_name] = response
            decision = PermissionDecision(
                tool_name,
                tool_inputs,
                response,
                Resolution.DECISION,
                channel_id,
                message=message.reject_message,
                updated_input=message.updated_input,
            )
        else:
            decision = PermissionDecision(
                tool_name, tool_inputs, PermissionResponse.DENY, outcome.resolution, channel_id
            )

        self._report(decision)
        return decision

    # -- question / plan requests --------------------------------------------

    async def ask_user_question(
        self, channel_id: str | None, questions: list[Any]
    ) -> dict[str, Any] | None:
        """Resolves to the answers object, or None if cancelled."""
        cid = new_correlation_id()
        dialog = QuestionDialog(request_id=cid, channel_id=channel_id, questions=list(questions))
        outcome = await self._request(
            cid, RequestKind.QUESTION, channel_id, dialog, self._config.question_timeout
        )

        message = outcome.value
        if outcome.resolution is not Resolution.DECISION or not isinstance(message, QuestionResponseMessage):
            return None
        if message.cancelled or message.answers is None:
            return None
        return message.answers

    async def request_plan_approval(
        self, channel_id: str | None, plan: Any, suggestions: list[Any] | None = None
    ) -> dict[str, Any] | None:
        """Resolves to ``{"approved": bool, "newMode"?: str}``, or None if cancelled."""
        cid = new_correlation_id()
        dialog = PlanDialog(request_id=cid, channel_id=channel_id, plan=plan, suggestions=suggestions)
        outcome = await self._request(
            cid, RequestKind.PLAN, channel_id, dialog, self._config.plan_timeout
        )

        message = outcome.value
        if outcome.resolution is not Resolution.DECISION or not isinstance(message, PlanResponseMessage):
            return None
        if message.cancelled:
            return None

        result: dict[str, Any] = {"approved": message.approved}
        if message.new_mode:
            result["newMode"] = message.new_mode
        if message.feedback:
            result["feedback"] = message.feedback
        return result

    # -- decisions from the presentation layer -------------------------------

    def submit_permission_decision(
        self, message: PermissionDecisionMessage | Mapping[str, Any]
    ) -> bool:
        """Resolve a pending permission request.

        Returns:
            False if no matching request is pending (already resolved,
            timed out, or unknown id).

        Raises:
            pydantic.ValidationError: ``message`` is malformed.
        """
        if not isinstance(message, PermissionDecisionMessage):
            message = PermissionDecisionMessage.model_validate(message)
        return self._submit(CorrelationId(message.request_id), RequestKind.PERMISSION, message)

    def submit_question_response(
        self, message: QuestionResponseMessage | Mapping[str, Any]
    ) -> bool:
        if not isinstance(message, QuestionResponseMessage):
            message = QuestionResponseMessage.model_validate(message)
        return self._submit(CorrelationId(message.request_id), RequestKind.QUESTION, message)

    def submit_plan_response(self, message: PlanResponseMessage | Mapping[str, Any]) -> bool:
        if not isinstance(message, PlanResponseMessage):
            message = PlanResponseMessage.model_validate(message)
        return self._submit(CorrelationId(message.request_id), RequestKind.PLAN, message)

    # -- forced resolution ---------------------------------------------------

    def cancel_channel(self, channel_id: str) -> int:
        """Resolve every request raised by ``channel_id`` to its default."""

        def apply() -> int:
            ids = [cid for cid, entry in self._pending.items() if entry.channel_id == channel_id]
            for cid in ids:
                self._resolve(cid, _Outcome(Resolution.CANCELLED))
            if ids:
                log.info("Cancelled %d pending requests for channel %s", len(ids), channel_id)
            return len(ids)

        return self._on_loop(apply, default=0)

    def cancel_all(self) -> int:
        """Resolve every pending request; used when the presenter goes away."""

        def apply() -> int:
            ids = list(self._pending)
            for cid in ids:
                self._resolve(cid, _Outcome(Resolution.CANCELLED))
            return len(ids)

        return self._on_loop(apply, default=0)

    # -- internals -----------------------------------------------------------

    async def _request(
        self,
        cid: CorrelationId,
        kind: RequestKind,
        channel_id: str | None,
        dialog: Dialog,
        timeout: float | None,
    ) -> _Outcome:
        loop = asyncio.get_running_loop()
        self._loop = loop

        entry = _Pending(kind, channel_id, loop.create_future())
        self._pending[cid] = entry
        if timeout is not None:
            entry.timer = loop.call_later(timeout, self._resolve, cid, _Outcome(Resolution.TIMEOUT))
        log.debug("Pending %s request %s (channel %s)", kind.value, cid, channel_id)

        try:
            await self._present(cid, dialog)
            return await asyncio.shield(entry.future)
        finally:
            # Requester went away before a resolution arrived
            if self._pending.get(cid) is entry:
                self._resolve(cid, _Outcome(Resolution.CANCELLED))

    async def _present(self, cid: CorrelationId, dialog: Dialog) -> None:
        presenter = self._presenter
        if presenter is None:
            log.warning("No dialog presenter; request %s resolves to its default", cid)
            self._resolve(cid, _Outcome(Resolution.DISPATCH_FAILED))
            return

        attempts = max(1, self._config.dialog_retries)
        for attempt in range(1, attempts + 1):
            if cid not in self._pending:
                return
            try:
                await call_on_ui(self._ui, presenter.show_dialog, dialog)
                return
            except PresenterNotReady:
                log.debug("Presenter not ready for %s (attempt %d/%d)", cid, attempt, attempts)
                if attempt < attempts:
                    await asyncio.sleep(self._config.dialog_retry_delay)
            except Exception:
                log.exception("Failed to show dialog for request %s", cid)
                break

        log.warning("Dialog for request %s could not be shown", cid)
        self._resolve(cid, _Outcome(Resolution.DISPATCH_FAILED))

    def _resolve(self, cid: CorrelationId, outcome: _Outcome) -> bool:
        entry = self._pending.pop(cid, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(outcome)

        log.debug("Resolved %s request %s: %s", entry.kind.value, cid, outcome.resolution.value)
        if outcome.resolution in (Resolution.TIMEOUT, Resolution.CANCELLED):
            self._close_dialog(cid)
        return True

    def _submit(self, cid: CorrelationId, kind: RequestKind, message: Any) -> bool:
        def apply() -> bool:
            entry = self._pending.get(cid)
            if entry is None:
                log.warning("No pending request %s (already resolved?)", cid)
                return False
            if entry.kind is not kind:
                log.warning("Request %s is a %s request, not %s", cid, entry.kind.value, kind.value)
                return False
            return self._resolve(cid, _Outcome(Resolution.DECISION, message))

        return self._on_loop(apply, default=cid in self._pending)

    def _on_loop(self, fn: Callable[[], Any], default: Any) -> Any:
        loop = self._loop
        if loop is None or loop.is_closed() or _running_loop() is loop:
            return fn()
        loop.call_soon_threadsafe(fn)
        return default

    def _close_dialog(self, cid: CorrelationId) -> None:
        presenter = self._presenter
        if presenter is None:
            return

        def close() -> None:
            try:
                presenter.close_dialog(cid)
            except Exception:
                log.exception("Failed to close dialog %s", cid)

        self._ui.invoke_later(close)

    def _report(self, decision: PermissionDecision) -> None:
        listener = self._decision_listener
        if listener is not None:
            self._ui.invoke_later(self._notify, listener, decision)

        denied = self._denied_callback
        if (
            denied is not None
            and decision.response is PermissionResponse.DENY
            and decision.resolution in _REPORTED_DENIALS
        ):
            self._ui.invoke_later(self._notify, denied, decision)

    @staticmethod
    def _notify(callback: DecisionCallback, decision: PermissionDecision) -> None:
        try:
            callback(decision)
        except Exception:
            log.exception("Permission callback failed")
