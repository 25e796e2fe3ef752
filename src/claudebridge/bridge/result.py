"""Result accumulator for one streaming bridge command."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from claudebridge.errors import ErrorKind

INTERRUPTED_MESSAGE = "User interrupted"


@dataclass
class SDKResult:
    """Outcome of a streaming command.

    Mutated by the read loop while output arrives and finalized exactly
    once when the process exits or is interrupted.

    Attributes:
        success: None while undetermined, then True or False.
        error: Failure message, if any.
        error_kind: Category of the failure.
        final_result: Concatenated assistant text.
        messages: Transcript message envelopes in arrival order.
        message_count: len(messages) captured at finalization.
        session_id: Session reported by the bridge, if any.
        exit_code: Process exit code, when the process ran.
    """

    success: bool | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    final_result: str = ""
    messages: list[dict[str, Any]] = field(default_factory=list)
    message_count: int = 0
    session_id: str | None = None
    exit_code: int | None = None
    _finalized: bool = field(default=False, repr=False)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def record_send_error(self, error: str) -> None:
        """Latch an error reported by the bridge itself.

        success stays undetermined until finalize.
        """
        self.error = error
        self.error_kind = ErrorKind.SEND_ERROR

    def finalize(
        self,
        exit_code: int,
        interrupted: bool,
        had_send_error: bool,
        assistant_text: str,
        last_node_error: str | None = None,
    ) -> None:
        """Fix the terminal state from the exit code and latched errors.

        Interrupts win over everything. A latched send error is never
        replaced by the generic exit-code message.
        """
        if self._finalized:
            return
        self._finalized = True

        self.exit_code = exit_code
        self.final_result = assistant_text
        self.message_count = len(self.messages)

        if interrupted:
            self.success = False
            self.error = INTERRUPTED_MESSAGE
            self.error_kind = ErrorKind.INTERRUPTED
        elif not had_send_error:
            self.success = exit_code == 0
            if not self.success:
                error = f"Process exited with code: {exit_code}"
                if last_node_error:
                    error = f"{error}\n\nDetails: {last_node_error}"
                self.error = error
                self.error_kind = ErrorKind.NON_ZERO_EXIT
        else:
            self.success = exit_code == 0

    def finalize_failure(
        self, error: str, kind: ErrorKind, assistant_text: str = ""
    ) -> None:
        """Finalize a command that never reached a clean process exit."""
        if self._finalized:
            return
        self._finalized = True
        self.final_result = assistant_text
        self.message_count = len(self.messages)
        self.success = False
        self.error = error
        self.error_kind = kind

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "finalResult": self.final_result,
            "messageCount": self.message_count,
            "sessionId": self.session_id,
            "exitCode": self.exit_code,
        }
