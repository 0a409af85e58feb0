from __future__ import annotations

from typing import Iterable, List, Optional


class SantaError(RuntimeError):
    pass


class NotFound(SantaError):
    pass


class Forbidden(SantaError):
    pass


class AlreadyDrawn(SantaError):
    def __init__(self, message: str = "The draw has already been completed for this group.") -> None:
        super().__init__(message)


class _ErrorListMixin:
    summary: str
    errors: List[str]

    def _init_errors(self, message: str, errors: Optional[Iterable[str]]) -> str:
        self.summary = message
        self.errors = list(errors or [])
        if self.errors:
            return f"{message}: " + "; ".join(self.errors)
        return message


class InfeasibleConstraints(_ErrorListMixin, SantaError):
    """No derangement exists that respects the group's exclusion rules."""

    def __init__(self, errors: Optional[Iterable[str]] = None, message: str = "Draw is not possible") -> None:
        super().__init__(self._init_errors(message, errors))


class ValidationError(_ErrorListMixin, SantaError):
    def __init__(self, errors: Optional[Iterable[str]] = None, message: str = "Invalid input") -> None:
        super().__init__(self._init_errors(message, errors))


class TransientDeliveryFailure(SantaError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.detail = message


class PermanentDeliveryFailure(SantaError):
    def __init__(self, intent_id: int, attempts: int, last_error: Optional[str]) -> None:
        super().__init__(
            f"Notification intent {intent_id} gave up after {attempts} attempts: {last_error}"
        )
        self.intent_id = intent_id
        self.attempts = attempts
        self.last_error = last_error
