from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
automation_run_id_var: ContextVar[str | None] = ContextVar("automation_run_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_automation_run_id(value: str | None) -> Token[str | None]:
    return automation_run_id_var.set(value)


def reset_automation_run_id(token: Token[str | None]) -> None:
    automation_run_id_var.reset(token)


def get_automation_run_id() -> str | None:
    return automation_run_id_var.get()
