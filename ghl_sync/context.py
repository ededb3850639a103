from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
account_id_var: ContextVar[str | None] = ContextVar("account_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_account_id() -> str | None:
    return account_id_var.get()


@contextmanager
def account_scope(account_id: object) -> Iterator[None]:
    """Binds the tenant being synced so log records emitted inside carry its id."""
    token = account_id_var.set(None if account_id is None else str(account_id))
    try:
        yield
    finally:
        account_id_var.reset(token)
