"""Transaction context carried through a call chain, and the enums it uses."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class Propagation(IntEnum):
    """How a business call joins, suspends or refuses a global transaction."""

    REQUIRED = 0
    REQUIRES_NEW = 1
    NOT_SUPPORTED = 2
    SUPPORTS = 3
    NEVER = 4
    MANDATORY = 5


class GlobalTransactionRole(IntEnum):
    """Whether this party started the global transaction or only joined it."""

    LAUNCHER = 0
    PARTICIPANT = 1


class GlobalStatus(IntEnum):
    """Status of a global transaction as reported by the coordinator."""

    UNKNOWN = 0
    BEGIN = 1
    COMMITTING = 2
    COMMIT_RETRYING = 3
    ROLLBACKING = 4
    ROLLBACK_RETRYING = 5
    TIMEOUT_ROLLBACKING = 6
    TIMEOUT_ROLLBACK_RETRYING = 7
    ASYNC_COMMITTING = 8
    COMMITTED = 9
    COMMIT_FAILED = 10
    ROLLBACKED = 11
    ROLLBACK_FAILED = 12
    TIMEOUT_ROLLBACKED = 13
    TIMEOUT_ROLLBACK_FAILED = 14
    FINISHED = 15


_NO_KEY = object()
_SEATA_CONTEXT_VARIABLE = object()


class Context:
    """An immutable chain of key/value pairs; deriving never changes the parent."""

    __slots__ = ("_parent", "_key", "_value")

    def __init__(self) -> None:
        self._parent: Context | None = None
        self._key: Any = _NO_KEY
        self._value: Any = None

    def with_value(self, key: Any, value: Any) -> Context:
        """Return a child context in which ``key`` maps to ``value``."""
        if key is None:
            raise TypeError("context key must not be None")
        child = Context()
        child._parent = self
        child._key = key
        child._value = value
        return child

    def value(self, key: Any) -> Any:
        """Return the value bound to ``key`` nearest to this context, or None."""
        node: Context | None = self
        while node is not None:
            if node._key is not _NO_KEY and node._key == key:
                return node._value
            node = node._parent
        return None


@dataclass
class BusinessActionContext:
    """What a two-phase commit or rollback receives about its branch."""

    xid: str = ""
    branch_id: int = 0
    action_name: str = ""
    action_context: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContextVariable:
    """Mutable transaction state shared by every context derived from one root."""

    tx_name: str = ""
    xid: str = ""
    xid_copy: str = ""
    status: GlobalStatus | None = None
    tx_role: GlobalTransactionRole | None = None
    business_action_context: BusinessActionContext | None = None
    tx_status: GlobalStatus | None = None


@dataclass(frozen=True)
class SuspendedResourcesHolder:
    """Resources kept aside while a global transaction is suspended."""

    xid: str


def _variable(ctx: Context) -> ContextVariable | None:
    return ctx.value(_SEATA_CONTEXT_VARIABLE)


def init_seata_context(ctx: Context) -> Context:
    """Return a context derived from ``ctx`` that carries fresh transaction state."""
    return ctx.with_value(_SEATA_CONTEXT_VARIABLE, ContextVariable())


def is_seata_context(ctx: Context) -> bool:
    return _variable(ctx) is not None


def get_tx_status(ctx: Context) -> GlobalStatus | None:
    variable = _variable(ctx)
    return None if variable is None else variable.tx_status


def set_tx_status(ctx: Context, status: GlobalStatus) -> None:
    variable = _variable(ctx)
    if variable is not None:
        variable.tx_status = status


def get_tx_name(ctx: Context) -> str:
    variable = _variable(ctx)
    return "" if variable is None else variable.tx_name


def set_tx_name(ctx: Context, name: str) -> None:
    variable = _variable(ctx)
    if variable is not None:
        variable.tx_name = name


def get_business_action_context(ctx: Context) -> BusinessActionContext | None:
    variable = _variable(ctx)
    return None if variable is None else variable.business_action_context


def set_business_action_context(
    ctx: Context, business_action_context: BusinessActionContext | None
) -> None:
    variable = _variable(ctx)
    if variable is not None:
        variable.business_action_context = business_action_context


def get_transaction_role(ctx: Context) -> GlobalTransactionRole | None:
    variable = _variable(ctx)
    return None if variable is None else variable.tx_role


def set_transaction_role(ctx: Context, role: GlobalTransactionRole) -> None:
    variable = _variable(ctx)
    if variable is not None:
        variable.tx_role = role


def is_transaction_opened(ctx: Context) -> bool:
    variable = _variable(ctx)
    return variable is not None and variable.xid != ""


def get_xid(ctx: Context) -> str:
    """Return the bound xid, falling back to the copy when none is bound."""
    variable = _variable(ctx)
    if variable is None:
        return ""
    return variable.xid or variable.xid_copy


def set_xid(ctx: Context, xid: str) -> None:
    variable = _variable(ctx)
    if variable is not None:
        variable.xid = xid


def set_xid_copy(ctx: Context, xid: str) -> None:
    variable = _variable(ctx)
    if variable is not None:
        variable.xid_copy = xid


def unbind_xid(ctx: Context) -> None:
    variable = _variable(ctx)
    if variable is not None:
        variable.xid = ""
        variable.xid_copy = ""