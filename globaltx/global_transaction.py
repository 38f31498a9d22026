"""Beginning, committing and rolling back global transactions."""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable

from .context import (
    Context,
    GlobalStatus,
    GlobalTransactionRole,
    Propagation,
    get_transaction_role,
    get_tx_status,
    get_xid,
    init_seata_context,
    is_seata_context,
    is_transaction_opened,
    set_transaction_role,
    set_tx_name,
    set_tx_status,
    set_xid,
    unbind_xid,
)
from .remoting import get_remoting_client

log = logging.getLogger(__name__)

DEFAULT_RETRY_TIMES = 10
DEFAULT_RETRY_INTERVAL = 0.2
DEFAULT_BEGIN_TIMEOUT = 60000 * 30


class ResultCode(IntEnum):
    """Outcome of a request as reported by the coordinator."""

    FAILED = 0
    SUCCESS = 1


class TransactionError(Exception):
    """A global transaction could not be begun, committed or rolled back."""


@dataclass(frozen=True)
class GlobalBeginRequest:
    transaction_name: str = ""
    timeout: int = 0


@dataclass(frozen=True)
class GlobalBeginResponse:
    result_code: ResultCode = ResultCode.SUCCESS
    msg: str = ""
    xid: str = ""


@dataclass(frozen=True)
class GlobalCommitRequest:
    xid: str = ""


@dataclass(frozen=True)
class GlobalCommitResponse:
    result_code: ResultCode = ResultCode.SUCCESS
    msg: str = ""
    global_status: GlobalStatus = GlobalStatus.UNKNOWN


@dataclass(frozen=True)
class GlobalRollbackRequest:
    xid: str = ""


@dataclass(frozen=True)
class GlobalRollbackResponse:
    result_code: ResultCode = ResultCode.SUCCESS
    msg: str = ""
    global_status: GlobalStatus = GlobalStatus.UNKNOWN


@dataclass
class GlobalTransaction:
    """One global transaction as seen by this party."""

    xid: str = ""
    status: GlobalStatus = GlobalStatus.UNKNOWN
    role: GlobalTransactionRole = GlobalTransactionRole.LAUNCHER


@dataclass(frozen=True)
class TransactionInfo:
    """Settings a business call runs its global transaction with."""

    timeout: int = 0
    name: str = ""
    propagation: Propagation = Propagation.REQUIRED
    lock_retry_interval: int = 0
    lock_retry_times: int = 0


class GlobalTransactionManager:
    """Talks to the coordinator on behalf of the transaction launcher."""

    def __init__(
        self,
        client: Any = None,
        retry_times: int = DEFAULT_RETRY_TIMES,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ) -> None:
        self.client = client
        self.retry_times = retry_times
        self.retry_interval = retry_interval

    def _transport(self) -> Any:
        return self.client if self.client is not None else get_remoting_client()

    def begin(
        self, ctx: Context, transaction: GlobalTransaction, timeout: int, name: str
    ) -> None:
        """Begin ``transaction`` and bind its new xid to ``ctx``."""
        if transaction.role != GlobalTransactionRole.LAUNCHER:
            log.info(
                "Ignore GlobalStatusBegin(): just involved in global transaction %s",
                transaction.xid,
            )
            return
        if transaction.xid:
            raise TransactionError(
                "Global transaction already exists,can't begin a new global transaction, "
                f"currentXid = {transaction.xid} "
            )

        request = GlobalBeginRequest(transaction_name=name, timeout=timeout)
        try:
            response = self._transport().send_sync_request(request)
        except Exception as exc:
            log.error("GlobalBeginRequest error %s", exc)
            raise
        if response is None or response.result_code == ResultCode.FAILED:
            log.error(
                "GlobalBeginRequest result is empty or result code is failed, res %r", response
            )
            raise TransactionError("GlobalBeginRequest result is empty or result code is failed.")
        log.info("GlobalBeginRequest success, xid %s, res %r", transaction.xid, response)

        transaction.status = GlobalStatus.BEGIN
        transaction.xid = response.xid
        set_xid(ctx, response.xid)

    def _send_with_retry(self, request: Any, label: str, xid: str) -> Any:
        last_error: Exception | None = None
        for attempt in range(self.retry_times):
            try:
                return self._transport().send_sync_request(request)
            except Exception as exc:
                last_error = exc
                log.error("%s error, xid %s, error %s", label, xid, exc)
                if attempt + 1 < self.retry_times:
                    time.sleep(self.retry_interval)
        if last_error is not None:
            raise last_error
        raise TransactionError(f"{label} was not sent, xid {xid}")

    def _end(
        self,
        ctx: Context,
        transaction: GlobalTransaction,
        action: str,
        make_request: Callable[[str], Any],
        label: str,
    ) -> None:
        if transaction.role != GlobalTransactionRole.LAUNCHER:
            log.info("Ignore %s(): just involved in global gtr %s", action, transaction.xid)
            return
        if not transaction.xid:
            raise TransactionError(f"{action} xid should not be empty")

        response = self._send_with_retry(make_request(transaction.xid), label, transaction.xid)
        if response is None:
            raise TransactionError(f"{label} result is empty, xid {transaction.xid}")
        log.info("%s success, xid %s", label, transaction.xid)
        transaction.status = response.global_status
        unbind_xid(ctx)

    def commit(self, ctx: Context, transaction: GlobalTransaction) -> None:
        """Commit ``transaction`` and unbind its xid from ``ctx``."""
        self._end(
            ctx, transaction, "Commit", lambda xid: GlobalCommitRequest(xid=xid), "GlobalCommitRequest"
        )

    def rollback(self, ctx: Context, transaction: GlobalTransaction) -> None:
        """Roll back ``transaction`` and unbind its xid from ``ctx``."""
        self._end(
            ctx,
            transaction,
            "Rollback",
            lambda xid: GlobalRollbackRequest(xid=xid),
            "GlobalRollbackRequest",
        )


@functools.lru_cache(maxsize=None)
def get_global_transaction_manager() -> GlobalTransactionManager:
    """The process-wide GlobalTransactionManager."""
    return GlobalTransactionManager()


def begin(ctx: Context, name: str) -> Context:
    """Open (or join) a global transaction named ``name`` and return its context."""
    if not is_seata_context(ctx):
        ctx = init_seata_context(ctx)

    set_tx_name(ctx, name)
    if get_transaction_role(ctx) is None:
        set_transaction_role(ctx, GlobalTransactionRole.LAUNCHER)

    if is_transaction_opened(ctx):
        transaction = GlobalTransaction(
            xid=get_xid(ctx),
            status=GlobalStatus.BEGIN,
            role=GlobalTransactionRole.PARTICIPANT,
        )
        set_tx_status(ctx, GlobalStatus.BEGIN)
    else:
        transaction = GlobalTransaction(
            status=GlobalStatus.UNKNOWN, role=GlobalTransactionRole.LAUNCHER
        )
        set_tx_status(ctx, GlobalStatus.UNKNOWN)

    try:
        get_global_transaction_manager().begin(ctx, transaction, DEFAULT_BEGIN_TIMEOUT, name)
    except Exception as exc:
        raise TransactionError(
            f"transactionTemplate: begin transaction failed, error {exc}"
        ) from exc
    return ctx


def commit_or_rollback(ctx: Context, is_success: bool) -> None:
    """Commit the transaction in ``ctx`` on success, otherwise roll it back."""
    role = get_transaction_role(ctx)
    if role is None:
        raise TransactionError("transaction role is not set in context")
    if role == GlobalTransactionRole.PARTICIPANT:
        log.debug("Ignore Rollback(): just involved in global transaction [%s]", get_xid(ctx))
        return

    status = get_tx_status(ctx)
    transaction = GlobalTransaction(
        xid=get_xid(ctx),
        status=status if status is not None else GlobalStatus.UNKNOWN,
        role=role,
    )
    manager = get_global_transaction_manager()
    action = manager.commit if is_success else manager.rollback
    verb = "commit" if is_success else "Rollback"

    last_error: Exception | None = None
    for attempt in range(manager.retry_times):
        try:
            action(ctx, transaction)
            return
        except Exception as exc:
            last_error = exc
            log.info("transactionTemplate: %s transaction failed, error %s", verb, exc)
            if attempt + 1 < manager.retry_times:
                time.sleep(manager.retry_interval)
    if last_error is not None:
        raise last_error