"""Two demo TCC services run inside one global transaction."""

from __future__ import annotations

import argparse
import functools
import logging
from typing import Any

from .context import BusinessActionContext, Context
from .global_transaction import begin, commit_or_rollback
from .tcc import TCCServiceProxy

log = logging.getLogger(__name__)

TX_NAME = "TestTCCServiceBusiness"


class DemoBusiness:
    """A TCC service whose every step succeeds."""

    def prepare(self, ctx: Context, *args: Any) -> bool:
        log.info("TestTCCServiceBusiness Prepare, param %r", args)
        return True

    def commit(self, ctx: Context, business_action_context: BusinessActionContext) -> bool:
        log.info("TestTCCServiceBusiness Commit, param %r", business_action_context)
        return True

    def rollback(self, ctx: Context, business_action_context: BusinessActionContext) -> bool:
        log.info("TestTCCServiceBusiness Rollback, param %r", business_action_context)
        return True

    def get_action_name(self) -> str:
        return "TestTCCServiceBusiness"


class DemoBusiness2:
    """A second TCC service whose every step succeeds."""

    def prepare(self, ctx: Context, *args: Any) -> bool:
        log.info("TestTCCServiceBusiness2 Prepare, param %r", args)
        return True

    def commit(self, ctx: Context, business_action_context: BusinessActionContext) -> bool:
        log.info("TestTCCServiceBusiness2 Commit, param %r", business_action_context)
        return True

    def rollback(self, ctx: Context, business_action_context: BusinessActionContext) -> bool:
        log.info("TestTCCServiceBusiness2 Rollback, param %r", business_action_context)
        return True

    def get_action_name(self) -> str:
        return "TestTCCServiceBusiness2"


@functools.lru_cache(maxsize=None)
def new_demo_business_proxy() -> TCCServiceProxy:
    """The shared proxy of DemoBusiness, registered as a resource."""
    proxy = TCCServiceProxy(DemoBusiness())
    proxy.register_resource()
    return proxy


@functools.lru_cache(maxsize=None)
def new_demo_business2_proxy() -> TCCServiceProxy:
    """The shared proxy of DemoBusiness2, registered as a resource."""
    proxy = TCCServiceProxy(DemoBusiness2())
    proxy.register_resource()
    return proxy


def main(argv: list[str] | None = None) -> int:
    """Prepare both demo services in one transaction, then commit or roll back."""
    parser = argparse.ArgumentParser(
        prog="globaltx-sample",
        description="Run two TCC services inside one global transaction.",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    ctx = begin(Context(), TX_NAME)
    error: Exception | None = None
    try:
        new_demo_business_proxy().prepare(ctx, 1)
        new_demo_business2_proxy().prepare(ctx, 3)
    except Exception as exc:
        error = exc
        log.error("prepare error, %s", exc)

    try:
        commit_or_rollback(ctx, error is None)
    except Exception as exc:
        log.error("tx result %s", exc)
        return 1
    log.info("tx result %s", None)
    return 0 if error is None else 1


if __name__ == "__main__":
    raise SystemExit(main())