"""TCC (try/confirm/cancel) resources, their resource manager and service proxies."""

from __future__ import annotations

import functools
import json
import logging
import socket
import threading
import time
from typing import Any

from .context import (
    BusinessActionContext,
    Context,
    get_xid,
    is_transaction_opened,
    set_business_action_context,
)
from .global_transaction import TransactionError, TransactionInfo
from .resource_manager import (
    BranchStatus,
    BranchType,
    Resource,
    ResourceManager,
    RMRemoting,
    get_rm_cache_instance,
    get_rm_remoting_instance,
)
from .two_phase import TwoPhaseAction, TwoPhaseActionError, parse_two_phase_action

log = logging.getLogger(__name__)

ACTION_CONTEXT = "actionContext"
START_TIME = "action-start-time"
HOST_NAME = "host-name"
DEFAULT_RESOURCE_GROUP_ID = "DEFAULT"
DEFAULT_APP_NAME = "seata-go-mock-app-name"
DEFAULT_TRANSACTION_TIMEOUT = 10000


class TCCResource(Resource):
    """A two-phase service registered as a TCC resource."""

    def __init__(
        self,
        two_phase_action: TwoPhaseAction,
        resource_group_id: str = DEFAULT_RESOURCE_GROUP_ID,
        app_name: str = DEFAULT_APP_NAME,
    ) -> None:
        self.two_phase_action = two_phase_action
        self._resource_group_id = resource_group_id
        self.app_name = app_name

    @property
    def resource_group_id(self) -> str:
        return self._resource_group_id

    @property
    def resource_id(self) -> str:
        return self.two_phase_action.action_name

    @property
    def branch_type(self) -> BranchType:
        return BranchType.TCC

    @property
    def action_name(self) -> str:
        return self.two_phase_action.action_name

    def __repr__(self) -> str:
        return (
            f"TCCResource(resource_id={self.resource_id!r}, "
            f"resource_group_id={self._resource_group_id!r}, app_name={self.app_name!r})"
        )


def parse_tcc_resource(service: Any) -> TCCResource:
    """Wrap a two-phase service as a TCC resource; raise TwoPhaseActionError if it is not one."""
    try:
        action = parse_two_phase_action(service)
    except TwoPhaseActionError as exc:
        log.error("%r is not tcc two phase service, %s", service, exc)
        raise
    return TCCResource(action)


def _phase_two_error(message: str, status: BranchStatus) -> TransactionError:
    error = TransactionError(message)
    error.branch_status = status
    return error


class TCCResourceManager(ResourceManager):
    """Keeps TCC resources by id and runs their commit and rollback steps."""

    branch_type = BranchType.TCC

    def __init__(self, rm_remoting: RMRemoting | None = None) -> None:
        self._rm_remoting = rm_remoting
        self._lock = threading.Lock()
        self._resources: dict[str, TCCResource] = {}

    @property
    def rm_remoting(self) -> Any:
        return self._rm_remoting if self._rm_remoting is not None else get_rm_remoting_instance()

    @property
    def cached_resources(self) -> dict[str, TCCResource]:
        """A snapshot of the managed resources by resource id."""
        with self._lock:
            return dict(self._resources)

    def branch_register(
        self,
        ctx: Context,
        branch_type: BranchType,
        resource_id: str,
        client_id: str,
        xid: str,
        application_data: str,
        lock_keys: str,
    ) -> int:
        """Register a TCC branch and return its id."""
        return self.rm_remoting.branch_register(
            BranchType.TCC, resource_id, client_id, xid, application_data, lock_keys
        )

    def register_resource(self, resource: Resource) -> Any:
        """Manage ``resource`` and announce it to the coordinator."""
        if not isinstance(resource, TCCResource):
            raise TypeError(
                f"register tcc resource error, TCCResource is needed, param {resource!r}"
            )
        with self._lock:
            self._resources[resource.resource_id] = resource
        return self.rm_remoting.register_resource(resource)

    def _lookup(self, resource_id: str) -> TCCResource:
        with self._lock:
            resource = self._resources.get(resource_id)
        if resource is None:
            raise TransactionError(f"TCC resource is not exist, resourceId: {resource_id}")
        return resource

    def branch_commit(
        self,
        ctx: Context,
        branch_type: BranchType,
        xid: str,
        branch_id: int,
        resource_id: str,
        application_data: bytes,
    ) -> BranchStatus:
        """Run the commit step of a resource.

        A failing step raises TransactionError whose ``branch_status`` says
        the commit may be retried.
        """
        resource = self._lookup(resource_id)
        context = self.business_action_context(xid, branch_id, resource_id, application_data)
        try:
            resource.two_phase_action.commit(ctx, context)
        except Exception as exc:
            raise _phase_two_error(
                f"branch commit failed: {exc}",
                BranchStatus.PHASETWO_COMMIT_FAILED_RETRYABLE,
            ) from exc
        return BranchStatus.PHASETWO_COMMITTED

    def branch_rollback(
        self,
        ctx: Context,
        branch_type: BranchType,
        xid: str,
        branch_id: int,
        resource_id: str,
        application_data: bytes,
    ) -> BranchStatus:
        """Run the rollback step of a resource.

        A failing step raises TransactionError whose ``branch_status`` says
        the rollback may be retried.
        """
        resource = self._lookup(resource_id)
        context = self.business_action_context(xid, branch_id, resource_id, application_data)
        try:
            resource.two_phase_action.rollback(ctx, context)
        except Exception as exc:
            raise _phase_two_error(
                f"branch rollback failed: {exc}",
                BranchStatus.PHASETWO_ROLLBACK_FAILED_RETRYABLE,
            ) from exc
        return BranchStatus.PHASETWO_ROLLBACKED

    def business_action_context(
        self, xid: str, branch_id: int, resource_id: str, application_data: bytes | str
    ) -> BusinessActionContext:
        """Build the context handed to a commit or rollback step."""
        action_context: dict[str, Any] = {}
        if application_data:
            try:
                tcc_context = json.loads(application_data)
            except (ValueError, UnicodeDecodeError) as exc:
                raise ValueError("application data failed to unmarshal as json") from exc
            if not isinstance(tcc_context, dict):
                raise ValueError("application data failed to unmarshal as json")
            if ACTION_CONTEXT in tcc_context:
                value = tcc_context[ACTION_CONTEXT]
                if not isinstance(value, dict):
                    raise ValueError(f"{ACTION_CONTEXT} in application data is not an object")
                action_context = value
        return BusinessActionContext(
            xid=xid,
            branch_id=branch_id,
            action_name=resource_id,
            action_context=action_context,
        )


@functools.lru_cache(maxsize=None)
def get_tcc_resource_manager_instance() -> TCCResourceManager:
    """The process-wide TCC resource manager, registered in the manager cache."""
    manager = TCCResourceManager()
    get_rm_cache_instance().register_resource_manager(manager)
    return manager


def _local_ip() -> str:
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


class TCCServiceProxy:
    """Wraps a two-phase service so that preparing it enlists a branch."""

    def __init__(self, service: Any, rm_remoting: RMRemoting | None = None) -> None:
        try:
            self.resource = parse_tcc_resource(service)
        except TwoPhaseActionError as exc:
            log.error("invalid tcc service, err %s", exc)
            raise
        self.reference_name = ""
        self._rm_remoting = rm_remoting
        self._register_lock = threading.Lock()
        self._registered = False

    @property
    def action_name(self) -> str:
        return self.resource.action_name

    @property
    def service(self) -> Any:
        return self.resource.two_phase_action.service

    def register_resource(self) -> None:
        """Register the wrapped resource with the TCC manager, once."""
        with self._register_lock:
            if self._registered:
                return
            self._registered = True
        manager = get_rm_cache_instance().get_resource_manager(BranchType.TCC)
        try:
            manager.register_resource(self.resource)
        except Exception as exc:
            log.error("TCCServiceProxy register resource error: %s", exc)
            raise

    def reference(self) -> str:
        """The name the service is referenced by."""
        if self.reference_name:
            return self.reference_name
        return type(self.service).__name__

    def prepare(self, ctx: Context, *args: Any) -> bool:
        """Enlist a branch if a transaction is open, then run the prepare step."""
        if is_transaction_opened(ctx):
            self._register_branch(ctx)
        return self.resource.two_phase_action.prepare(ctx, *args)

    def _register_branch(self, ctx: Context) -> None:
        if not is_transaction_opened(ctx):
            raise TransactionError("BranchRegister error, transaction should be opened")
        tcc_context = {
            START_TIME: time.time_ns() // 1_000_000,
            HOST_NAME: _local_ip(),
        }
        application_data = json.dumps({ACTION_CONTEXT: tcc_context})
        remoting = self._rm_remoting if self._rm_remoting is not None else get_rm_remoting_instance()
        xid = get_xid(ctx)
        try:
            branch_id = remoting.branch_register(
                BranchType.TCC, self.action_name, "", xid, application_data, ""
            )
        except Exception as exc:
            log.error("BranchRegister error: %s", exc)
            raise TransactionError(f"BranchRegister error: {exc}") from exc
        set_business_action_context(
            ctx,
            BusinessActionContext(xid=xid, branch_id=branch_id, action_name=self.action_name),
        )

    def transaction_info(self) -> TransactionInfo:
        """Settings the service's global transactions run with."""
        return TransactionInfo(timeout=DEFAULT_TRANSACTION_TIMEOUT, name=self.action_name)


get_tcc_resource_manager_instance()