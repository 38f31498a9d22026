"""Resources, resource managers and the requests they send to the coordinator."""

from __future__ import annotations

import functools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from .context import Context
from .global_transaction import ResultCode, TransactionError
from .remoting import get_remoting_client

log = logging.getLogger(__name__)

RM_VERSION = "1.5.2"
RM_APPLICATION_ID = "tcc-sample"
RM_TRANSACTION_SERVICE_GROUP = "my_test_tx_group"


class BranchType(IntEnum):
    """Kind of branch transaction a resource takes part in."""

    AT = 0
    TCC = 1
    SAGA = 2
    XA = 3


class BranchStatus(IntEnum):
    """Status of one branch of a global transaction."""

    UNKNOWN = 0
    REGISTERED = 1
    PHASEONE_DONE = 2
    PHASEONE_FAILED = 3
    PHASEONE_TIMEOUT = 4
    PHASETWO_COMMITTED = 5
    PHASETWO_COMMIT_FAILED_RETRYABLE = 6
    PHASETWO_COMMIT_FAILED_UNRETRYABLE = 7
    PHASETWO_ROLLBACKED = 8
    PHASETWO_ROLLBACK_FAILED_RETRYABLE = 9
    PHASETWO_ROLLBACK_FAILED_UNRETRYABLE = 10


class Resource(ABC):
    """Something a resource manager manages and enlists in global transactions."""

    @property
    @abstractmethod
    def resource_group_id(self) -> str: ...

    @property
    @abstractmethod
    def resource_id(self) -> str: ...

    @property
    @abstractmethod
    def branch_type(self) -> BranchType: ...


class ResourceManager(ABC):
    """Registers resources and drives their branches through both phases.

    Subclasses set ``branch_type`` to the kind of branch they manage.
    """

    branch_type: BranchType

    @abstractmethod
    def branch_commit(
        self,
        ctx: Context,
        branch_type: BranchType,
        xid: str,
        branch_id: int,
        resource_id: str,
        application_data: bytes,
    ) -> BranchStatus:
        """Commit a branch transaction."""

    @abstractmethod
    def branch_rollback(
        self,
        ctx: Context,
        branch_type: BranchType,
        xid: str,
        branch_id: int,
        resource_id: str,
        application_data: bytes,
    ) -> BranchStatus:
        """Roll back a branch transaction."""

    @abstractmethod
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
        """Register a branch with the coordinator and return its id."""

    @abstractmethod
    def register_resource(self, resource: Resource) -> Any:
        """Start managing ``resource``."""


@dataclass(frozen=True)
class BranchRegisterRequest:
    xid: str = ""
    lock_key: str = ""
    resource_id: str = ""
    branch_type: BranchType = BranchType.AT
    application_data: bytes = b""


@dataclass(frozen=True)
class BranchRegisterResponse:
    result_code: ResultCode = ResultCode.SUCCESS
    msg: str = ""
    branch_id: int = 0


@dataclass(frozen=True)
class BranchReportRequest:
    xid: str = ""
    branch_id: int = 0
    status: BranchStatus = BranchStatus.UNKNOWN
    application_data: bytes = b""
    branch_type: BranchType = BranchType.AT


@dataclass(frozen=True)
class BranchReportResponse:
    result_code: ResultCode = ResultCode.SUCCESS
    msg: str = ""


@dataclass(frozen=True)
class RegisterRMRequest:
    version: str = ""
    application_id: str = ""
    transaction_service_group: str = ""
    resource_ids: str = ""


@dataclass(frozen=True)
class RegisterRMResponse:
    identified: bool = False
    version: str = ""
    result_code: ResultCode = ResultCode.SUCCESS
    msg: str = ""


class ResourceManagerCache:
    """Resource managers by the branch type they handle."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._managers: dict[BranchType, ResourceManager] = {}

    def register_resource_manager(self, resource_manager: ResourceManager) -> None:
        with self._lock:
            self._managers[resource_manager.branch_type] = resource_manager

    def get_resource_manager(self, branch_type: BranchType) -> ResourceManager:
        """Return the manager for ``branch_type``; raise LookupError if none."""
        with self._lock:
            manager = self._managers.get(branch_type)
        if manager is None:
            raise LookupError(f"No ResourceManagerCache for BranchType: {branch_type!r}")
        return manager


class RMRemoting:
    """Sends resource-manager requests to the coordinator."""

    def __init__(self, client: Any = None) -> None:
        self.client = client

    def _transport(self) -> Any:
        return self.client if self.client is not None else get_remoting_client()

    def branch_register(
        self,
        branch_type: BranchType,
        resource_id: str,
        client_id: str,
        xid: str,
        application_data: str,
        lock_keys: str,
    ) -> int:
        """Register a branch and return the id the coordinator gave it."""
        request = BranchRegisterRequest(
            xid=xid,
            lock_key=lock_keys,
            resource_id=resource_id,
            branch_type=branch_type,
            application_data=application_data.encode("utf-8"),
        )
        response = self._transport().send_sync_request(request)
        if response is None:
            log.error("BranchRegister error: empty response")
            raise TransactionError("BranchRegister error: empty response")
        return response.branch_id

    def branch_report(
        self,
        branch_type: BranchType,
        xid: str,
        branch_id: int,
        status: BranchStatus,
        application_data: str,
    ) -> None:
        """Report the status of a branch."""
        request = BranchReportRequest(
            xid=xid,
            branch_id=branch_id,
            status=status,
            application_data=application_data.encode("utf-8"),
            branch_type=branch_type,
        )
        response = self._transport().send_sync_request(request)
        if not isinstance(response, BranchReportResponse) or response.result_code == ResultCode.FAILED:
            log.error("BranchReport error, res %r", response)
            raise TransactionError(f"BranchReport failed, res {response!r}")

    def lock_query(
        self, branch_type: BranchType, resource_id: str, xid: str, lock_keys: str
    ) -> bool:
        """Whether the given locks are held.

        The coordinator is not asked, so no lock is ever reported as held.
        An unknown branch type raises ValueError.
        """
        kind = BranchType(branch_type)
        keys = [key for key in lock_keys.split(";") if key]
        log.debug(
            "LockQuery %s resource %s xid %s keys %s: not locked",
            kind.name,
            resource_id,
            xid,
            keys,
        )
        return False

    def register_resource(self, resource: Resource) -> bool:
        """Announce ``resource`` to the coordinator; return whether it was accepted."""
        request = RegisterRMRequest(
            version=RM_VERSION,
            application_id=RM_APPLICATION_ID,
            transaction_service_group=RM_TRANSACTION_SERVICE_GROUP,
            resource_ids=resource.resource_id,
        )
        try:
            response = self._transport().send_sync_request(request)
        except Exception as exc:
            log.error("RegisterResourceManager error: %s", exc)
            raise
        identified = isinstance(response, RegisterRMResponse) and response.identified
        if identified:
            log.info("register RM success. response: %r", response)
        else:
            log.info("register RM failure. response: %r", response)
        return identified


@functools.lru_cache(maxsize=None)
def get_rm_cache_instance() -> ResourceManagerCache:
    """The process-wide ResourceManagerCache."""
    return ResourceManagerCache()


@functools.lru_cache(maxsize=None)
def get_rm_remoting_instance() -> RMRemoting:
    """The process-wide RMRemoting."""
    return RMRemoting()