"""Processors for the messages the coordinator sends to this client."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from .client_handler import ClientHandler, MessageType, get_client_handler
from .context import Context
from .frame import HeartBeatMessage, RpcMessage
from .global_transaction import ResultCode
from .remoting import (
    Remoting,
    RemotingClient,
    RemotingProcessor,
    get_remoting_client,
    get_remoting_instance,
)
from .resource_manager import (
    BranchStatus,
    BranchType,
    ResourceManager,
    ResourceManagerCache,
    get_rm_cache_instance,
)

log = logging.getLogger(__name__)

RESPONSE_MESSAGE_TYPES = (
    MessageType.SEATA_MERGE_RESULT,
    MessageType.BRANCH_REGISTER_RESULT,
    MessageType.BRANCH_STATUS_REPORT_RESULT,
    MessageType.GLOBAL_LOCK_QUERY_RESULT,
    MessageType.REG_RM_RESULT,
    MessageType.GLOBAL_BEGIN_RESULT,
    MessageType.GLOBAL_COMMIT_RESULT,
    MessageType.GLOBAL_REPORT_RESULT,
    MessageType.GLOBAL_ROLLBACK_RESULT,
    MessageType.GLOBAL_STATUS_RESULT,
    MessageType.REG_CLT_RESULT,
)


@dataclass(frozen=True)
class MergeResultMessage:
    """Responses to a batch of merged requests, in request order."""

    type_code: ClassVar[MessageType] = MessageType.SEATA_MERGE_RESULT

    msgs: tuple[Any, ...] = ()


@dataclass(frozen=True)
class BranchCommitRequest:
    """The coordinator asks this client to commit one branch."""

    type_code: ClassVar[MessageType] = MessageType.BRANCH_COMMIT

    xid: str = ""
    branch_id: int = 0
    branch_type: BranchType = BranchType.AT
    resource_id: str = ""
    application_data: bytes = b""


@dataclass(frozen=True)
class BranchRollbackRequest:
    """The coordinator asks this client to roll back one branch."""

    type_code: ClassVar[MessageType] = MessageType.BRANCH_ROLLBACK

    xid: str = ""
    branch_id: int = 0
    branch_type: BranchType = BranchType.AT
    resource_id: str = ""
    application_data: bytes = b""


@dataclass(frozen=True)
class BranchCommitResponse:
    """Outcome of a branch commit, sent back to the coordinator."""

    type_code: ClassVar[MessageType] = MessageType.BRANCH_COMMIT_RESULT

    result_code: ResultCode = ResultCode.SUCCESS
    msg: str = ""
    xid: str = ""
    branch_id: int = 0
    branch_status: BranchStatus = BranchStatus.UNKNOWN


@dataclass(frozen=True)
class BranchRollbackResponse:
    """Outcome of a branch rollback, sent back to the coordinator."""

    type_code: ClassVar[MessageType] = MessageType.BRANCH_ROLLBACK_RESULT

    result_code: ResultCode = ResultCode.SUCCESS
    msg: str = ""
    xid: str = ""
    branch_id: int = 0
    branch_status: BranchStatus = BranchStatus.UNKNOWN


class ClientHeartBeatProcessor(RemotingProcessor):
    """Notes heartbeat replies from the coordinator."""

    def process(self, ctx: Context, rpc_message: RpcMessage) -> None:
        body = rpc_message.body
        if isinstance(body, HeartBeatMessage) and not body.ping:
            log.debug("received PONG from %s", ctx)


class ClientOnResponseProcessor(RemotingProcessor):
    """Hands responses from the coordinator to the requests waiting for them."""

    def __init__(self, remoting: Remoting | None = None) -> None:
        self._remoting = remoting

    @property
    def remoting(self) -> Remoting:
        return self._remoting if self._remoting is not None else get_remoting_instance()

    def process(self, ctx: Context, rpc_message: RpcMessage) -> None:
        log.info("the rm client received clientOnResponse msg %r from tc server.", rpc_message)
        remoting = self.remoting
        body = rpc_message.body
        if isinstance(body, MergeResultMessage):
            merged = remoting.get_merged_message(rpc_message.id)
            if merged is None:
                return
            for msg_id, response in zip(merged.msg_ids, body.msgs):
                future = remoting.get_message_future(msg_id)
                if future is not None:
                    future.response = response
                    future.done.set()
                    remoting.remove_message_future(msg_id)
            remoting.remove_merged_message_future(rpc_message.id)
            return

        if remoting.get_message_future(rpc_message.id) is not None:
            remoting.notify_rpc_message_response(rpc_message)
            remoting.remove_message_future(rpc_message.id)
        elif hasattr(body, "result_code"):
            log.info("the rm client received response msg [%r] from tc server.", body)


class _BranchEndProcessor(RemotingProcessor):
    """Runs the second phase of a branch and replies with its outcome."""

    _phase: ClassVar[str]
    _request_type: ClassVar[type]

    def __init__(
        self,
        rm_cache: ResourceManagerCache | None = None,
        client: RemotingClient | None = None,
    ) -> None:
        self._rm_cache = rm_cache
        self._client = client

    @property
    def rm_cache(self) -> ResourceManagerCache:
        return self._rm_cache if self._rm_cache is not None else get_rm_cache_instance()

    @property
    def client(self) -> RemotingClient:
        return self._client if self._client is not None else get_remoting_client()

    def _run(self, manager: ResourceManager, ctx: Context, request: Any) -> BranchStatus:
        raise NotImplementedError

    def _response(self, request: Any, status: BranchStatus) -> Any:
        raise NotImplementedError

    def process(self, ctx: Context, rpc_message: RpcMessage) -> None:
        request = rpc_message.body
        if not isinstance(request, self._request_type):
            raise TypeError(
                f"branch {self._phase} processor got {type(request).__name__}, "
                f"expected {self._request_type.__name__}"
            )
        log.info(
            "Branch %s request: xid %s, branchID %s, resourceID %s, applicationData %r",
            self._phase,
            request.xid,
            request.branch_id,
            request.resource_id,
            request.application_data,
        )
        manager = self.rm_cache.get_resource_manager(request.branch_type)
        try:
            status = self._run(manager, ctx, request)
        except Exception as exc:
            log.info("branch %s error: %s", self._phase, exc)
            raise
        log.info("branch %s success: xid %s, branchID %s", self._phase, request.xid, request.branch_id)

        try:
            self.client.send_async_response(rpc_message.id, self._response(request, status))
        except Exception as exc:
            log.error("send branch %s response error: %s", self._phase, exc)
            raise
        log.info(
            "send branch %s response success: xid %s, branchID %s",
            self._phase,
            request.xid,
            request.branch_id,
        )


class RmBranchCommitProcessor(_BranchEndProcessor):
    """Commits a branch on the coordinator's request."""

    _phase = "commit"
    _request_type = BranchCommitRequest

    def _run(self, manager: ResourceManager, ctx: Context, request: Any) -> BranchStatus:
        return manager.branch_commit(
            ctx,
            request.branch_type,
            request.xid,
            request.branch_id,
            request.resource_id,
            request.application_data,
        )

    def _response(self, request: Any, status: BranchStatus) -> BranchCommitResponse:
        return BranchCommitResponse(
            result_code=ResultCode.SUCCESS,
            xid=request.xid,
            branch_id=request.branch_id,
            branch_status=status,
        )

    def process(self, ctx: Context, rpc_message: RpcMessage) -> None:
        super().process(ctx, rpc_message)


class RmBranchRollbackProcessor(_BranchEndProcessor):
    """Rolls back a branch on the coordinator's request."""

    _phase = "rollback"
    _request_type = BranchRollbackRequest

    def _run(self, manager: ResourceManager, ctx: Context, request: Any) -> BranchStatus:
        return manager.branch_rollback(
            ctx,
            request.branch_type,
            request.xid,
            request.branch_id,
            request.resource_id,
            request.application_data,
        )

    def _response(self, request: Any, status: BranchStatus) -> BranchRollbackResponse:
        return BranchRollbackResponse(
            result_code=ResultCode.SUCCESS,
            xid=request.xid,
            branch_id=request.branch_id,
            branch_status=status,
        )

    def process(self, ctx: Context, rpc_message: RpcMessage) -> None:
        super().process(ctx, rpc_message)


def register_processors(handler: ClientHandler | None = None) -> ClientHandler:
    """Register every client-side processor with ``handler`` and return it."""
    if handler is None:
        handler = get_client_handler()
    handler.register_processor(MessageType.HEARTBEAT_MSG, ClientHeartBeatProcessor())
    on_response = ClientOnResponseProcessor(handler.remoting)
    for msg_type in RESPONSE_MESSAGE_TYPES:
        handler.register_processor(msg_type, on_response)
    handler.register_processor(
        MessageType.BRANCH_COMMIT, RmBranchCommitProcessor(client=handler.client)
    )
    handler.register_processor(
        MessageType.BRANCH_ROLLBACK, RmBranchRollbackProcessor(client=handler.client)
    )
    return handler


register_processors()