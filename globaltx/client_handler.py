"""Session events and dispatch of incoming messages to their processors."""

from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, ClassVar

from .context import Context
from .frame import (
    CODEC_SEATA,
    HEARTBEAT_PING,
    GettyRequestType,
    HeartBeatMessage,
    RpcMessage,
)
from .global_transaction import (
    GlobalBeginRequest,
    GlobalBeginResponse,
    GlobalCommitRequest,
    GlobalCommitResponse,
    GlobalRollbackRequest,
    GlobalRollbackResponse,
)
from .remoting import (
    Remoting,
    RemotingClient,
    RemotingProcessor,
    Session,
    get_remoting_client,
    get_remoting_instance,
)
from .resource_manager import (
    RM_TRANSACTION_SERVICE_GROUP,
    RM_VERSION,
    BranchRegisterRequest,
    BranchRegisterResponse,
    BranchReportRequest,
    BranchReportResponse,
    RegisterRMRequest,
    RegisterRMResponse,
)

log = logging.getLogger(__name__)

DEFAULT_APPLICATION_ID = "seata-go"


class MessageType(IntEnum):
    """Type codes of the messages in the transaction protocol."""

    GLOBAL_BEGIN = 1
    GLOBAL_BEGIN_RESULT = 2
    BRANCH_COMMIT = 3
    BRANCH_COMMIT_RESULT = 4
    BRANCH_ROLLBACK = 5
    BRANCH_ROLLBACK_RESULT = 6
    GLOBAL_COMMIT = 7
    GLOBAL_COMMIT_RESULT = 8
    GLOBAL_ROLLBACK = 9
    GLOBAL_ROLLBACK_RESULT = 10
    BRANCH_REGISTER = 11
    BRANCH_REGISTER_RESULT = 12
    BRANCH_STATUS_REPORT = 13
    BRANCH_STATUS_REPORT_RESULT = 14
    GLOBAL_STATUS = 15
    GLOBAL_STATUS_RESULT = 16
    GLOBAL_REPORT = 17
    GLOBAL_REPORT_RESULT = 18
    GLOBAL_LOCK_QUERY = 21
    GLOBAL_LOCK_QUERY_RESULT = 22
    SEATA_MERGE = 59
    SEATA_MERGE_RESULT = 60
    REG_CLT = 101
    REG_CLT_RESULT = 102
    REG_RM = 103
    REG_RM_RESULT = 104
    RM_DELETE_UNDOLOG = 111
    HEARTBEAT_MSG = 120


@dataclass(frozen=True)
class RegisterTMRequest:
    """Announces this transaction manager to the coordinator."""

    type_code: ClassVar[MessageType] = MessageType.REG_CLT

    version: str = ""
    application_id: str = ""
    transaction_service_group: str = ""


_TYPE_CODES: dict[type, MessageType] = {
    HeartBeatMessage: MessageType.HEARTBEAT_MSG,
    GlobalBeginRequest: MessageType.GLOBAL_BEGIN,
    GlobalBeginResponse: MessageType.GLOBAL_BEGIN_RESULT,
    GlobalCommitRequest: MessageType.GLOBAL_COMMIT,
    GlobalCommitResponse: MessageType.GLOBAL_COMMIT_RESULT,
    GlobalRollbackRequest: MessageType.GLOBAL_ROLLBACK,
    GlobalRollbackResponse: MessageType.GLOBAL_ROLLBACK_RESULT,
    BranchRegisterRequest: MessageType.BRANCH_REGISTER,
    BranchRegisterResponse: MessageType.BRANCH_REGISTER_RESULT,
    BranchReportRequest: MessageType.BRANCH_STATUS_REPORT,
    BranchReportResponse: MessageType.BRANCH_STATUS_REPORT_RESULT,
    RegisterRMRequest: MessageType.REG_RM,
    RegisterRMResponse: MessageType.REG_RM_RESULT,
}


def _type_code_of(body: Any) -> MessageType | None:
    explicit = getattr(body, "type_code", None)
    if explicit is not None:
        try:
            return MessageType(explicit)
        except ValueError:
            return None
    for klass in type(body).__mro__:
        code = _TYPE_CODES.get(klass)
        if code is not None:
            return code
    return None


class ClientHandler:
    """Reacts to session events and hands incoming messages to processors."""

    def __init__(
        self,
        remoting: Remoting | None = None,
        client: RemotingClient | None = None,
        version: str = RM_VERSION,
        application_id: str = DEFAULT_APPLICATION_ID,
        transaction_service_group: str = RM_TRANSACTION_SERVICE_GROUP,
    ) -> None:
        self.remoting = remoting if remoting is not None else get_remoting_instance()
        if client is None:
            client = get_remoting_client() if remoting is None else RemotingClient(self.remoting)
        self.client = client
        self.session_manager = self.remoting.session_manager
        self.version = version
        self.application_id = application_id
        self.transaction_service_group = transaction_service_group
        self.processors: dict[MessageType, RemotingProcessor] = {}
        self._id_lock = threading.Lock()
        self._last_id = 0

    def _next_id(self) -> int:
        with self._id_lock:
            self._last_id = (self._last_id + 1) & 0xFFFFFFFF
            value = self._last_id
        return value - 0x1_0000_0000 if value & 0x8000_0000 else value

    def on_open(self, session: Session) -> threading.Thread:
        """Register ``session`` and announce this client over it in the background.

        Returns the thread doing the announcement.
        """
        log.info("Open new getty session")
        self.session_manager.register_session(session)
        request = RegisterTMRequest(
            version=self.version,
            application_id=self.application_id,
            transaction_service_group=self.transaction_service_group,
        )

        def announce() -> None:
            try:
                self.client.send_async_request(request)
            except Exception as exc:
                log.error("OnOpen error: %s", exc)
                self.session_manager.release_session(session)

        worker = threading.Thread(target=announce, name="register-tm", daemon=True)
        worker.start()
        return worker

    def on_error(self, session: Session, error: BaseException) -> None:
        log.info("session{%s} got error{%s}, will be closed.", session.stat(), error)
        self.session_manager.release_session(session)

    def on_close(self, session: Session) -> None:
        log.info("session{%s} is closing......", session.stat())
        self.session_manager.release_session(session)

    def on_message(self, session: Session, pkg: Any) -> None:
        """Dispatch an incoming message to the processor for its type."""
        log.debug("received message: %r", pkg)
        if not isinstance(pkg, RpcMessage):
            log.error("received message is not protocol.RpcMessage. pkg: %r", pkg)
            return
        code = _type_code_of(pkg.body)
        if code is None:
            log.error("This rpcMessage body %r is not MessageTypeAware type.", pkg.body)
            return
        processor = self.processors.get(code)
        if processor is None:
            log.error("This message type %s has no processor.", code)
            return
        try:
            processor.process(Context(), pkg)
        except Exception:
            log.exception("processor for message type %s failed", code)

    def on_cron(self, session: Session) -> None:
        """Send a heartbeat ping over ``session``."""
        log.debug("session{%s} Oncron executing", session.stat())
        self._transfer_heartbeat(session, HEARTBEAT_PING)

    def _transfer_heartbeat(self, session: Session, msg: HeartBeatMessage) -> None:
        message = RpcMessage(
            id=self._next_id(),
            type=GettyRequestType.HEARTBEAT_REQUEST,
            codec=CODEC_SEATA,
            compressor=0,
            body=msg,
        )
        self.remoting.send_async(message, session, None)

    def register_processor(self, msg_type: MessageType, processor: RemotingProcessor | None) -> None:
        if processor is not None:
            self.processors[MessageType(msg_type)] = processor


@functools.lru_cache(maxsize=None)
def get_client_handler() -> ClientHandler:
    """The process-wide ClientHandler."""
    return ClientHandler()