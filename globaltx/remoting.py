"""Sending RPC messages over sessions and matching responses to requests."""

from __future__ import annotations

import functools
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from .context import Context
from .frame import (
    CODEC_SEATA,
    GettyRequestType,
    HeartBeatMessage,
    RpcMessage,
)

log = logging.getLogger(__name__)

RPC_REQUEST_TIMEOUT = 2.0
MAX_CHECK_ALIVE_RETRY = 600
CHECK_ALIVE_INTERVAL = 0.1


class MessageFuture:
    """Pending response to a request that was sent."""

    def __init__(self, message: RpcMessage) -> None:
        self.id = message.id
        self.message = message
        self.response: Any = None
        self.error: Optional[BaseException] = None
        self.done = threading.Event()


Callback = Callable[[RpcMessage, MessageFuture], Any]


class Session(ABC):
    """A connection to a coordinator that frames can be written to."""

    @abstractmethod
    def is_closed(self) -> bool: ...

    @abstractmethod
    def remote_addr(self) -> str: ...

    @abstractmethod
    def write_pkg(self, pkg: RpcMessage) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    def stat(self) -> str:
        return f"{type(self).__name__}({self.remote_addr()})"


class RemotingProcessor(ABC):
    """Handles one kind of incoming message."""

    @abstractmethod
    def process(self, ctx: Context, rpc_message: RpcMessage) -> None: ...


class SessionManager:
    """Keeps track of open sessions, grouped by remote address."""

    def __init__(
        self,
        max_check_alive_retry: int = MAX_CHECK_ALIVE_RETRY,
        check_alive_interval: float = CHECK_ALIVE_INTERVAL,
    ) -> None:
        self.max_check_alive_retry = max_check_alive_retry
        self.check_alive_interval = check_alive_interval
        self._lock = threading.RLock()
        self._all_sessions: dict[Session, bool] = {}
        self._server_sessions: dict[str, dict[Session, bool]] = {}

    @property
    def session_size(self) -> int:
        with self._lock:
            return len(self._all_sessions)

    def _first_open(self) -> Session | None:
        with self._lock:
            candidates = list(self._all_sessions)
        for session in candidates:
            if session.is_closed():
                self.release_session(session)
            else:
                return session
        return None

    def select_session(self) -> Session | None:
        """Return an open session, waiting for one if none is registered."""
        session = self._first_open()
        if session is not None:
            return session
        if self.session_size == 0:
            for _ in range(self.max_check_alive_retry):
                time.sleep(self.check_alive_interval)
                session = self._first_open()
                if session is not None:
                    return session
        return None

    def release_session(self, session: Session) -> None:
        """Forget ``session`` and close it if it is still open."""
        with self._lock:
            self._all_sessions.pop(session, None)
            if not session.is_closed():
                self._server_sessions.get(session.remote_addr(), {}).pop(session, None)
        if not session.is_closed():
            session.close()

    def register_session(self, session: Session) -> None:
        with self._lock:
            self._all_sessions[session] = True
            self._server_sessions.setdefault(session.remote_addr(), {})[session] = True


class Remoting:
    """Writes messages to sessions and keeps the futures awaiting responses."""

    def __init__(self, session_manager: SessionManager | None = None) -> None:
        self.session_manager = session_manager if session_manager is not None else SessionManager()
        self._lock = threading.Lock()
        self._futures: dict[int, MessageFuture] = {}
        self._merged_messages: dict[int, Any] = {}

    def send_sync(
        self,
        message: RpcMessage,
        session: Session | None = None,
        callback: Callback | None = None,
    ) -> Any:
        """Send ``message`` and return what the callback makes of the future."""
        return self._send(message, session, callback)

    def send_async(
        self,
        message: RpcMessage,
        session: Session | None = None,
        callback: Callback | None = None,
    ) -> None:
        self._send(message, session, callback)

    def _send(self, message: RpcMessage, session: Session | None, callback: Callback | None) -> Any:
        if session is None:
            session = self.session_manager.select_session()
        if isinstance(message.body, HeartBeatMessage):
            log.debug("send async message: %r", message)
        else:
            log.info("send async message: %r", message)
        if session is None or session.is_closed():
            log.warning("sendAsyncRequestWithResponse nothing, caused by null channel.")
            return None

        future = MessageFuture(message)
        with self._lock:
            self._futures[message.id] = future
        try:
            session.write_pkg(message)
        except Exception:
            self.remove_message_future(message.id)
            log.error("send message: %r, session: %s", message, session.stat())
            raise
        if callback is not None:
            return callback(message, future)
        return None

    def get_message_future(self, msg_id: int) -> MessageFuture | None:
        with self._lock:
            return self._futures.get(msg_id)

    def remove_message_future(self, msg_id: int) -> None:
        with self._lock:
            self._futures.pop(msg_id, None)

    def remove_merged_message_future(self, msg_id: int) -> None:
        with self._lock:
            self._merged_messages.pop(msg_id, None)

    def get_merged_message(self, msg_id: int) -> Any:
        with self._lock:
            return self._merged_messages.get(msg_id)

    def notify_rpc_message_response(self, rpc_message: RpcMessage) -> None:
        """Hand a response to the future waiting for the same message id."""
        future = self.get_message_future(rpc_message.id)
        if future is None:
            log.info("msg: %s is not found in msgFutures.", rpc_message.id)
            return
        future.response = rpc_message.body
        future.done.set()


class RemotingClient:
    """Builds request frames with fresh ids and sends them through a Remoting."""

    def __init__(self, remoting: Remoting | None = None, timeout: float = RPC_REQUEST_TIMEOUT) -> None:
        self.remoting = remoting if remoting is not None else get_remoting_instance()
        self.timeout = timeout
        self._id_lock = threading.Lock()
        self._last_id = 0

    def _next_id(self) -> int:
        with self._id_lock:
            self._last_id = (self._last_id + 1) & 0xFFFFFFFF
            value = self._last_id
        return value - 0x1_0000_0000 if value & 0x8000_0000 else value

    def send_async_request(self, msg: Any) -> None:
        msg_type = (
            GettyRequestType.HEARTBEAT_REQUEST
            if isinstance(msg, HeartBeatMessage)
            else GettyRequestType.REQUEST_ONEWAY
        )
        message = RpcMessage(id=self._next_id(), type=msg_type, codec=CODEC_SEATA, body=msg)
        self.remoting.send_async(message)

    def send_async_response(self, msg_id: int, msg: Any) -> None:
        message = RpcMessage(id=msg_id, type=GettyRequestType.RESPONSE, codec=CODEC_SEATA, body=msg)
        self.remoting.send_async(message)

    def send_sync_request(self, msg: Any) -> Any:
        """Send a request and wait for its response.

        Returns None when no session is available; raises TimeoutError when
        no response arrives in time.
        """
        message = RpcMessage(
            id=self._next_id(), type=GettyRequestType.REQUEST_SYNC, codec=CODEC_SEATA, body=msg
        )
        return self.remoting.send_sync(message, None, self._sync_callback)

    def _sync_callback(self, request: RpcMessage, future: MessageFuture) -> Any:
        if not future.done.wait(self.timeout):
            self.remoting.remove_merged_message_future(request.id)
            log.error("wait resp timeout: %r", request)
            raise TimeoutError(f"wait response timeout, request: {request!r}")
        if future.error is not None:
            raise future.error
        return future.response


@functools.lru_cache(maxsize=None)
def get_remoting_instance() -> Remoting:
    """The process-wide Remoting."""
    return Remoting()


@functools.lru_cache(maxsize=None)
def get_remoting_client() -> RemotingClient:
    """The process-wide RemotingClient."""
    return RemotingClient(get_remoting_instance())