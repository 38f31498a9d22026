import logging

import pytest

from globaltx.client_handler import ClientHandler, MessageType
from globaltx.context import Context
from globaltx.frame import GettyRequestType, HeartBeatMessage, RpcMessage
from globaltx.global_transaction import GlobalBeginResponse, ResultCode, TransactionError
from globaltx.processors import (
    BranchCommitRequest,
    BranchCommitResponse,
    BranchRollbackRequest,
    BranchRollbackResponse,
    ClientHeartBeatProcessor,
    ClientOnResponseProcessor,
    MergeResultMessage,
    RmBranchCommitProcessor,
    RmBranchRollbackProcessor,
    register_processors,
)
from globaltx.remoting import Remoting, RemotingClient, Session, SessionManager
from globaltx.resource_manager import (
    BranchStatus,
    BranchType,
    RegisterRMResponse,
    ResourceManagerCache,
    RMRemoting,
)
from globaltx.tcc import TCCResourceManager, parse_tcc_resource

HEAD_MAP = {"name": " Jack", "age": "12", "address": "Beijing"}


class RecordingSession(Session):
    def __init__(self):
        self.sent = []
        self.closed = False

    def is_closed(self):
        return self.closed

    def remote_addr(self):
        return "127.0.0.1:8091"

    def write_pkg(self, pkg):
        self.sent.append(pkg)

    def close(self):
        self.closed = True


class FakeTransport:
    def send_sync_request(self, msg):
        return RegisterRMResponse(identified=True)


class Service:
    def __init__(self, name, fail=False):
        self.name = name
        self.fail = fail
        self.seen = []

    def prepare(self, ctx, *args):
        return True

    def commit(self, ctx, business_action_context):
        if self.fail:
            raise RuntimeError("commit refused")
        self.seen.append(business_action_context)
        return True

    def rollback(self, ctx, business_action_context):
        if self.fail:
            raise RuntimeError("rollback refused")
        self.seen.append(business_action_context)
        return True

    def get_action_name(self):
        return self.name


def _remoting_with_session():
    session = RecordingSession()
    remoting = Remoting(SessionManager(max_check_alive_retry=1, check_alive_interval=0.01))
    remoting.session_manager.register_session(session)
    return remoting, session


def _cache_with(service):
    manager = TCCResourceManager(rm_remoting=RMRemoting(client=FakeTransport()))
    manager.register_resource(parse_tcc_resource(service))
    cache = ResourceManagerCache()
    cache.register_resource_manager(manager)
    return cache


@pytest.mark.parametrize(
    "msg_id, head_map, ping, expect_pong",
    [
        (123, HEAD_MAP, True, False),
        (124, {"name": " Mike", "age": "20", "address": "Hunan"}, False, True),
    ],
)
def test_heartbeat_processor(caplog, msg_id, head_map, ping, expect_pong):
    caplog.set_level(logging.DEBUG, logger="globaltx.processors")
    message = RpcMessage(
        id=msg_id,
        type=GettyRequestType.HEARTBEAT_REQUEST,
        compressor=1,
        head_map=head_map,
        body=HeartBeatMessage(ping=ping),
    )
    result = ClientHeartBeatProcessor().process(Context(), message)
    assert result is None
    pongs = [r for r in caplog.records if "received PONG" in r.getMessage()]
    assert bool(pongs) is expect_pong


def test_on_response_merge_result_without_merged_message_leaves_future():
    remoting, _ = _remoting_with_session()
    remoting.send_async(RpcMessage(id=123, body=b"request"))
    future = remoting.get_message_future(123)
    message = RpcMessage(
        id=123,
        type=GettyRequestType.RESPONSE,
        compressor=1,
        head_map=HEAD_MAP,
        body=MergeResultMessage(msgs=()),
    )
    ClientOnResponseProcessor(remoting).process(Context(), message)
    assert not future.done.is_set()
    assert remoting.get_message_future(123) is future


def test_on_response_resolves_waiting_future():
    remoting, _ = _remoting_with_session()
    remoting.send_async(RpcMessage(id=124, body=b"request"))
    future = remoting.get_message_future(124)
    body = GlobalBeginResponse(result_code=ResultCode.SUCCESS, msg="success", xid="124")
    ClientOnResponseProcessor(remoting).process(
        Context(), RpcMessage(id=124, type=GettyRequestType.RESPONSE, body=body)
    )
    assert future.done.is_set()
    assert future.response == body
    assert remoting.get_message_future(124) is None


def test_on_response_without_future_only_logs(caplog):
    caplog.set_level(logging.INFO, logger="globaltx.processors")
    remoting, _ = _remoting_with_session()
    body = GlobalBeginResponse(result_code=ResultCode.FAILED, msg="failed")
    ClientOnResponseProcessor(remoting).process(
        Context(), RpcMessage(id=125, type=GettyRequestType.RESPONSE, body=body)
    )
    assert remoting.get_message_future(125) is None
    assert any("received response msg" in r.getMessage() for r in caplog.records)


def test_branch_commit_unknown_resource_fails():
    cache = ResourceManagerCache()
    cache.register_resource_manager(TCCResourceManager())
    message = RpcMessage(
        id=123,
        type=MessageType.BRANCH_COMMIT,
        compressor=1,
        head_map=HEAD_MAP,
        body=BranchCommitRequest(
            xid="123344",
            branch_id=56678,
            branch_type=BranchType.TCC,
            resource_id="1232323",
            application_data=b"TestExtraData",
        ),
    )
    with pytest.raises(TransactionError, match="resource is not exist, resourceId: 1232323"):
        RmBranchCommitProcessor(rm_cache=cache).process(Context(), message)


def test_branch_rollback_unknown_resource_fails():
    cache = ResourceManagerCache()
    cache.register_resource_manager(TCCResourceManager())
    message = RpcMessage(
        id=223,
        type=MessageType.BRANCH_ROLLBACK,
        compressor=1,
        head_map=HEAD_MAP,
        body=BranchRollbackRequest(
            xid="123345",
            branch_id=56679,
            branch_type=BranchType.TCC,
            resource_id="1232324",
            application_data=b"TestExtraData",
        ),
    )
    with pytest.raises(TransactionError, match="resource is not exist, resourceId: 1232324"):
        RmBranchRollbackProcessor(rm_cache=cache).process(Context(), message)


def test_branch_commit_without_manager_raises_lookup_error():
    request = BranchCommitRequest(xid="1", branch_id=1, branch_type=BranchType.TCC, resource_id="r")
    with pytest.raises(LookupError):
        RmBranchCommitProcessor(rm_cache=ResourceManagerCache()).process(
            Context(), RpcMessage(id=1, body=request)
        )


def test_branch_commit_success_replies_committed():
    service = Service("CommitService")
    remoting, session = _remoting_with_session()
    processor = RmBranchCommitProcessor(rm_cache=_cache_with(service), client=RemotingClient(remoting))
    request = BranchCommitRequest(
        xid="123344",
        branch_id=56678,
        branch_type=BranchType.TCC,
        resource_id="CommitService",
        application_data=b'{"actionContext":{"zhangsan":"lisi"}}',
    )
    processor.process(Context(), RpcMessage(id=123, body=request))

    assert service.seen[0].xid == "123344"
    assert service.seen[0].branch_id == 56678
    assert service.seen[0].action_context == {"zhangsan": "lisi"}
    reply = session.sent[-1]
    assert reply.id == 123
    assert reply.type == GettyRequestType.RESPONSE
    assert reply.body == BranchCommitResponse(
        result_code=ResultCode.SUCCESS,
        xid="123344",
        branch_id=56678,
        branch_status=BranchStatus.PHASETWO_COMMITTED,
    )


def test_branch_rollback_success_replies_rollbacked():
    service = Service("RollbackService")
    remoting, session = _remoting_with_session()
    processor = RmBranchRollbackProcessor(
        rm_cache=_cache_with(service), client=RemotingClient(remoting)
    )
    request = BranchRollbackRequest(
        xid="123345", branch_id=56679, branch_type=BranchType.TCC, resource_id="RollbackService"
    )
    processor.process(Context(), RpcMessage(id=223, body=request))
    assert session.sent[-1].id == 223
    assert session.sent[-1].body == BranchRollbackResponse(
        result_code=ResultCode.SUCCESS,
        xid="123345",
        branch_id=56679,
        branch_status=BranchStatus.PHASETWO_ROLLBACKED,
    )


def test_failing_commit_sends_no_reply():
    service = Service("FailingService", fail=True)
    remoting, session = _remoting_with_session()
    processor = RmBranchCommitProcessor(rm_cache=_cache_with(service), client=RemotingClient(remoting))
    request = BranchCommitRequest(
        xid="9", branch_id=9, branch_type=BranchType.TCC, resource_id="FailingService"
    )
    with pytest.raises(TransactionError) as info:
        processor.process(Context(), RpcMessage(id=9, body=request))
    assert info.value.branch_status == BranchStatus.PHASETWO_COMMIT_FAILED_RETRYABLE
    assert session.sent == []


def test_commit_processor_rejects_wrong_body():
    with pytest.raises(TypeError):
        RmBranchCommitProcessor(rm_cache=ResourceManagerCache()).process(
            Context(), RpcMessage(id=1, body=BranchRollbackRequest())
        )


def test_register_processors_wires_handler():
    remoting, _ = _remoting_with_session()
    handler = register_processors(ClientHandler(remoting=remoting))
    assert isinstance(handler.processors[MessageType.HEARTBEAT_MSG], ClientHeartBeatProcessor)
    assert isinstance(handler.processors[MessageType.BRANCH_COMMIT], RmBranchCommitProcessor)
    assert isinstance(handler.processors[MessageType.BRANCH_ROLLBACK], RmBranchRollbackProcessor)
    on_response = handler.processors[MessageType.GLOBAL_BEGIN_RESULT]
    assert isinstance(on_response, ClientOnResponseProcessor)
    assert handler.processors[MessageType.SEATA_MERGE_RESULT] is on_response
    assert on_response.remoting is remoting


def test_handler_dispatches_response_to_future():
    remoting, session = _remoting_with_session()
    handler = register_processors(ClientHandler(remoting=remoting))
    remoting.send_async(RpcMessage(id=77, body=b"request"))
    future = remoting.get_message_future(77)
    body = GlobalBeginResponse(xid="77")
    handler.on_message(session, RpcMessage(id=77, type=GettyRequestType.RESPONSE, body=body))
    assert future.done.is_set()
    assert future.response == body