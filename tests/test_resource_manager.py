import pytest

from globaltx.global_transaction import ResultCode, TransactionError
from globaltx.resource_manager import (
    RM_VERSION,
    BranchRegisterRequest,
    BranchRegisterResponse,
    BranchReportRequest,
    BranchReportResponse,
    BranchStatus,
    BranchType,
    RegisterRMRequest,
    RegisterRMResponse,
    Resource,
    ResourceManager,
    ResourceManagerCache,
    RMRemoting,
    get_rm_cache_instance,
    get_rm_remoting_instance,
)


class FakeClient:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def send_sync_request(self, msg):
        self.requests.append(msg)
        if self.error is not None:
            raise self.error
        return self.response


class DemoResource(Resource):
    def __init__(self, resource_id):
        self._resource_id = resource_id

    @property
    def resource_group_id(self):
        return "DEFAULT"

    @property
    def resource_id(self):
        return self._resource_id

    @property
    def branch_type(self):
        return BranchType.TCC


class DemoManager(ResourceManager):
    def __init__(self, branch_type):
        self.branch_type = branch_type

    def branch_commit(self, ctx, branch_type, xid, branch_id, resource_id, application_data):
        return BranchStatus.PHASETWO_COMMITTED

    def branch_rollback(self, ctx, branch_type, xid, branch_id, resource_id, application_data):
        return BranchStatus.PHASETWO_ROLLBACKED

    def branch_register(
        self, ctx, branch_type, resource_id, client_id, xid, application_data, lock_keys
    ):
        return 0

    def register_resource(self, resource):
        return True


def test_cache_returns_registered_manager():
    cache = ResourceManagerCache()
    tcc = DemoManager(BranchType.TCC)
    at = DemoManager(BranchType.AT)
    cache.register_resource_manager(tcc)
    cache.register_resource_manager(at)
    assert cache.get_resource_manager(BranchType.TCC) is tcc
    assert cache.get_resource_manager(BranchType.AT) is at


def test_cache_replaces_manager_of_same_type():
    cache = ResourceManagerCache()
    first = DemoManager(BranchType.TCC)
    second = DemoManager(BranchType.TCC)
    cache.register_resource_manager(first)
    cache.register_resource_manager(second)
    assert cache.get_resource_manager(BranchType.TCC) is second


def test_cache_missing_manager_raises():
    with pytest.raises(LookupError, match="No ResourceManagerCache for BranchType"):
        ResourceManagerCache().get_resource_manager(BranchType.XA)


def test_shared_cache_keeps_registrations():
    manager = DemoManager(BranchType.XA)
    get_rm_cache_instance().register_resource_manager(manager)
    assert get_rm_cache_instance().get_resource_manager(BranchType.XA) is manager


def test_shared_remoting_lock_query():
    remoting = get_rm_remoting_instance()
    assert remoting.lock_query(BranchType.AT, "res", "xid", "k") is False


def test_branch_register_returns_branch_id():
    client = FakeClient(response=BranchRegisterResponse(branch_id=2645276141))
    branch_id = RMRemoting(client).branch_register(
        BranchType.TCC, "res-1", "", "xid-1", '{"a":1}', "k1"
    )
    assert branch_id == 2645276141
    assert client.requests == [
        BranchRegisterRequest(
            xid="xid-1",
            lock_key="k1",
            resource_id="res-1",
            branch_type=BranchType.TCC,
            application_data=b'{"a":1}',
        )
    ]


def test_branch_register_empty_response_raises():
    with pytest.raises(TransactionError):
        RMRemoting(FakeClient()).branch_register(BranchType.TCC, "res-1", "", "xid-1", "", "")


def test_branch_register_propagates_transport_error():
    client = FakeClient(error=ConnectionError("down"))
    with pytest.raises(ConnectionError, match="down"):
        RMRemoting(client).branch_register(BranchType.TCC, "res-1", "", "xid-1", "", "")


def test_branch_report_success_sends_request():
    client = FakeClient(response=BranchReportResponse(result_code=ResultCode.SUCCESS))
    RMRemoting(client).branch_report(
        BranchType.AT, "xid-1", 7, BranchStatus.PHASEONE_DONE, "data"
    )
    assert client.requests == [
        BranchReportRequest(
            xid="xid-1",
            branch_id=7,
            status=BranchStatus.PHASEONE_DONE,
            application_data=b"data",
            branch_type=BranchType.AT,
        )
    ]


@pytest.mark.parametrize(
    "response", [None, BranchReportResponse(result_code=ResultCode.FAILED), "other"]
)
def test_branch_report_failure_raises(response):
    with pytest.raises(TransactionError, match="BranchReport failed"):
        RMRemoting(FakeClient(response=response)).branch_report(
            BranchType.AT, "xid-1", 7, BranchStatus.PHASEONE_DONE, ""
        )


def test_lock_query_is_false():
    assert RMRemoting(FakeClient()).lock_query(BranchType.AT, "res", "xid", "k") is False


def test_register_resource_identified():
    client = FakeClient(response=RegisterRMResponse(identified=True))
    assert RMRemoting(client).register_resource(DemoResource("res-9")) is True
    request = client.requests[0]
    assert isinstance(request, RegisterRMRequest)
    assert request.resource_ids == "res-9"
    assert request.version == RM_VERSION
    assert request.version == "1.5.2"
    assert request.application_id == "tcc-sample"
    assert request.transaction_service_group == "my_test_tx_group"


@pytest.mark.parametrize("response", [None, RegisterRMResponse(identified=False)])
def test_register_resource_not_identified(response):
    assert RMRemoting(FakeClient(response=response)).register_resource(DemoResource("r")) is False


def test_register_resource_propagates_error():
    client = FakeClient(error=TimeoutError("wait response timeout"))
    with pytest.raises(TimeoutError, match="wait response timeout"):
        RMRemoting(client).register_resource(DemoResource("r"))