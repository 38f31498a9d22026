# globaltx

The client side of a distributed transaction framework. It lets a Python
service begin global transactions and take part in them as a TCC
(Try / Confirm / Cancel) branch, and it encodes and decodes the binary RPC
frames exchanged with a transaction coordinator.

The package uses only the standard library.

## Installation

```
pip install .
```

To run the tests, install the `test` extra and run pytest:

```
pip install ".[test]"
pytest
```

## What is in the package

| Module | Purpose |
| --- | --- |
| `globaltx.context` | `Context`, an immutable key/value chain, and the transaction state carried in it: xid, name, status, role and the `BusinessActionContext`. Also the `Propagation`, `GlobalTransactionRole` and `GlobalStatus` enums and `SuspendedResourcesHolder`. |
| `globaltx.two_phase` | `parse_two_phase_action` finds the prepare / commit / rollback steps of a service and wraps them in a `TwoPhaseAction`; `two_phase` marks them; `is_two_phase_action` tests a service. |
| `globaltx.frame` | `RpcMessage`, `GettyRequestType`, `HeartBeatMessage`, `encode_head_map` / `decode_head_map` and `RpcPackageHandler`, which writes and reads the binary frame. |
| `globaltx.remoting` | `Session` and `RemotingProcessor` (abstract), `SessionManager`, `MessageFuture`, `Remoting` and `RemotingClient`, with the shared instances from `get_remoting_instance()` and `get_remoting_client()`. |
| `globaltx.global_transaction` | `GlobalTransactionManager` (begin, commit, rollback), the request and response messages, and the `begin` and `commit_or_rollback` helpers. |
| `globaltx.resource_manager` | `BranchType`, `BranchStatus`, the abstract `Resource` and `ResourceManager`, `ResourceManagerCache` and `RMRemoting` (branch register, branch report, lock query, resource registration). |
| `globaltx.tcc` | `TCCResource`, `TCCResourceManager` and `TCCServiceProxy`, which enlist a TCC service in a global transaction. |
| `globaltx.client_handler` | `ClientHandler`: session open/close/error events, heartbeats, and dispatch of incoming messages by `MessageType` to registered processors. |
| `globaltx.processors` | Processors for heartbeats, coordinator responses, and branch commit and branch rollback requests, plus `register_processors`. |
| `globaltx.sample` | A demo that prepares two TCC services in one global transaction. |

Importing `globaltx.tcc` registers the shared `TCCResourceManager` in the
shared `ResourceManagerCache`; importing `globaltx.processors` registers all
client processors with the shared `ClientHandler`.

## Transaction context

All transaction state lives in a context value that is passed through calls:

```python
from globaltx.context import (
    Context, init_seata_context, set_xid, get_xid,
    is_transaction_opened, unbind_xid,
)

ctx = init_seata_context(Context())
assert not is_transaction_opened(ctx)

set_xid(ctx, "12345")
assert get_xid(ctx) == "12345"

unbind_xid(ctx)
assert get_xid(ctx) == ""
```

`get_xid` falls back to the value set with `set_xid_copy` when no xid is bound.

## Two-phase services

A service takes part in TCC when it has `prepare`, `commit`, `rollback` and
`get_action_name` methods. The three steps return a boolean; a failure is
reported by raising an exception.

```python
from globaltx.context import Context
from globaltx.two_phase import parse_two_phase_action


class Inventory:
    def prepare(self, ctx, *args):
        return True

    def commit(self, ctx, business_action_context):
        return True

    def rollback(self, ctx, business_action_context):
        return True

    def get_action_name(self):
        return "Inventory"


action = parse_two_phase_action(Inventory())
action.prepare(Context(), 1)
```

Services whose steps have other names can mark them with the `two_phase`
decorator instead; `service_name` on any marked member names the action:

```python
from globaltx.two_phase import two_phase


class Payment:
    @two_phase("prepare", service_name="Payment")
    def try_pay(self, ctx, *args):
        return True

    @two_phase("commit")
    def confirm(self, ctx, business_action_context):
        return True

    @two_phase("rollback")
    def cancel(self, ctx, business_action_context):
        return True
```

Where a marked method has annotations, the context parameter must be a
`Context`, the commit and rollback parameter a `BusinessActionContext`, and
the return type `bool`. `parse_two_phase_action` raises `TwoPhaseActionError`
("missing prepare method", "missing commit method", "missing rollback method"
or "missing two phase name") when something is not found.

## Frames

```python
from globaltx.frame import RpcMessage, RpcPackageHandler, GettyRequestType

handler = RpcPackageHandler()
data = handler.write(RpcMessage(id=7, type=GettyRequestType.REQUEST_SYNC,
                                head_map={"k": "v"}, body=b"payload"))
message, length = handler.read(data)
```

`read` returns `(None, n)` when the data does not yet hold a whole frame, and
raises `FrameError` on a wrong magic code or inconsistent lengths. Heartbeat
frames carry no body; on reading they get a ping or pong `HeartBeatMessage`.

## Global transactions

```python
from globaltx.context import Context
from globaltx.global_transaction import begin, commit_or_rollback
from globaltx.tcc import TCCServiceProxy

ctx = begin(Context(), "PlaceOrder")
ok = True
try:
    proxy = TCCServiceProxy(Inventory())
    proxy.register_resource()
    proxy.prepare(ctx, 1)
except Exception:
    ok = False
commit_or_rollback(ctx, ok)
```

`begin` asks the coordinator for a new global transaction, or joins the one
already bound to the context as a participant; any failure is raised as
`TransactionError`. `TCCServiceProxy.prepare` registers a branch when a
transaction is open, then runs the service's prepare step.
`commit_or_rollback` commits on success and rolls back otherwise, retrying
failed attempts (10 times, 0.2 s apart, by default); it does nothing for a
participant and re-raises the last error if every attempt fails.

## Demo

```
globaltx-sample
```

The demo begins a global transaction, prepares the `DemoBusiness` and
`DemoBusiness2` services, then commits, or rolls back if a prepare failed. It
exits with 0 when everything succeeded and 1 otherwise.

## What the package does not do

- It has no network transport. `Session` is abstract: requests are only sent
  once an implementation has been registered with the `SessionManager` (for
  example through `ClientHandler.on_open`). With no session,
  `RemotingClient.send_sync_request` waits for one (up to 600 checks, 0.1 s
  apart) and then returns None, so `begin` fails. The `globaltx-sample`
  command, which registers no session, therefore ends in failure on its own.
- It has no codec for protocol message bodies. `RpcPackageHandler` passes
  bytes bodies through unchanged and raises `FrameError` for any other body,
  unless it is given a codec object with `encode` and `decode` methods.
- It is not a coordinator: it holds no transaction storage and serves no
  requests from other clients.