import json

import pytest

from globaltx.frame import (
    CODEC_SEATA,
    HEARTBEAT_PING,
    HEARTBEAT_PONG,
    FrameError,
    GettyRequestType,
    RpcMessage,
    RpcPackageHandler,
    decode_head_map,
    encode_head_map,
)


class JsonCodec:
    def encode(self, codec_type, body):
        return json.dumps(body).encode("utf-8")

    def decode(self, codec_type, data):
        return json.loads(data.decode("utf-8"))


def test_rpc_package_handler_round_trip():
    msg = RpcMessage(
        id=1123,
        type=GettyRequestType.REQUEST_SYNC,
        codec=CODEC_SEATA,
        compressor=1,
        head_map={"name": " Jack", "age": "12", "address": "Beijing"},
        body={"timeout": 100, "transaction_name": "SeataGoTransaction"},
    )
    handler = RpcPackageHandler(JsonCodec())
    data = handler.write(msg)
    msg2, length = handler.read(data)
    assert msg2 == msg
    assert length == len(data)


def test_heartbeat_wire_bytes():
    msg = RpcMessage(id=1, type=GettyRequestType.HEARTBEAT_REQUEST, body=HEARTBEAT_PING)
    data = RpcPackageHandler().write(msg)
    assert data == b"\xda\xda\x01\x00\x00\x00\x10\x00\x10\x03\x01\x00\x00\x00\x00\x01"


def test_heartbeat_read_sets_ping_and_pong():
    handler = RpcPackageHandler()
    ping = handler.write(RpcMessage(id=5, type=GettyRequestType.HEARTBEAT_REQUEST))
    pong = handler.write(RpcMessage(id=6, type=GettyRequestType.HEARTBEAT_RESPONSE))
    assert handler.read(ping)[0].body == HEARTBEAT_PING
    assert handler.read(pong)[0].body == HEARTBEAT_PONG


def test_bad_magic_raises():
    with pytest.raises(FrameError, match="magic"):
        RpcPackageHandler().read(b"\x00\x01" + bytes(20))


def test_short_header_needs_more_data():
    data = RpcPackageHandler().write(RpcMessage(id=1, body=b"abc"))
    assert RpcPackageHandler().read(data[:10]) == (None, 0)


def test_incomplete_frame_reports_total_length():
    handler = RpcPackageHandler()
    data = handler.write(RpcMessage(id=1, head_map={"k": "v"}, body=b"payload"))
    message, needed = handler.read(data[:-2])
    assert message is None
    assert needed == len(data)


def test_trailing_bytes_are_not_consumed():
    handler = RpcPackageHandler()
    data = handler.write(RpcMessage(id=7, body=b"xyz"))
    message, length = handler.read(data + b"\xda\xda\x01")
    assert length == len(data)
    assert message.body == b"xyz"


def test_raw_codec_round_trip_and_negative_id():
    handler = RpcPackageHandler()
    msg = RpcMessage(id=-3, type=GettyRequestType.REQUEST_ONEWAY, body=b"\x00\x01\x02")
    decoded, _ = handler.read(handler.write(msg))
    assert decoded == msg


def test_raw_codec_rejects_objects():
    with pytest.raises(FrameError):
        RpcPackageHandler().write(RpcMessage(body={"a": 1}))


def test_write_rejects_non_message():
    with pytest.raises(FrameError, match="invalid rpc package"):
        RpcPackageHandler().write({"id": 1})


def test_head_map_round_trip_with_empty_entries():
    data = {"": "empty-key", "empty-value": "", "name": "Jack"}
    assert decode_head_map(encode_head_map(data)) == data


def test_head_map_encoding_bytes():
    assert encode_head_map({"ab": "c"}) == b"\x00\x02ab\x00\x01c"


def test_empty_head_map_decodes_to_empty_dict():
    assert decode_head_map(b"") == {}


def test_truncated_head_map_raises():
    with pytest.raises(FrameError):
        decode_head_map(b"\x00\x05ab")