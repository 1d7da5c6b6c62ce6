import pytest

from conftest import FakeSocket
from wa_relay.backend import DisconnectReason, is_fatal_close, reason_name


@pytest.mark.parametrize("code", [401, 403, 411, 500])
def test_fatal_codes(code):
    assert is_fatal_close(code)


@pytest.mark.parametrize("code", [408, 428, 440, 503, 515, 999, None, "x"])
def test_everything_else_is_transient(code):
    assert not is_fatal_close(code)


def test_reason_name():
    assert reason_name(401) == "logged_out"
    assert reason_name(DisconnectReason.restart_required) == "restart_required"
    assert reason_name(None) == "unknown"
    assert reason_name(999) == "999"


@pytest.mark.asyncio
async def test_emit_awaits_listeners_in_order_and_survives_errors(store):
    sock = FakeSocket(store)
    seen = []

    async def first(payload):
        seen.append(("first", payload["n"]))

    def broken(payload):
        raise ValueError("listener bug")

    def last(payload):
        seen.append(("last", payload["n"]))

    sock.on("evt", first)
    sock.on("evt", broken)
    sock.on("evt", last)
    await sock.emit("evt", {"n": 1})
    assert seen == [("first", 1), ("last", 1)]

    sock.off("evt", first)
    assert sock.listener_count("evt") == 2
    sock.remove_all_listeners()
    assert sock.listener_count() == 0
    await sock.emit("evt", {"n": 2})
    assert seen == [("first", 1), ("last", 1)]
