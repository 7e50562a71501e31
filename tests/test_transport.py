"""
Tests for KernelTransport message routing.
"""

import asyncio

import pytest

from notebook_engine.exceptions import Disconnected, TransportError
from notebook_engine.transport import KernelTransport

from conftest import FakeKernelClient, stream


@pytest.fixture
async def client():
    return FakeKernelClient()


@pytest.fixture
async def transport(client):
    transport = KernelTransport(client, max_errors=3, backoff_base=0)
    transport.start()
    yield transport
    await transport.close()


async def _collect(subscription, until_idle=True):
    messages = []
    async for msg in subscription:
        messages.append(msg)
        if until_idle and msg["msg_type"] == "status" and msg["content"]["execution_state"] == "idle":
            break
    return messages


class TestRequestReply:

    async def test_send_returns_reply(self, transport):
        reply = await asyncio.wait_for(transport.send("kernel_info_request", {}), 1)
        assert reply["msg_type"] == "kernel_info_reply"
        assert reply["content"]["status"] == "ok"

    async def test_submit_streams_messages_in_emission_order(self, transport, client):
        client.scripts["work"] = ([stream("a"), stream("b"), stream("c")], "ok")

        subscription = transport.submit("execute_request", {"code": "work"})
        messages = await asyncio.wait_for(_collect(subscription), 1)
        reply = await subscription.reply(timeout=1)

        texts = [m["content"]["text"] for m in messages if m["msg_type"] == "stream"]
        assert texts == ["a", "b", "c"]
        assert reply["content"]["status"] == "ok"
        subscription.close()
        assert transport.pending == 0

    async def test_messages_never_cross_requests(self, transport, client):
        """A push message for request A is never delivered to B's subscriber."""
        client.hanging.update({"first", "second"})
        first = transport.submit("execute_request", {"code": "first"})
        second = transport.submit("execute_request", {"code": "second"})
        first_msg, second_msg = client.pending

        client.emit(second_msg, *stream("for second"))
        client.emit(first_msg, *stream("for first"))
        client.finish(first_msg)
        client.finish(second_msg)

        first_messages = await asyncio.wait_for(_collect(first), 1)
        second_messages = await asyncio.wait_for(_collect(second), 1)

        parent_ids = {m["parent_header"]["msg_id"] for m in first_messages}
        assert parent_ids == {first.msg_id}
        assert [m["content"]["text"] for m in second_messages if m["msg_type"] == "stream"] == ["for second"]

    async def test_unknown_parent_is_dropped(self, transport, client):
        stale = client.session.msg("execute_request", {"code": "old"})
        client.emit(stale, *stream("stale output"))
        client.scripts["now"] = ([stream("fresh")], "ok")

        subscription = transport.submit("execute_request", {"code": "now"})
        messages = await asyncio.wait_for(_collect(subscription), 1)

        assert [m["content"]["text"] for m in messages if m["msg_type"] == "stream"] == ["fresh"]

    async def test_malformed_reply_fails_send(self, transport, client):
        def garbage_reply(msg):
            client.shell.put_nowait(
                {"parent_header": msg["header"], "msg_type": "kernel_info_reply", "content": "garbage"}
            )

        client.shell_channel.send.side_effect = garbage_reply

        with pytest.raises(TransportError):
            await asyncio.wait_for(transport.send("kernel_info_request", {}), 1)

    async def test_send_failure_raises_transport_error(self, transport, client):
        client.shell_channel.send.side_effect = OSError("socket closed")

        with pytest.raises(TransportError):
            transport.submit("execute_request", {"code": "x"})
        assert transport.pending == 0


class TestStatus:

    async def test_status_callbacks_see_every_status(self, transport, client):
        states = []
        transport.on_status(lambda msg: states.append(msg["content"]["execution_state"]))

        await asyncio.wait_for(_collect(transport.submit("execute_request", {"code": "x"})), 1)

        assert states == ["busy", "idle"]

    async def test_failing_status_callback_does_not_stop_routing(self, transport):
        def broken(msg):
            raise RuntimeError("listener bug")

        transport.on_status(broken)
        messages = await asyncio.wait_for(_collect(transport.submit("execute_request", {"code": "x"})), 1)
        assert messages[-1]["content"]["execution_state"] == "idle"


class TestShutdown:

    async def test_close_unblocks_pending_send(self, transport, client):
        client.hanging.add("forever")
        subscription = transport.submit("execute_request", {"code": "forever"})
        waiter = asyncio.create_task(subscription.reply())
        await asyncio.sleep(0)

        await transport.close()

        with pytest.raises(Disconnected):
            await asyncio.wait_for(waiter, 1)
        with pytest.raises(Disconnected):
            await asyncio.wait_for(_collect(subscription), 1)
        assert not client.channels_running

    async def test_submit_after_close_raises(self, transport):
        await transport.close()
        with pytest.raises(Disconnected):
            transport.submit("execute_request", {"code": "x"})

    async def test_close_is_idempotent(self, transport):
        closed = []
        transport.on_closed(closed.append)
        await transport.close()
        await transport.close()
        assert len(closed) == 1

    async def test_terminate_delivers_error_after_queued_messages(self, transport, client):
        client.hanging.add("slow")
        subscription = transport.submit("execute_request", {"code": "slow"})
        await asyncio.sleep(0.01)

        subscription.terminate(RuntimeError("forced"))

        received = []
        with pytest.raises(RuntimeError, match="forced"):
            async for msg in subscription:
                received.append(msg["msg_type"])
        assert received == ["status", "execute_input"]


class TestCircuitBreaker:

    async def test_repeated_listener_errors_close_transport(self, transport, client):
        closed = asyncio.Event()
        errors = []

        def on_closed(error):
            errors.append(error)
            closed.set()

        transport.on_closed(on_closed)
        for _ in range(3):
            client.iopub.put_nowait(RuntimeError("socket exploded"))

        await asyncio.wait_for(closed.wait(), 1)
        assert transport.closed
        assert isinstance(errors[0], TransportError)

    async def test_single_error_is_survived(self, transport, client):
        client.iopub.put_nowait(RuntimeError("glitch"))
        messages = await asyncio.wait_for(_collect(transport.submit("execute_request", {"code": "x"})), 1)

        assert not transport.closed
        assert messages[-1]["content"]["execution_state"] == "idle"
