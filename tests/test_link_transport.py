from __future__ import annotations

import asyncio
from typing import List

import pytest

from gacha.link.errors import LinkError, LinkTimeoutError, LinkUnavailableError, link_error_summary
from gacha.link.transport import LocalLink
from gacha.protocol.codec import Envelope
from gacha.protocol.messages import GetState, Ping, Pong, SetDelay, Stop


async def _spin(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def test_request_reply_round_trip():
    async def _run():
        caller, callee = LocalLink.pair("a", "b")

        async def handler(envelope: Envelope):
            if isinstance(envelope.message, Ping):
                return Pong()
            return None

        callee.listen(handler)
        assert caller.available

        reply = await caller.request(Ping())
        assert isinstance(reply, Pong)
        assert await caller.request(GetState()) is None

    asyncio.run(_run())


def test_notify_preserves_order_and_correlation_id():
    async def _run():
        caller, callee = LocalLink.pair("a", "b")
        received: List[Envelope] = []

        async def handler(envelope: Envelope):
            received.append(envelope)
            return None

        callee.listen(handler)
        caller.notify(SetDelay(seconds=1), correlation_id="corr-1")
        caller.notify(SetDelay(seconds=2))
        caller.notify(Stop())
        await _spin()

        assert [item.type for item in received] == ["SetDelay", "SetDelay", "Stop"]
        assert [getattr(item.message, "seconds", None) for item in received] == [1, 2, None]
        assert received[0].correlation_id == "corr-1"
        assert received[1].correlation_id is None

    asyncio.run(_run())


def test_notify_without_listener_is_unavailable():
    async def _run():
        caller, _callee = LocalLink.pair("a", "b")
        assert not caller.available
        with pytest.raises(LinkUnavailableError) as excinfo:
            caller.notify(Ping())
        assert "link=a" in link_error_summary(excinfo.value)
        assert excinfo.value.details["message_type"] == "Ping"

    asyncio.run(_run())


def test_request_times_out():
    async def _run():
        caller, callee = LocalLink.pair("a", "b")

        async def slow(envelope: Envelope):
            await asyncio.sleep(1)
            return Pong()

        callee.listen(slow)
        with pytest.raises(LinkTimeoutError) as excinfo:
            await caller.request(Ping(), timeout_ms=20)
        assert isinstance(excinfo.value, TimeoutError)
        callee.close()

    asyncio.run(_run())


def test_handler_failure_surfaces_as_link_error():
    async def _run():
        caller, callee = LocalLink.pair("a", "b")

        async def broken(envelope: Envelope):
            raise RuntimeError("boom")

        callee.listen(broken)
        with pytest.raises(LinkError) as excinfo:
            await caller.request(Ping())
        assert "boom" in str(excinfo.value)

    asyncio.run(_run())


def test_close_fires_callbacks_on_both_ends():
    async def _run():
        caller, callee = LocalLink.pair("a", "b")
        fired: List[str] = []

        async def handler(envelope: Envelope):
            return None

        callee.listen(handler)
        caller.listen(handler)
        caller.on_close(lambda: fired.append("a"))
        subscription = callee.on_close(lambda: fired.append("b"))

        callee.close()
        assert sorted(fired) == ["a", "b"]
        assert callee.closed
        assert not caller.available
        with pytest.raises(LinkUnavailableError):
            caller.notify(Ping())

        subscription.cancel()
        callee.close()
        assert sorted(fired) == ["a", "b"]

    asyncio.run(_run())


def test_revoking_stale_listener_keeps_newer_one():
    async def _run():
        _caller, callee = LocalLink.pair("a", "b")

        async def handler(envelope: Envelope):
            return None

        first = callee.listen(handler)
        second = callee.listen(handler)
        first.cancel()
        assert callee.listening
        second.cancel()
        assert not callee.listening

    asyncio.run(_run())
