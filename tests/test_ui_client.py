from __future__ import annotations

import asyncio
from typing import List, Optional

from gacha.link.transport import LocalLink
from gacha.protocol.codec import Envelope
from gacha.protocol.messages import (
    CommunicationError,
    ControllerResponse,
    Message,
    StartBatch,
    StateUpdate,
    Stop,
)
from gacha.task.types import COMMUNICATION_ERROR, INVALID_BATCH, Notification, NotificationKind, RunPhase
from gacha.ui.client import TOPIC_COMMUNICATION_ERROR, TOPIC_NOTIFICATION, TOPIC_STATE, UiClient


async def _spin(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _update(notification: Optional[Notification] = None, *, resync: bool = False) -> StateUpdate:
    return StateUpdate(phase=RunPhase.RUNNING, notification=notification, resync=resync)


def test_command_results_follow_controller_replies():
    async def _run():
        ui_end, bridge_end = LocalLink.pair("ui", "bridge")

        async def bridge(envelope: Envelope) -> Optional[Message]:
            if isinstance(envelope.message, StartBatch):
                reply = ControllerResponse(success=False, message="No prompts to submit.", code=INVALID_BATCH)
            else:
                reply = ControllerResponse(success=True, message="Queue cleared of 0 tasks.")
            bridge_end.notify(reply, correlation_id=envelope.correlation_id)
            return None

        bridge_end.listen(bridge)
        client = UiClient(ui_end)
        client.start()

        rejected = await client.start_batch([], quantity=1)
        stopped = await client.stop()

        assert not rejected.success
        assert rejected.code == INVALID_BATCH
        assert stopped.success
        assert stopped.message == "Queue cleared of 0 tasks."
        client.close()

    asyncio.run(_run())


def test_communication_error_resolves_pending_command():
    async def _run():
        ui_end, bridge_end = LocalLink.pair("ui", "bridge")

        async def bridge(envelope: Envelope) -> Optional[Message]:
            bridge_end.notify(
                CommunicationError(reason="counterpart has no listener", correlation_id=envelope.correlation_id),
                correlation_id=envelope.correlation_id,
            )
            return None

        bridge_end.listen(bridge)
        client = UiClient(ui_end)
        client.start()

        result = await client.send(Stop())
        assert not result.success
        assert result.code == COMMUNICATION_ERROR
        assert result.message == "counterpart has no listener"
        client.close()

    asyncio.run(_run())


def test_commands_fail_fast_without_bridge_and_time_out_when_ignored():
    async def _run():
        ui_end, bridge_end = LocalLink.pair("ui", "bridge")
        client = UiClient(ui_end, command_timeout_ms=20)
        client.start()

        undelivered = await client.stop()
        assert undelivered.code == COMMUNICATION_ERROR

        async def silent(envelope: Envelope) -> Optional[Message]:
            return None

        bridge_end.listen(silent)
        timed_out = await client.stop()
        assert timed_out.code == COMMUNICATION_ERROR
        assert timed_out.message == "No response from controller."
        client.close()

    asyncio.run(_run())


def test_notifications_apply_once_and_resync_counts_epochs():
    async def _run():
        ui_end, bridge_end = LocalLink.pair("ui", "bridge")
        client = UiClient(ui_end)
        client.start()
        notifications: List[Notification] = []
        states: List[StateUpdate] = []
        client.subscribe(TOPIC_NOTIFICATION, notifications.append)
        client.subscribe(TOPIC_STATE, states.append)

        started = Notification(kind=NotificationKind.BATCH_STARTED)
        bridge_end.notify(_update(started))
        bridge_end.notify(_update(started))
        bridge_end.notify(_update(started, resync=True))
        await _spin()

        assert [item.id for item in notifications] == [started.id]
        assert len(states) == 3
        assert client.resync_epoch == 1
        assert client.state.resync is True
        client.close()

    asyncio.run(_run())


def test_dedupe_memory_is_bounded():
    async def _run():
        ui_end, bridge_end = LocalLink.pair("ui", "bridge")
        client = UiClient(ui_end, dedupe_capacity=2)
        client.start()
        seen: List[str] = []
        client.subscribe(TOPIC_NOTIFICATION, lambda item: seen.append(item.id))

        first, second, third = (Notification(kind=NotificationKind.TASK_UPDATED) for _ in range(3))
        for item in (first, second, third, first, third):
            bridge_end.notify(_update(item))
        await _spin()

        assert seen == [first.id, second.id, third.id, first.id]
        client.close()

    asyncio.run(_run())


def test_uncorrelated_communication_error_is_published():
    async def _run():
        ui_end, bridge_end = LocalLink.pair("ui", "bridge")
        client = UiClient(ui_end)
        client.start()
        errors: List[CommunicationError] = []
        client.subscribe(TOPIC_COMMUNICATION_ERROR, errors.append)

        bridge_end.notify(CommunicationError(reason="Failed to communicate with controller"))
        await _spin()

        assert [item.reason for item in errors] == ["Failed to communicate with controller"]
        client.close()

    asyncio.run(_run())
