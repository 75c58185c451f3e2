"""
Tests for session reconciliation.
"""

import asyncio
from typing import Any, Dict, List

import pytest

from voicepilot.errors import ConfigurationError
from voicepilot.realtime.reconciler import SessionReconciler
from voicepilot.realtime.transport import RealtimeTransport
from tests.conftest import wait_until


class StubTransport:
    """Records queued control events."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self.connected = True
        self.disposed = False

    async def send_event(self, event: Dict[str, Any]) -> None:
        self.events.append(event)


class MutableDescriptor:
    def __init__(self):
        self.instructions = "Be helpful."
        self.error = None

    def __call__(self) -> Dict[str, Any]:
        if self.error is not None:
            raise self.error
        return {"modalities": ["text", "audio"], "instructions": self.instructions, "tools": []}


class TestReconcileOnce:
    """Tests for a single reconciliation cycle."""

    @pytest.mark.asyncio
    async def test_unchanged_descriptor_sends_once(self):
        transport = StubTransport()
        reconciler = SessionReconciler(transport, MutableDescriptor())

        assert await reconciler.reconcile_once() is True
        assert await reconciler.reconcile_once() is False

        assert len(transport.events) == 1
        event = transport.events[0]
        assert event["type"] == "session.update"
        assert event["session"]["instructions"] == "Be helpful."

    @pytest.mark.asyncio
    async def test_change_is_pushed(self):
        transport = StubTransport()
        descriptor = MutableDescriptor()
        reconciler = SessionReconciler(transport, descriptor)

        await reconciler.reconcile_once()
        descriptor.instructions = "Be brief."
        assert await reconciler.reconcile_once() is True

        assert reconciler.updates_sent == 2
        assert transport.events[-1]["session"]["instructions"] == "Be brief."

    @pytest.mark.asyncio
    async def test_key_order_does_not_matter(self):
        transport = StubTransport()
        payloads = iter([{"a": 1, "b": 2}, {"b": 2, "a": 1}])
        reconciler = SessionReconciler(transport, lambda: next(payloads))

        await reconciler.reconcile_once()
        assert await reconciler.reconcile_once() is False

    @pytest.mark.asyncio
    async def test_configuration_error_skips_cycle(self):
        transport = StubTransport()
        descriptor = MutableDescriptor()
        descriptor.error = ConfigurationError("Prompt Idle Mode not found in prompt library")
        reconciler = SessionReconciler(transport, descriptor)

        assert await reconciler.reconcile_once() is False
        assert transport.events == []

        descriptor.error = None
        assert await reconciler.reconcile_once() is True

    @pytest.mark.asyncio
    async def test_unexpected_error_skips_cycle(self):
        transport = StubTransport()
        descriptor = MutableDescriptor()
        descriptor.error = KeyError("tools")
        reconciler = SessionReconciler(transport, descriptor)
        assert await reconciler.reconcile_once() is False

    @pytest.mark.asyncio
    async def test_reset_pushes_again(self):
        transport = StubTransport()
        reconciler = SessionReconciler(transport, MutableDescriptor())

        await reconciler.reconcile_once()
        reconciler.reset()
        assert reconciler.active_config == {}
        assert await reconciler.reconcile_once() is True
        assert len(transport.events) == 2

    @pytest.mark.asyncio
    async def test_sent_payload_is_a_copy(self):
        transport = StubTransport()
        reconciler = SessionReconciler(transport, MutableDescriptor())
        await reconciler.reconcile_once()

        transport.events[0]["session"]["tools"].append("mutated")
        assert reconciler.active_config["tools"] == []


class TestRun:
    """Tests for the periodic loop."""

    @pytest.mark.asyncio
    async def test_loop_only_while_connected(self):
        transport = StubTransport()
        transport.connected = False
        descriptor = MutableDescriptor()
        reconciler = SessionReconciler(transport, descriptor, interval_s=0.01)

        task = asyncio.create_task(reconciler.run())
        await asyncio.sleep(0.05)
        assert transport.events == []

        transport.connected = True
        await wait_until(lambda: len(transport.events) == 1)

        descriptor.instructions = "Changed."
        await wait_until(lambda: len(transport.events) == 2)

        transport.disposed = True
        await asyncio.wait_for(task, timeout=1.0)
        assert len(transport.events) == 2

    @pytest.mark.asyncio
    async def test_with_real_transport(self, realtime_config, connector, descriptor):
        async def ignore(event):
            pass

        transport = RealtimeTransport(realtime_config, ignore, connector=connector)
        await transport.connect()
        reconciler = SessionReconciler(transport, descriptor, interval_s=0.01)

        task = asyncio.create_task(reconciler.run())
        await wait_until(lambda: connector.ws.sent_types() == ["session.update"])
        await asyncio.sleep(0.05)
        assert connector.ws.sent_types() == ["session.update"]

        await transport.shutdown()
        await asyncio.wait_for(task, timeout=1.0)
