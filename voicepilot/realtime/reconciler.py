"""
Session reconciliation: keeps the remote session configuration in step
with the local one.

Every cycle the desired descriptor is rebuilt and compared with the last
one pushed. Only a change produces a `session.update` frame, so an idle
session generates no traffic.
"""

import asyncio
import copy
import json
from typing import Any, Callable, Dict, Optional

from voicepilot.errors import ConfigurationError
from voicepilot.logger import get_logger
from voicepilot.realtime.transport import RealtimeTransport

logger = get_logger(__name__)

DescriptorBuilder = Callable[[], Dict[str, Any]]


def _canonical(descriptor: Dict[str, Any]) -> str:
    return json.dumps(descriptor, sort_keys=True)


class SessionReconciler:
    """
    Pushes the session descriptor whenever it changes.

    Args:
        transport: Connection the update frames are queued on
        build_descriptor: Returns the desired descriptor
        interval_s: Polling cadence
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        build_descriptor: DescriptorBuilder,
        interval_s: float = 0.5,
    ):
        self.transport = transport
        self._build = build_descriptor
        self.interval_s = interval_s
        self.active_config: Dict[str, Any] = {}
        self._last_pushed: Optional[str] = None
        self.updates_sent = 0

    async def reconcile_once(self) -> bool:
        """
        Run one reconciliation cycle.

        Returns:
            True if an update frame was sent
        """
        try:
            descriptor = self._build()
        except ConfigurationError as e:
            logger.warning(f"Failed to update session: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to build session descriptor: {e}", exc_info=True)
            return False

        canonical = _canonical(descriptor)
        if canonical == self._last_pushed:
            return False

        logger.debug("Updating realtime session")
        self.active_config.update(copy.deepcopy(descriptor))
        await self.transport.send_event({
            "type": "session.update",
            "session": copy.deepcopy(self.active_config),
        })
        self._last_pushed = canonical
        self.updates_sent += 1
        return True

    async def run(self) -> None:
        """Reconcile periodically until the transport is disposed."""
        while not self.transport.disposed:
            if self.transport.connected:
                try:
                    await self.reconcile_once()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Session reconciliation failed: {e}")
            await asyncio.sleep(self.interval_s)
        logger.debug("Session reconciliation stopped")

    def reset(self) -> None:
        """Forget the remote state so the next cycle pushes a full update."""
        self.active_config = {}
        self._last_pushed = None
