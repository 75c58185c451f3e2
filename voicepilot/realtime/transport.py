"""
Realtime Transport

Owns the single websocket connection to the realtime backend.

Once connected two tasks run per connection:
- Read loop: receives frames, decodes JSON and hands each event to the
  dispatcher. A failing event is logged and skipped; a failing connection
  ends the loop and triggers one restart.
- Write loop: the only consumer of the outbound queue, so frames reach
  the wire in the order they were enqueued.

Outbound items are raw PCM bytes (sent as `input_audio_buffer.append`),
the END_OF_UTTERANCE marker (commit the input buffer and ask for a
response) or control events (dicts sent as JSON).

Usage:
    transport = RealtimeTransport(settings.realtime, demux.dispatch)
    await transport.connect()
    transport.enqueue_threadsafe(pcm)      # from the capture thread
    await transport.shutdown()
"""

import asyncio
import base64
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import aiohttp
from aiohttp import WSCloseCode, WSMsgType

from voicepilot.config import RealtimeConfig
from voicepilot.errors import ConnectionFailure
from voicepilot.logger import get_logger

logger = get_logger(__name__)


class _EndOfUtterance:
    def __repr__(self) -> str:
        return "END_OF_UTTERANCE"


# Flushes the input audio buffer and requests a response
END_OF_UTTERANCE = _EndOfUtterance()

OutboundItem = Union[bytes, _EndOfUtterance, Dict[str, Any]]
Dispatcher = Callable[[Dict[str, Any]], Awaitable[None]]
Connector = Callable[[], Awaitable[Any]]
LifecycleHook = Callable[..., Awaitable[None]]

_CLOSED_TYPES = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)


class RealtimeTransport:
    """
    Websocket connection with retrying connect and a single restart on
    connection loss.

    Args:
        config: Realtime endpoint configuration
        dispatcher: Coroutine receiving every decoded inbound event
        connector: Coroutine returning an open websocket; defaults to
            aiohttp's ws_connect against config.ws_url
        on_reset: Awaited after a lost connection, before reconnecting
        on_failure: Awaited with the ConnectionFailure when a restart fails
    """

    def __init__(
        self,
        config: RealtimeConfig,
        dispatcher: Dispatcher,
        connector: Optional[Connector] = None,
        on_reset: Optional[LifecycleHook] = None,
        on_failure: Optional[LifecycleHook] = None,
    ):
        self.config = config
        self._dispatcher = dispatcher
        self._connector = connector or self._ws_connect
        self._on_reset = on_reset
        self._on_failure = on_failure

        self._http: Optional[aiohttp.ClientSession] = None
        self._ws = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._outbound: asyncio.Queue = asyncio.Queue()
        self._read_task: Optional[asyncio.Task] = None
        self._write_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None

        self._disposed = False
        self._shut_down = False
        self.connected = False
        self.connect_count = 0
        self.restart_count = 0

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def outbound_size(self) -> int:
        return self._outbound.qsize()

    async def _ws_connect(self):
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return await self._http.ws_connect(
            self.config.ws_url,
            headers=self.config.headers,
            max_msg_size=0,
        )

    # ========================================================================
    # Connection lifecycle
    # ========================================================================

    async def connect(self) -> None:
        """
        Open the connection and start the read and write loops.

        Raises:
            ConnectionFailure: When every attempt failed or timed out
        """
        if self._disposed:
            raise ConnectionFailure("Realtime transport is disposed")

        self._loop = asyncio.get_running_loop()
        attempts = self.config.connect_attempts
        last_error: Optional[BaseException] = None
        ws = None

        logger.debug("Establishing new realtime session")
        for attempt in range(1, attempts + 1):
            try:
                ws = await asyncio.wait_for(self._connector(), timeout=self.config.connect_timeout_s)
                break
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"Realtime connection attempt {attempt}/{attempts} timed out")
            except (aiohttp.ClientError, OSError) as e:
                last_error = e
                logger.warning(f"Realtime connection attempt {attempt}/{attempts} failed: {e}")
            if self._disposed:
                break

        if ws is None:
            detail = str(last_error) or type(last_error).__name__
            raise ConnectionFailure(f"Realtime API connection failed: {detail}") from last_error

        if self._disposed:
            await ws.close(code=WSCloseCode.OK, message=b"Disposed")
            raise ConnectionFailure("Realtime transport disposed while connecting")

        self._ws = ws
        self.connected = True
        self.connect_count += 1
        logger.info("Connected to realtime API")

        self._read_task = asyncio.create_task(self._read_loop(ws))
        self._write_task = asyncio.create_task(self._write_loop(ws))

    async def _restart(self) -> None:
        """Replace a lost connection; a failed restart is reported, not retried."""
        self.restart_count += 1
        logger.info("Restarting realtime connection")

        await self._cancel(self._write_task)
        self._write_task = None
        self._clear_outbound()
        await self._close_ws(self._ws, b"Restarting")
        self._ws = None

        if self._on_reset is not None:
            try:
                await self._on_reset()
            except Exception as e:
                logger.error(f"Reset hook failed: {e}")

        if self._disposed:
            return
        try:
            await self.connect()
        except ConnectionFailure as e:
            logger.error(f"Realtime reconnect failed: {e}")
            if self._on_failure is not None:
                await self._on_failure(e)

    async def shutdown(self) -> None:
        """Close the connection and stop both loops. Safe to call repeatedly."""
        self._disposed = True
        if self._shut_down:
            return
        self._shut_down = True
        self.connected = False

        await self._close_ws(self._ws, b"Disposed")
        self._ws = None
        for task in (self._write_task, self._read_task, self._restart_task):
            await self._cancel(task)
        self._clear_outbound()

        if self._http is not None:
            await self._http.close()
            self._http = None
        logger.info("Realtime transport shut down")

    def dispose(self) -> None:
        """Thread-safe shutdown."""
        self._disposed = True
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            loop.create_task(self.shutdown())
        else:
            asyncio.run_coroutine_threadsafe(self.shutdown(), loop)

    async def _close_ws(self, ws, message: bytes) -> None:
        if ws is None or ws.closed:
            return
        try:
            await ws.close(code=WSCloseCode.OK, message=message)
        except (aiohttp.ClientError, OSError, RuntimeError) as e:
            logger.debug(f"Error closing websocket: {e}")

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _clear_outbound(self) -> None:
        while not self._outbound.empty():
            self._outbound.get_nowait()

    # ========================================================================
    # Producers
    # ========================================================================

    def enqueue(self, item: OutboundItem) -> None:
        """Queue an outbound item (event loop thread)."""
        if self._disposed:
            return
        self._outbound.put_nowait(item)

    def enqueue_threadsafe(self, item: OutboundItem) -> None:
        """Queue an outbound item from another thread (e.g. audio capture)."""
        loop = self._loop
        if self._disposed or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.enqueue, item)

    def enqueue_audio(self, data: bytes) -> None:
        self.enqueue(bytes(data))

    def end_utterance(self) -> None:
        self.enqueue(END_OF_UTTERANCE)

    async def send_event(self, event: Dict[str, Any]) -> None:
        """Queue a control event behind any audio already queued."""
        self.enqueue(event)

    # ========================================================================
    # Loops
    # ========================================================================

    async def _read_loop(self, ws) -> None:
        try:
            while not self._disposed:
                msg = await ws.receive()
                if msg.type == WSMsgType.TEXT:
                    await self._handle_text(msg.data)
                elif msg.type in _CLOSED_TYPES:
                    logger.info("Realtime connection closed")
                    break
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"Realtime websocket error: {msg.data}")
                    break
                else:
                    logger.warning(f"Unexpected frame: {msg.type}")
        except asyncio.CancelledError:
            return
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.error(f"Realtime connection lost: {e}")
        except Exception as e:
            logger.error(f"Realtime read loop failed: {e}", exc_info=True)

        self.connected = False
        if not self._disposed:
            self._restart_task = asyncio.create_task(self._restart())

    async def _handle_text(self, data: str) -> None:
        try:
            event = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding undecodable realtime frame: {e}")
            return

        try:
            await self._dispatcher(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error processing realtime event {event.get('type')}: {e}", exc_info=True)

    async def _write_loop(self, ws) -> None:
        try:
            while not self._disposed:
                item = await self._outbound.get()
                for payload in self._frames(item):
                    await ws.send_str(json.dumps(payload))
        except asyncio.CancelledError:
            pass
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            # The read loop notices the dead connection and restarts
            logger.error(f"Realtime write loop stopped: {e}")

    @staticmethod
    def _frames(item: OutboundItem):
        if item is END_OF_UTTERANCE:
            logger.debug("End of utterance, flushing input buffer")
            return [
                {"type": "input_audio_buffer.commit"},
                {"type": "response.create"},
            ]
        if isinstance(item, (bytes, bytearray)):
            return [{
                "type": "input_audio_buffer.append",
                "audio": base64.b64encode(item).decode("ascii"),
            }]
        return [item]
