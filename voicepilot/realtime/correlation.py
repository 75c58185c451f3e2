"""
Request/response correlation for the realtime session.

Each request registers a correlation before it is sent. The correlation
id travels with `response.create` as response metadata; when the backend
announces the response (`response.created`) the response id is bound to
the correlation carrying that id. A response without the id (a server VAD
voice turn, a tool follow-up) binds nothing. For backends that drop the
metadata, first-in-first-out order can be enabled: the oldest unbound
correlation is used until a response carrying an id proves the metadata
arrives.

All methods are called from the event loop thread.
"""

import asyncio
import uuid
from collections import OrderedDict
from typing import AsyncIterator, Dict, List, Optional, Set, Union

from voicepilot.core.llm import ModelResponse
from voicepilot.errors import CorrelationAbandoned
from voicepilot.logger import get_logger

logger = get_logger(__name__)

_END = object()


def new_correlation_id() -> str:
    return f"corr_{uuid.uuid4().hex[:12]}"


class PendingResponse:
    """A request waiting for one complete response."""

    def __init__(self, correlation_id: str, future: asyncio.Future):
        self.correlation_id = correlation_id
        self.future = future
        self.response_id: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, response: ModelResponse) -> bool:
        if self.future.done():
            return False
        self.future.set_result(response)
        return True

    def fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)

    def __await__(self):
        return self.future.__await__()


class DeltaStream:
    """
    A request whose response text is consumed incrementally.

    Example:
        stream = await session.stream_chat_completion("explain this")
        async for delta in stream:
            print(delta, end="")
    """

    def __init__(self, correlation_id: str):
        self.correlation_id = correlation_id
        self.response_id: Optional[str] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def done(self) -> bool:
        return self._closed

    def push(self, delta: str) -> None:
        if not self._closed:
            self._queue.put_nowait(delta)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_END)

    def fail(self, exc: BaseException) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(exc)

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _END:
            # Let later iterations see the end as well
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._queue.put_nowait(item)
            raise item
        return item

    async def text(self) -> str:
        """Collect the whole response text."""
        return "".join([delta async for delta in self])


Correlation = Union[PendingResponse, DeltaStream]


class ResponseCorrelator:
    """
    Tracks in-flight requests and routes backend responses to them.

    Correlations are kept in registration order so the FIFO fallback
    always picks the oldest one.

    Args:
        fifo_fallback: Bind responses without a correlation id to the
            oldest pending request. Switched off for good once the backend
            echoes a correlation id.
    """

    def __init__(self, fifo_fallback: bool = False):
        self.fifo_fallback = fifo_fallback
        self._pending: "OrderedDict[str, Correlation]" = OrderedDict()
        self._by_response: Dict[str, Correlation] = {}
        # Responses announced by the backend and not yet done
        self._announced: Set[str] = set()

    def register_response(self) -> PendingResponse:
        future = asyncio.get_running_loop().create_future()
        pending = PendingResponse(new_correlation_id(), future)
        self._pending[pending.correlation_id] = pending
        return pending

    def register_stream(self) -> DeltaStream:
        stream = DeltaStream(new_correlation_id())
        self._pending[stream.correlation_id] = stream
        return stream

    def discard(self, correlation: Correlation) -> None:
        """Forget a correlation whose caller stopped waiting."""
        self._pending.pop(correlation.correlation_id, None)
        if correlation.response_id is not None:
            self._by_response.pop(correlation.response_id, None)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _oldest_unbound(self, kind: Optional[type] = None) -> Optional[Correlation]:
        for correlation in self._pending.values():
            if correlation.response_id is None and not correlation.done:
                if kind is None or isinstance(correlation, kind):
                    return correlation
        return None

    def bind(self, response_id: str, correlation_id: Optional[str] = None) -> Optional[Correlation]:
        """
        Bind a backend response id to a correlation.

        The explicit correlation id wins. Without one the response was not
        requested by us (voice turn, tool follow-up) and binds nothing,
        unless the FIFO fallback is on. An id naming a correlation that is
        gone (abandoned or given up on) binds nothing.
        """
        self._announced.add(response_id)
        if response_id in self._by_response:
            return self._by_response[response_id]

        if correlation_id is not None:
            if self.fifo_fallback:
                logger.info("Backend echoes correlation ids, disabling FIFO fallback")
                self.fifo_fallback = False
            correlation = self._pending.get(correlation_id)
            if correlation is None or correlation.response_id is not None:
                logger.debug(f"Response {response_id} carries stale correlation {correlation_id}")
                return None
        else:
            if not self.fifo_fallback:
                logger.debug(f"Response {response_id} carries no correlation id")
                return None
            correlation = self._oldest_unbound()
            if correlation is None:
                return None

        correlation.response_id = response_id
        self._by_response[response_id] = correlation
        logger.debug(f"Bound response {response_id} to {correlation.correlation_id}")
        return correlation

    def lookup(self, response_id: Optional[str]) -> Optional[Correlation]:
        if response_id is None:
            return None
        return self._by_response.get(response_id)

    def complete(self, response_id: Optional[str], response: ModelResponse) -> bool:
        """
        Resolve the response's pending future.

        With the FIFO fallback on, a response that was never announced
        completes the oldest unbound pending future. Completing twice is
        ignored.
        """
        correlation = self.lookup(response_id)
        if correlation is None and self.fifo_fallback and response_id not in self._announced:
            correlation = self._oldest_unbound(PendingResponse)
        if not isinstance(correlation, PendingResponse):
            return False
        return correlation.resolve(response)

    def push_delta(self, response_id: Optional[str], delta: str) -> bool:
        correlation = self.lookup(response_id)
        if isinstance(correlation, DeltaStream):
            correlation.push(delta)
            return True
        return False

    def finish(self, response_id: Optional[str]) -> None:
        """
        Close the correlation for a finished response. A future that never
        received content resolves with an empty response.
        """
        self._announced.discard(response_id)
        correlation = self.lookup(response_id)
        if correlation is None:
            return
        self.discard(correlation)
        if isinstance(correlation, PendingResponse):
            correlation.resolve(ModelResponse())
        else:
            correlation.close()

    def abandon_all(self, exc: Optional[BaseException] = None) -> int:
        """Fail every in-flight correlation. Returns how many were failed."""
        exc = exc or CorrelationAbandoned("Connection lost before the response arrived")
        correlations: List[Correlation] = list(self._pending.values())
        self._pending.clear()
        self._by_response.clear()
        self._announced.clear()

        abandoned = 0
        for correlation in correlations:
            if not correlation.done:
                correlation.fail(exc)
                abandoned += 1
        if abandoned:
            logger.warning(f"Abandoned {abandoned} pending response(s): {exc}")
        return abandoned
