# core/events.py
import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Union

from .errors import SyncCancelledError
from .logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StepEvent:
    step_id: str
    status: str


@dataclass(frozen=True)
class PriceProgressEvent:
    current: int
    total: int


@dataclass(frozen=True)
class RunFinished:
    """Last event of an orchestrator run; ends every open ``stream()``."""

    account_id: str
    ok: bool


Event = Union[StepEvent, PriceProgressEvent, RunFinished]
Listener = Callable[[Event], None]

_CLOSED = object()


class EventBus:
    """
    Progress notifications for one orchestrator.

    Consumers either register a listener callable or iterate ``stream()``.
    A failing listener is logged and never interrupts the sync.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._queues: List[asyncio.Queue] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning("Progress listener %r failed on %s: %s", listener, event, e)
        for queue in self._queues:
            queue.put_nowait(event)

    def close(self) -> None:
        """End every open ``stream()``."""
        for queue in self._queues:
            queue.put_nowait(_CLOSED)

    def stream(self) -> AsyncIterator[Event]:
        """
        Iterate published events until the next ``RunFinished`` or ``close()``.

        The queue is registered here, so events published before the first
        ``__anext__`` are not lost.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue) -> AsyncIterator[Event]:
        try:
            while True:
                event = await queue.get()
                if event is _CLOSED:
                    return
                yield event
                if isinstance(event, RunFinished):
                    return
        finally:
            if queue in self._queues:
                self._queues.remove(queue)


class CancellationToken:
    """Checked at every suspension point of the pagination and batch loops."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def check(self) -> None:
        if self._event.is_set():
            raise SyncCancelledError(self.reason)

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes up early, and raises, when cancelled."""
        self.check()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.check()


async def pause(seconds: float, token: CancellationToken | None = None) -> None:
    if token is not None:
        await token.sleep(seconds)
    elif seconds > 0:
        await asyncio.sleep(seconds)
