"""Streaming response handler: token accumulation with throttled observer snapshots."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from ..errors import ConcurrentRequestError, TransportError
from .context_store import Turn

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_MS = 150


@dataclass(frozen=True)
class StreamSnapshot:
    text: str
    final: bool = False
    interrupted: bool = False


@dataclass
class StreamOutcome:
    text: str
    interrupted: bool = False
    finish_reason: str | None = None


SnapshotObserver = Callable[[StreamSnapshot], None]
EventObserver = Callable[[dict[str, Any]], None]


class StreamingResponseHandler:
    """Consumes one model event stream at a time.

    Observer notifications are trailing-edge throttled: the first token after a
    quiet period arms a timer, and when it fires the observer receives whatever
    the buffer holds at that moment. Completion always delivers one final,
    untruncated snapshot.
    """

    def __init__(self, throttle_ms: int = DEFAULT_THROTTLE_MS, observer: SnapshotObserver | None = None) -> None:
        self.throttle_ms = throttle_ms
        self.observer = observer
        self._active = False
        self._buffer: list[str] = []
        self._timer: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def text(self) -> str:
        return "".join(self._buffer)

    def _notify(self, snapshot: StreamSnapshot) -> None:
        if self.observer is None:
            return
        try:
            self.observer(snapshot)
        except Exception:
            logger.exception("Stream observer raised")

    def _flush(self) -> None:
        self._timer = None
        self._notify(StreamSnapshot(self.text))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_flush(self) -> None:
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.throttle_ms / 1000, self._flush)

    async def consume(
        self,
        events: AsyncIterator[dict[str, Any]],
        turn: Turn | None = None,
        cancel_event: asyncio.Event | None = None,
        on_event: EventObserver | None = None,
    ) -> StreamOutcome:
        """Drain ``events`` into the buffer (and ``turn``, when given).

        Raises ConcurrentRequestError if a stream is already in flight and
        TransportError if the stream reports an error.
        """
        if self._active:
            raise ConcurrentRequestError("A response is already streaming")
        self._active = True
        self._buffer = []
        finish_reason: str | None = None
        completed = False

        try:
            async for event in events:
                if cancel_event is not None and cancel_event.is_set():
                    break
                kind = event.get("event")
                data = event.get("data", {})
                if kind == "token":
                    content = data.get("content", "")
                    if not content:
                        continue
                    self._buffer.append(content)
                    if turn is not None:
                        turn.append_text(content)
                    self._schedule_flush()
                elif kind == "done":
                    finish_reason = data.get("finish_reason")
                    completed = True
                    break
                elif kind == "error":
                    self._cancel_timer()
                    raise TransportError(
                        data.get("message", "AI request failed"),
                        code=data.get("code", ""),
                        retryable=bool(data.get("retryable", False)),
                    )
                elif on_event is not None:
                    on_event(event)
        except asyncio.CancelledError:
            self._cancel_timer()
            self._notify(StreamSnapshot(self.text, final=True, interrupted=True))
            raise
        finally:
            self._cancel_timer()
            self._active = False
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

        interrupted = not completed and cancel_event is not None and cancel_event.is_set()
        if interrupted:
            logger.info("Stream interrupted after %d chars", len(self.text))
        self._notify(StreamSnapshot(self.text, final=True, interrupted=interrupted))
        return StreamOutcome(self.text, interrupted=interrupted, finish_reason=finish_reason)
