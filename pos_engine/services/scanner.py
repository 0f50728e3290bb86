"""Keyboard-wedge scanner decoding.

A hardware barcode reader types its payload as a fast burst of keystrokes
followed by Enter. ``ScanDecoder`` turns a stream of ``KeyEvent``s into
barcode tokens: characters accumulate in a buffer, Enter flushes the buffer
when its length is within ``[min_length, max_length]`` and discards it
otherwise, and an idle gap longer than ``idle_seconds`` between keystrokes
drops whatever was typed so far (a person typing into another field).

The decoder is owned by one terminal session and is inert until ``start()``.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TERMINATORS = ("Enter",)


@dataclass(frozen=True)
class KeyEvent:
    key: str
    ts: Optional[float] = None  # segundos; None = reloj del decoder


class ScanDecoder:
    def __init__(
        self,
        min_length: int = 8,
        max_length: int = 18,
        idle_seconds: float = 5.0,
        terminators: Tuple[str, ...] = DEFAULT_TERMINATORS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if min_length < 1 or max_length < min_length:
            raise ValueError("invalid barcode length bounds")
        self.min_length = min_length
        self.max_length = max_length
        self.idle_seconds = idle_seconds
        self.terminators = tuple(terminators)
        self._clock = clock
        self._active = False
        self._buffer: list[str] = []
        self._deadline: Optional[float] = None
        # True cuando el deadline viene de KeyEvent.ts (reloj del cliente)
        self._event_time = False

    @property
    def active(self) -> bool:
        return self._active

    @property
    def pending(self) -> str:
        """Current partial buffer, after applying the idle timer.

        A deadline set from event timestamps is never compared with the
        decoder clock; it only expires when a later event arrives.
        """
        self.poll(self._clock())
        return "".join(self._buffer)

    def start(self) -> None:
        # reiniciar si ya estaba activo: un solo buffer por terminal
        self._active = True
        self._reset()

    def stop(self) -> None:
        self._active = False
        self._reset()

    def poll(self, now: float, event_time: bool = False) -> bool:
        """Fire the idle timer if it expired. Returns True when a buffer was dropped.

        ``event_time`` tells which clock ``now`` comes from; a deadline is only
        checked against the clock that set it.
        """
        if self._deadline is None or event_time != self._event_time:
            return False
        if now >= self._deadline:
            if self._buffer:
                logger.debug("scan buffer discarded after idle timeout (%d chars)", len(self._buffer))
            self._reset()
            return True
        return False

    def feed(self, event: KeyEvent) -> Optional[str]:
        if not self._active:
            return None

        event_time = event.ts is not None
        now = event.ts if event_time else self._clock()
        self.poll(now, event_time)

        if event.key in self.terminators:
            buf = "".join(self._buffer)
            self._reset()
            if self.min_length <= len(buf) <= self.max_length:
                logger.debug("scan decoded: %s", buf)
                return buf
            if buf:
                logger.debug("scan discarded: length %d out of range", len(buf))
            return None

        # teclas especiales ("Shift", "Tab", ...) se ignoran
        if len(event.key) != 1:
            return None

        self._buffer.append(event.key)
        self._deadline = now + self.idle_seconds
        self._event_time = event_time
        return None

    def decode(self, events: Iterable[KeyEvent]) -> Iterator[str]:
        for ev in events:
            token = self.feed(ev)
            if token is not None:
                yield token

    def _reset(self) -> None:
        self._buffer.clear()
        self._deadline = None
        self._event_time = False


class TokenStream:
    """Lazy, restartable view of the tokens contained in an event source.

    Every iteration builds a fresh decoder, so iterating twice over the same
    (re-iterable) events yields the same tokens.
    """

    def __init__(self, events: Iterable[KeyEvent], **decoder_kwargs):
        self._events = events
        self._decoder_kwargs = decoder_kwargs

    def __iter__(self) -> Iterator[str]:
        decoder = ScanDecoder(**self._decoder_kwargs)
        decoder.start()
        return decoder.decode(self._events)


def keys_from_text(
    text: str, start: Optional[float] = 0.0, gap: float = 0.01, enter: bool = True
) -> list[KeyEvent]:
    """Build the keystroke burst a wedge scanner would type for ``text``.

    With ``start=None`` the events carry no timestamp and the decoder clock is used.
    """
    keys = list(text) + (["Enter"] if enter else [])
    if start is None:
        return [KeyEvent(k) for k in keys]
    return [KeyEvent(k, start + i * gap) for i, k in enumerate(keys)]
