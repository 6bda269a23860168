from __future__ import annotations

from typing import Literal

GateState = Literal["open", "draining", "released"]


class DrainGate:
    """In-flight segment counter plus end-request latch for one session.

    `leave()` and `request_end()` return True exactly once: on the call that
    observes the end request with nothing left in flight. Callers hold the
    owning session's lock so decrement-and-check is a single step.
    """

    def __init__(self) -> None:
        self._in_flight = 0
        self._next_order = 0
        self._end_requested = False
        self._released = False

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def end_requested(self) -> bool:
        return self._end_requested

    @property
    def released(self) -> bool:
        return self._released

    @property
    def state(self) -> GateState:
        if self._released:
            return "released"
        if self._end_requested:
            return "draining"
        return "open"

    def accept(self) -> int:
        """Admit one segment and return its submission order."""
        if self._end_requested:
            raise RuntimeError("Drain gate no longer accepts segments after an end request")
        order = self._next_order
        self._next_order += 1
        self._in_flight += 1
        return order

    def leave(self) -> bool:
        if self._in_flight <= 0:
            raise RuntimeError("Drain gate counter underflow")
        self._in_flight -= 1
        return self._try_release()

    def request_end(self) -> bool:
        self._end_requested = True
        return self._try_release()

    def _try_release(self) -> bool:
        if self._released or not self._end_requested or self._in_flight > 0:
            return False
        self._released = True
        return True
