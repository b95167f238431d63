"""
CHIP-8 Peripheral / Device Layer
=================================
The pieces of the machine that live outside the executor's thread:

  Timers:      delay + sound counters, guarded by one lock
  TimerTicker: background thread that decays the timers at 60 Hz
  Keypad:      16-key hex pad fed by the host event loop

The executor owns memory, registers, I, PC, stack and the bitmap.  The
only state shared with another thread is the timer pair (ticker thread)
and the key state / press queue (display thread), and both are reached
only through the locks below.
"""

from __future__ import annotations
import threading
import time
from collections import deque
from typing import Optional

TIMER_HZ = 60
KEY_QUEUE_DEPTH = 16

# Host keyboard → hex keypad
#   1 2 3 4      1 2 3 C
#   q w e r  ->  4 5 6 D
#   a s d f      7 8 9 E
#   z x c v      A 0 B F
KEYMAP = {
    '1': 0x1, '2': 0x2, '3': 0x3, '4': 0xC,
    'q': 0x4, 'w': 0x5, 'e': 0x6, 'r': 0xD,
    'a': 0x7, 's': 0x8, 'd': 0x9, 'f': 0xE,
    'z': 0xA, 'x': 0x0, 'c': 0xB, 'v': 0xF,
}


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Abstract peripheral."""

    def __init__(self, name: str):
        self.name = name

    def tick(self):
        """Advance the device by one of its own clock periods."""
        pass

    def reset(self):
        pass


# ---------------------------------------------------------------------------
#  Timers
# ---------------------------------------------------------------------------

class Timers(Device):
    """Delay and sound timers.  Decrement by one per tick, floor at zero.

    Reads, explicit sets and the tick all take the same lock, so a set
    from the executor can never be lost under a concurrent decrement.
    """

    def __init__(self):
        super().__init__("Timers")
        self._lock = threading.Lock()
        self._delay: int = 0
        self._sound: int = 0
        self.ticks: int = 0

    @property
    def delay(self) -> int:
        with self._lock:
            return self._delay

    @property
    def sound(self) -> int:
        with self._lock:
            return self._sound

    def set_delay(self, value: int):
        with self._lock:
            self._delay = value & 0xFF

    def set_sound(self, value: int):
        with self._lock:
            self._sound = value & 0xFF

    def tick(self):
        with self._lock:
            if self._sound:
                self._sound -= 1
            if self._delay:
                self._delay -= 1
            self.ticks += 1

    def reset(self):
        with self._lock:
            self._delay = 0
            self._sound = 0
            self.ticks = 0


class TimerTicker:
    """Background thread that ticks a Timers device at a fixed rate."""

    def __init__(self, timers: Timers, hz: int = TIMER_HZ):
        self.timers = timers
        self.period = 1.0 / hz
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name="chip8-timers")
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        deadline = time.monotonic()
        while not self._stop_event.is_set():
            deadline += self.period
            delay = deadline - time.monotonic()
            if delay > 0:
                if self._stop_event.wait(delay):
                    break
            else:
                # Fell behind (suspended process etc.): resync, no burst
                deadline = time.monotonic()
            self.timers.tick()


# ---------------------------------------------------------------------------
#  Keypad
# ---------------------------------------------------------------------------

class Keypad(Device):
    """16-key hex keypad.

    The host event loop calls press() / release().  The executor polls
    is_key_down() for SKP/SKNP and blocks in wait_key() for LD Vx, K.
    Presses are queued, so a key still held when the wait starts, or
    tapped while the waiter is waking, is not lost.  Presses released
    before the wait began are stale and are dropped.
    """

    def __init__(self):
        super().__init__("Keypad")
        self._cond = threading.Condition()
        self._down = [False] * 16
        self._presses: deque[int] = deque(maxlen=KEY_QUEUE_DEPTH)
        self._cancelled = False

    def press(self, key: int):
        key &= 0xF
        with self._cond:
            self._down[key] = True
            self._presses.append(key)
            self._cond.notify_all()

    def release(self, key: int):
        with self._cond:
            self._down[key & 0xF] = False

    def press_char(self, ch: str) -> bool:
        """Press the key mapped to a host character.  False if unmapped."""
        key = KEYMAP.get(ch.lower())
        if key is None:
            return False
        self.press(key)
        return True

    def release_char(self, ch: str) -> bool:
        key = KEYMAP.get(ch.lower())
        if key is None:
            return False
        self.release(key)
        return True

    def is_key_down(self, key: int) -> bool:
        with self._cond:
            return self._down[key & 0xF]

    def wait_key(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until a key press is queued and return it.

        Returns None when cancel() is called or the timeout expires;
        check `cancelled` to tell the two apart.
        """
        with self._cond:
            self._presses = deque((k for k in self._presses if self._down[k]),
                                  maxlen=KEY_QUEUE_DEPTH)
            self._cond.wait_for(lambda: self._presses or self._cancelled,
                                timeout=timeout)
            if self._cancelled or not self._presses:
                return None
            return self._presses.popleft()

    def cancel(self):
        """Wake any wait_key() caller.  Sticky until reset()."""
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    @property
    def cancelled(self) -> bool:
        with self._cond:
            return self._cancelled

    def reset(self):
        with self._cond:
            self._down = [False] * 16
            self._presses.clear()
            self._cancelled = False

    def keys_down(self) -> list[int]:
        with self._cond:
            return [k for k in range(16) if self._down[k]]
