"""
CHIP-8 System
==============
Wires together:
  - the Chip8 core (chip8.py)
  - the Timers / TimerTicker / Keypad devices (devices.py)
  - an optional display surface (display.py) implementing clear()/present()

and runs the clock loop: check halt, fetch, decode, execute, pace to the
configured instruction rate.  The 60 Hz timer decay runs on its own thread
for as long as run() is active.
"""

from __future__ import annotations
import threading
import time
from dataclasses import dataclass
from typing import Optional

from chip8 import (
    Chip8, Chip8Error, UnknownInstruction, RomTooLarge,
    MEM_SIZE, PC_START,
)
from devices import Timers, TimerTicker, Keypad, TIMER_HZ

DEFAULT_CLOCK_HZ = 500


# ---------------------------------------------------------------------------
#  Configuration
# ---------------------------------------------------------------------------

@dataclass
class Chip8Config:
    clock_hz: int = DEFAULT_CLOCK_HZ      # instructions per second
    debug: bool = False                   # trace + skip unknown opcodes
    key_timeout: Optional[float] = None   # LD Vx, K wait bound (seconds)
    scale: int = 10                       # display pixel scale
    hold: bool = True                     # keep window open after halt

    def __post_init__(self):
        if self.clock_hz <= 0:
            raise ValueError(f"clock_hz must be positive, got {self.clock_hz}")
        if self.key_timeout is not None and self.key_timeout <= 0:
            raise ValueError("key_timeout must be positive or None")


# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class Chip8System:
    """One CHIP-8 machine plus its timer thread and input/display hooks."""

    def __init__(self, config: Optional[Chip8Config] = None, rng=None):
        self.config = config or Chip8Config()
        self.timers = Timers()
        self.keypad = Keypad()
        self.ticker = TimerTicker(self.timers, TIMER_HZ)
        self.cpu = Chip8(timers=self.timers, keypad=self.keypad, rng=rng)
        self.cpu.key_timeout = self.config.key_timeout

        self._halt = threading.Event()
        self.rom_size: int = 0
        self.error: Optional[Chip8Error] = None

        # Callbacks
        self.on_trace: Optional[callable] = None   # (addr, opcode)
        self.on_error: Optional[callable] = None   # (exc) for skipped faults

    # -----------------------------------------------------------------
    #  Display wiring
    # -----------------------------------------------------------------

    def attach_display(self, screen):
        """Route CLS / DRW output to a surface with clear()/present()."""
        self.cpu.screen = screen

    @property
    def screen(self):
        return self.cpu.screen

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_rom(self, data: bytes | bytearray):
        """Copy a ROM image into memory at 0x200."""
        if PC_START + len(data) > MEM_SIZE:
            raise RomTooLarge(len(data))
        self.cpu.load_bytes(PC_START, data)
        self.rom_size = len(data)

    def load_rom_file(self, path: str):
        with open(path, "rb") as f:
            data = f.read()
        self.load_rom(data)

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def reset(self):
        """Back to power-on state.  The loaded ROM is discarded."""
        self.stop()
        self.cpu.reset()
        self.keypad.reset()
        self.timers.reset()
        self._halt.clear()
        self.rom_size = 0
        self.error = None

    def step(self):
        """Execute exactly one instruction (no pacing, no timer thread)."""
        if self.on_trace is not None and self.config.debug:
            self.on_trace(self.cpu.pc, self.cpu.mem_read16(self.cpu.pc))
        try:
            self.cpu.step()
        except UnknownInstruction as e:
            if not self.config.debug:
                raise
            if self.on_error is not None:
                self.on_error(e)

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run at config.clock_hz until halt, stop() or a fault.

        Returns the number of instructions executed.  Any Chip8Error is
        stored on `error` and re-raised.
        """
        period = 1.0 / self.config.clock_hz
        steps = 0
        self.ticker.start()
        deadline = time.monotonic()
        try:
            while not self._halt.is_set() and not self.cpu.halted:
                if max_steps is not None and steps >= max_steps:
                    break
                try:
                    self.step()
                except Chip8Error as e:
                    self.error = e
                    raise
                steps += 1

                deadline += period
                delay = deadline - time.monotonic()
                if delay > 0:
                    self._halt.wait(delay)
                else:
                    deadline = time.monotonic()
        finally:
            self.ticker.stop()
        return steps

    def run_until_halt(self, max_steps: int = 1_000_000) -> int:
        """Unpaced run for tests and batch use.  Timers are not ticked."""
        steps = 0
        while steps < max_steps and not self._halt.is_set() \
                and not self.cpu.halted:
            self.step()
            steps += 1
        return steps

    def stop(self):
        """Request a halt.  Safe from any thread; wakes a blocked LD Vx, K."""
        self._halt.set()
        self.keypad.cancel()

    # -----------------------------------------------------------------
    #  State queries
    # -----------------------------------------------------------------

    @property
    def halted(self) -> bool:
        return self.cpu.halted or self._halt.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._halt.is_set()

    def dump_state(self) -> str:
        """CPU + device state dump."""
        lines = ["=== Registers ===", self.cpu.dump_regs(),
                 f"  Cycles: {self.cpu.cycle_count}  "
                 f"Halted: {self.cpu.halted}",
                 "",
                 "=== Devices ===",
                 f"  Timers: delay={self.timers.delay} "
                 f"sound={self.timers.sound} ticks={self.timers.ticks} "
                 f"thread={'up' if self.ticker.running else 'down'}",
                 f"  Keypad: down={self.keypad.keys_down()}",
                 f"  ROM: {self.rom_size} bytes @ {PC_START:#05x}"]
        if self.error is not None:
            lines.append(f"  Last error: {self.error}")
        return "\n".join(lines)
