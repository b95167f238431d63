"""
CHIP-8 Display
===============
Renders the 64x32 bitmap in a pygame window and feeds key events back
into the keypad.  The window runs in a background thread so the clock
loop never waits on a repaint; the core only calls clear() and
present(bitmap), which copy the frame under a lock and mark it dirty.

Usage (programmatic):
    from display import PygameDisplay
    disp = PygameDisplay(sys_emu, scale=10)
    disp.start()       # launches background thread
    sys_emu.run()
    disp.stop()

Usage (CLI):
    python cli.py roms/PONG --scale 12
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import numpy as np

from chip8 import DISPLAY_WIDTH, DISPLAY_HEIGHT
from devices import KEYMAP

if TYPE_CHECKING:
    from system import Chip8System

FG_COLOR = (230, 230, 230)
BG_COLOR = (16, 16, 24)
HOLD_TEXT = "Press ESC to quit"

BEEP_HZ = 440
SAMPLE_RATE = 22050


def bitmap_to_rgb(bitmap, on: tuple = FG_COLOR,
                  off: tuple = BG_COLOR) -> np.ndarray:
    """Convert a row-major bitmap into a (width, height, 3) uint8 array.

    The column-major result is what pygame.surfarray.blit_array expects.
    """
    rows = np.array([np.frombuffer(bytes(line), dtype=np.uint8)
                     for line in bitmap], dtype=np.uint8)
    lit = rows.T.astype(bool)
    pixels = np.empty(lit.shape + (3,), dtype=np.uint8)
    pixels[...] = np.array(off, dtype=np.uint8)
    pixels[lit] = np.array(on, dtype=np.uint8)
    return pixels


def square_wave(freq: int = BEEP_HZ, rate: int = SAMPLE_RATE,
                volume: float = 0.25) -> np.ndarray:
    """One second of 16-bit signed square wave, mono."""
    t = np.arange(rate)
    half = max(1, rate // (2 * freq))
    wave = np.where((t // half) % 2 == 0, 1.0, -1.0) * volume
    return (wave * 32767).astype(np.int16)


# ── Sound ─────────────────────────────────────────────────────────────


class Buzzer:
    """Plays a looping tone while the sound timer is nonzero."""

    def __init__(self, pygame_module):
        self.pygame = pygame_module
        self.sound = None
        self.playing = False
        try:
            pygame_module.mixer.init(frequency=SAMPLE_RATE, size=-16,
                                     channels=1)
            wave = square_wave()
            _, _, channels = pygame_module.mixer.get_init()
            if channels > 1:
                wave = np.repeat(wave[:, None], channels, axis=1)
            self.sound = pygame_module.sndarray.make_sound(wave)
        except Exception as e:
            print(f"[display] sound disabled: {e}")

    def update(self, active: bool):
        if self.sound is None or active == self.playing:
            return
        if active:
            self.sound.play(loops=-1)
        else:
            self.sound.stop()
        self.playing = active

    def close(self):
        self.update(False)


# ── Window ────────────────────────────────────────────────────────────


class PygameDisplay:
    """Background-threaded pygame window for the CHIP-8 bitmap."""

    def __init__(self, sys_emu: "Chip8System", scale: int = 10,
                 title: str = "CHIP-8", hold: bool = True):
        self.sys = sys_emu
        self.scale = max(1, scale)
        self.title = title
        self.hold = hold
        self.fps = 60
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._started = threading.Event()
        self._closed = threading.Event()

        self._lock = threading.Lock()
        self._frame = [bytearray(DISPLAY_WIDTH) for _ in range(DISPLAY_HEIGHT)]
        self._dirty = True

    # -- surface API (called from the executor thread) ----------------------

    def clear(self):
        with self._lock:
            for line in self._frame:
                line[:] = bytes(DISPLAY_WIDTH)
            self._dirty = True

    def present(self, bitmap):
        with self._lock:
            for dst, src in zip(self._frame, bitmap):
                dst[:] = src
            self._dirty = True

    # -- public API -------------------------------------------------------

    def start(self):
        """Start the display thread.  Returns once the window is open."""
        self.sys.attach_display(self)
        self._stop_event.clear()
        self._started.clear()
        self._closed.clear()
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name="chip8-display")
        self._thread.start()
        self._started.wait(timeout=5.0)

    def stop(self):
        """Signal the display thread to shut down and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3.0)
            self._thread = None

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Block until the user closes the window (ESC / close button)."""
        return self._closed.wait(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- internals --------------------------------------------------------

    def _run(self):
        """Main display loop (runs in background thread)."""
        import pygame

        pygame.init()
        pygame.display.set_caption(self.title)
        win_w = DISPLAY_WIDTH * self.scale
        win_h = DISPLAY_HEIGHT * self.scale
        screen = pygame.display.set_mode((win_w, win_h))
        clock = pygame.time.Clock()
        font = pygame.font.SysFont("monospace", max(12, self.scale + 4),
                                   bold=True)
        surface = pygame.Surface((DISPLAY_WIDTH, DISPLAY_HEIGHT))
        buzzer = Buzzer(pygame)
        banner_shown = False

        self._started.set()

        try:
            while not self._stop_event.is_set():
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        self._close()
                        return
                    elif event.type == pygame.KEYDOWN:
                        if event.key == pygame.K_ESCAPE:
                            self._close()
                            return
                        name = pygame.key.name(event.key)
                        if name in KEYMAP:
                            self.sys.keypad.press(KEYMAP[name])
                    elif event.type == pygame.KEYUP:
                        name = pygame.key.name(event.key)
                        if name in KEYMAP:
                            self.sys.keypad.release(KEYMAP[name])

                buzzer.update(self.sys.timers.sound > 0
                              and not self.sys.halted)

                show_banner = self.hold and self.sys.cpu.halted
                with self._lock:
                    dirty = self._dirty or (show_banner and not banner_shown)
                    if dirty:
                        pixels = bitmap_to_rgb(self._frame)
                        self._dirty = False
                if dirty:
                    pygame.surfarray.blit_array(surface, pixels)
                    screen.blit(pygame.transform.scale(surface, (win_w, win_h)),
                                (0, 0))
                    if show_banner:
                        label = font.render(HOLD_TEXT, True, FG_COLOR,
                                            BG_COLOR)
                        screen.blit(label, (4, 4))
                        banner_shown = True
                    pygame.display.flip()

                clock.tick(self.fps)

        except Exception as e:
            print(f"\n[display] error: {e}")
            self._close()
        finally:
            buzzer.close()
            pygame.quit()

    def _close(self):
        self._stop_event.set()
        self._closed.set()
        self.sys.stop()


class HeadlessDisplay:
    """No-op display for tests and --headless runs.  Records presented frames."""

    def __init__(self, sys_emu: "Chip8System" = None):
        self.sys = sys_emu
        self.frames: list[bytes] = []
        self.clears: int = 0

    def start(self):
        if self.sys is not None:
            self.sys.attach_display(self)

    def stop(self):
        pass

    def clear(self):
        self.clears += 1

    def present(self, bitmap):
        self.frames.append(b"".join(bytes(line) for line in bitmap))

    def snapshot(self) -> bytes | None:
        """Most recently presented frame, row-major, one byte per cell."""
        return self.frames[-1] if self.frames else None

    @property
    def running(self) -> bool:
        return False
