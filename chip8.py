"""
CHIP-8 Interpreter Core
========================
Fetch/decode/execute engine for the CHIP-8 virtual machine: 4 KiB of RAM,
sixteen 8-bit V registers, a 16-bit I register, a 16-level return stack and
a 64x32 monochrome bitmap.

Every instruction is a big-endian 16-bit word.  The executor switches on
the high nibble and, for the 0x0 / 0x8 / 0xE / 0xF families, on the low
nibble or low byte.  The display, keypad and timers are collaborators the
core calls into; it owns none of their threads.
"""

from __future__ import annotations
import random
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from devices import Timers, Keypad

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE       = 4096
PC_START       = 0x200
NUM_REGS       = 16
FLAG_REG       = 0xF
STACK_DEPTH    = 16

DISPLAY_WIDTH  = 64
DISPLAY_HEIGHT = 32

FONT_BASE      = 0x000
GLYPH_BYTES    = 5

# Non-standard halt sentinels
HALT_OPCODES = (0x0000, 0x0A00)

# 4x5 hex digit glyphs, 0..F
FONT = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u8(v: int) -> int:
    """Mask to unsigned 8 bits."""
    return v & 0xFF

def u16(v: int) -> int:
    """Mask to unsigned 16 bits."""
    return v & 0xFFFF

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for interpreter faults.  Every one of them ends a run."""
    pass

class UnknownInstruction(Chip8Error):
    def __init__(self, opcode: int):
        self.opcode = opcode
        super().__init__(f"Unknown instruction {opcode:#06x}")

class StackOverflow(Chip8Error):
    pass

class StackUnderflow(Chip8Error):
    pass

class MemoryOutOfBounds(Chip8Error):
    def __init__(self, address: int):
        self.address = address
        super().__init__(f"Memory access out of bounds @ {address:#06x}")

class RomTooLarge(Chip8Error):
    def __init__(self, size: int):
        self.size = size
        super().__init__(f"ROM is {size} bytes, at most "
                         f"{MEM_SIZE - PC_START} fit above {PC_START:#05x}")

class KeyWaitTimeout(Chip8Error):
    pass

class HaltError(Chip8Error):
    pass

# ---------------------------------------------------------------------------
#  Stack
# ---------------------------------------------------------------------------

class Stack:
    """Fixed-capacity return-address stack."""

    def __init__(self, capacity: int = STACK_DEPTH):
        self.capacity = capacity
        self.slots: list[int] = [0] * capacity
        self.index = 0

    def __len__(self) -> int:
        return self.index

    def push(self, address: int):
        if self.index == self.capacity:
            raise StackOverflow(f"Stack is full ({self.capacity} entries)")
        self.slots[self.index] = u16(address)
        self.index += 1

    def pop(self) -> int:
        if self.index == 0:
            raise StackUnderflow("Stack is empty")
        self.index -= 1
        address = self.slots[self.index]
        self.slots[self.index] = 0
        return address

    def peek(self) -> int:
        if self.index == 0:
            raise StackUnderflow("Stack is empty")
        return self.slots[self.index - 1]

    def clear(self):
        self.slots = [0] * self.capacity
        self.index = 0

    def __repr__(self) -> str:
        live = " ".join(f"{a:04X}" for a in self.slots[:self.index])
        return f"Stack([{live}])"

# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Instruction:
    """Operand fields of one opcode.  Every 16-bit word decodes."""
    opcode: int
    family: int   # opcode & 0xF000
    x: int        # bits 8-11
    y: int        # bits 4-7
    n: int        # bits 0-3
    nnn: int      # bits 0-11
    kk: int       # bits 0-7


def decode(opcode: int) -> Instruction:
    opcode = u16(opcode)
    return Instruction(
        opcode=opcode,
        family=opcode & 0xF000,
        x=(opcode >> 8) & 0xF,
        y=(opcode >> 4) & 0xF,
        n=opcode & 0xF,
        nnn=opcode & 0x0FFF,
        kk=opcode & 0xFF,
    )

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 machine state plus the instruction executor."""

    def __init__(self, timers: Optional["Timers"] = None,
                 keypad: Optional["Keypad"] = None,
                 rng: Optional[random.Random] = None):
        self.mem = bytearray(MEM_SIZE)
        self.regs = bytearray(NUM_REGS)
        self.i: int = 0
        self.pc: int = PC_START
        self.stack = Stack(STACK_DEPTH)
        self.opcode: int = 0
        self.display: list[bytearray] = [bytearray(DISPLAY_WIDTH)
                                         for _ in range(DISPLAY_HEIGHT)]

        self.halted: bool = False
        self.cycle_count: int = 0          # completed instructions only

        # Collaborators
        if timers is None:
            from devices import Timers
            timers = Timers()
        self.timers = timers
        self.keypad = keypad
        self.screen = None               # object with clear() / present(bitmap)
        self.rng = rng or random.Random()
        self.key_timeout: Optional[float] = None

        # Callbacks
        self.on_halt: Optional[callable] = None

        self.mem[FONT_BASE:FONT_BASE + len(FONT)] = FONT

    # -- Reset --

    def reset(self):
        self.mem[:] = bytes(MEM_SIZE)
        self.mem[FONT_BASE:FONT_BASE + len(FONT)] = FONT
        self.regs[:] = bytes(NUM_REGS)
        self.i = 0
        self.pc = PC_START
        self.stack.clear()
        self.opcode = 0
        self._clear_display()
        self.timers.set_delay(0)
        self.timers.set_sound(0)
        self.halted = False
        self.cycle_count = 0

    # -- Memory access --

    def _check_addr(self, addr: int, size: int = 1):
        if addr < 0 or addr + size > MEM_SIZE:
            bad = addr if addr < 0 or addr >= MEM_SIZE else MEM_SIZE
            raise MemoryOutOfBounds(bad)

    def mem_read8(self, addr: int) -> int:
        self._check_addr(addr)
        return self.mem[addr]

    def mem_write8(self, addr: int, val: int):
        self._check_addr(addr)
        self.mem[addr] = u8(val)

    def mem_read16(self, addr: int) -> int:
        """Big-endian word read."""
        self._check_addr(addr, 2)
        return (self.mem[addr] << 8) | self.mem[addr + 1]

    def load_bytes(self, addr: int, data: bytes | bytearray):
        """Write raw bytes into memory at the given address."""
        self._check_addr(addr, len(data))
        self.mem[addr:addr + len(data)] = data

    # -- Fetch --

    def fetch(self) -> int:
        """Read the opcode at PC without advancing it."""
        self.opcode = self.mem_read16(self.pc)
        return self.opcode

    # =====================================================================
    #  STEP: one fetch/decode/execute cycle
    # =====================================================================

    def step(self):
        """Fetch and execute one instruction."""
        if self.halted:
            raise HaltError("CPU is halted")
        self.execute(self.fetch())

    def execute(self, opcode: int):
        """Apply one opcode to the machine state."""
        ins = decode(opcode)
        self.opcode = ins.opcode
        f = ins.family >> 12

        if   f == 0x0: self._exec_sys(ins)
        elif f == 0x1: self.pc = ins.nnn
        elif f == 0x2: self._exec_call(ins)
        elif f == 0x3: self._skip(self.regs[ins.x] == ins.kk)
        elif f == 0x4: self._skip(self.regs[ins.x] != ins.kk)
        elif f == 0x5: self._exec_skip_regs(ins, equal=True)
        elif f == 0x6:
            self.regs[ins.x] = ins.kk
            self._advance()
        elif f == 0x7:
            self.regs[ins.x] = u8(self.regs[ins.x] + ins.kk)
            self._advance()
        elif f == 0x8: self._exec_alu(ins)
        elif f == 0x9: self._exec_skip_regs(ins, equal=False)
        elif f == 0xA:
            self.i = ins.nnn
            self._advance()
        elif f == 0xB: self.pc = u16(ins.nnn + self.regs[0])
        elif f == 0xC:
            self.regs[ins.x] = self.rng.randrange(256) & ins.kk
            self._advance()
        elif f == 0xD: self._exec_draw(ins)
        elif f == 0xE: self._exec_key(ins)
        elif f == 0xF:
            if not self._exec_misc(ins):
                return          # LD Vx, K cancelled, retried on resume

        self.cycle_count += 1

    # -- PC helpers --

    def _advance(self, skip: bool = False):
        self.pc = u16(self.pc + (4 if skip else 2))

    def _skip(self, cond: bool):
        self._advance(skip=cond)

    def _unknown(self, ins: Instruction):
        self._advance()
        raise UnknownInstruction(ins.opcode)

    # =====================================================================
    #  Family executors
    # =====================================================================

    # -- 0x0: CLS / RET / halt --
    def _exec_sys(self, ins: Instruction):
        op = ins.opcode
        if op == 0x00E0:  # CLS
            self._clear_display()
            if self.screen is not None:
                self.screen.clear()
            self._advance()
        elif op == 0x00EE:  # RET
            self.pc = self.stack.pop()
        elif op in HALT_OPCODES:
            self._advance()
            self.halted = True
            if self.on_halt:
                self.on_halt()
        else:  # SYS nnn: machine-code routines are not emulated
            self._unknown(ins)

    # -- 0x2: CALL --
    def _exec_call(self, ins: Instruction):
        self.stack.push(u16(self.pc + 2))
        self.pc = ins.nnn

    # -- 0x5 / 0x9: register compare skips --
    def _exec_skip_regs(self, ins: Instruction, equal: bool):
        if ins.n != 0:
            self._unknown(ins)
        same = self.regs[ins.x] == self.regs[ins.y]
        self._skip(same if equal else not same)

    # -- 0x8: register ALU --
    def _exec_alu(self, ins: Instruction):
        x, y, sub = ins.x, ins.y, ins.n
        vx, vy = self.regs[x], self.regs[y]
        flag = None

        if sub == 0x0:    # LD
            result = vy
        elif sub == 0x1:  # OR
            result = vx | vy
        elif sub == 0x2:  # AND
            result = vx & vy
        elif sub == 0x3:  # XOR
            result = vx ^ vy
        elif sub == 0x4:  # ADD
            total = vx + vy
            result = u8(total)
            flag = 1 if total > 0xFF else 0
        elif sub == 0x5:  # SUB
            flag = 1 if vx > vy else 0
            result = u8(vx - vy)
        elif sub == 0x6:  # SHR
            flag = vx & 1
            result = vx >> 1
        elif sub == 0x7:  # SUBN
            flag = 1 if vy > vx else 0
            result = u8(vy - vx)
        elif sub == 0xE:  # SHL
            flag = vx & 1
            result = u8(vx << 1)
        else:
            self._unknown(ins)
            return

        self.regs[x] = result
        # VF last so the flag wins when x == 0xF
        if flag is not None:
            self.regs[FLAG_REG] = flag
        self._advance()

    # -- 0xD: DRW --
    def _exec_draw(self, ins: Instruction):
        self._check_addr(self.i, ins.n)
        sprite = self.mem[self.i:self.i + ins.n]
        x0 = self.regs[ins.x] % DISPLAY_WIDTH
        y0 = self.regs[ins.y] % DISPLAY_HEIGHT

        collision = 0
        for row, bits in enumerate(sprite):
            y = y0 + row
            if y >= DISPLAY_HEIGHT:
                break
            line = self.display[y]
            for col in range(8):
                x = x0 + col
                if x >= DISPLAY_WIDTH:
                    break
                if (bits >> (7 - col)) & 1:
                    if line[x]:
                        collision = 1
                    line[x] ^= 1

        self.regs[FLAG_REG] = collision
        if self.screen is not None:
            self.screen.present(self.display)
        self._advance()

    # -- 0xE: key skips --
    def _exec_key(self, ins: Instruction):
        key = self.regs[ins.x] & 0xF
        if ins.kk == 0x9E:    # SKP
            self._skip(self._key_down(key))
        elif ins.kk == 0xA1:  # SKNP
            self._skip(not self._key_down(key))
        else:
            self._unknown(ins)

    def _key_down(self, key: int) -> bool:
        return self.keypad is not None and self.keypad.is_key_down(key)

    # -- 0xF: timers, I, BCD, bulk transfer --
    def _exec_misc(self, ins: Instruction) -> bool:
        x, sub = ins.x, ins.kk

        if sub == 0x07:
            self.regs[x] = self.timers.delay
        elif sub == 0x0A:
            if not self._wait_key(x):
                return False    # cancelled: instruction not completed
        elif sub == 0x15:
            self.timers.set_delay(self.regs[x])
        elif sub == 0x18:
            self.timers.set_sound(self.regs[x])
        elif sub == 0x1E:
            self.i = u16(self.i + self.regs[x])
        elif sub == 0x29:
            self.i = FONT_BASE + self.regs[x] * GLYPH_BYTES
        elif sub == 0x33:
            self._check_addr(self.i, 3)
            v = self.regs[x]
            self.mem[self.i]     = v // 100
            self.mem[self.i + 1] = (v // 10) % 10
            self.mem[self.i + 2] = v % 10
        elif sub == 0x55:
            self._check_addr(self.i, x + 1)
            self.mem[self.i:self.i + x + 1] = self.regs[:x + 1]
        elif sub == 0x65:
            self._check_addr(self.i, x + 1)
            self.regs[:x + 1] = self.mem[self.i:self.i + x + 1]
        else:
            self._unknown(ins)
            return False
        self._advance()
        return True

    def _wait_key(self, x: int) -> bool:
        """Block for the next key press.  False if the wait was cancelled."""
        if self.keypad is None:
            raise KeyWaitTimeout("No keypad attached")
        key = self.keypad.wait_key(timeout=self.key_timeout)
        if key is None:
            if self.keypad.cancelled:
                return False
            raise KeyWaitTimeout(
                f"No key pressed within {self.key_timeout}s")
        self.regs[x] = key
        return True

    # -- Display --

    def _clear_display(self):
        for line in self.display:
            line[:] = bytes(DISPLAY_WIDTH)

    def pixel(self, x: int, y: int) -> int:
        return self.display[y][x]

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X}={self.regs[r]:#04x}" for r in range(row, row + 4)))
        lines.append(f"  I={self.i:#06x}  PC={self.pc:#06x}  "
                     f"OP={self.opcode:#06x}")
        lines.append(f"  DT={self.timers.delay}  ST={self.timers.sound}  "
                     f"SP={len(self.stack)}  {self.stack!r}")
        return "\n".join(lines)
