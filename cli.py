#!/usr/bin/env python3
"""
CHIP-8 Runner / Monitor
========================
Command-line front end for the CHIP-8 interpreter.

Provides:
  - ROM loading and a paced run in a pygame window (or headless)
  - Disassembly of a ROM image
  - An interactive debug monitor: step / run / breakpoints, register and
    memory inspection, keypad injection

Usage:
  python cli.py ROM [--clockspeed HZ] [--debug] [--key-timeout S]
                    [--scale N] [--headless] [--no-hold]
  python cli.py ROM --disassemble
  python cli.py ROM --monitor
"""

from __future__ import annotations
import argparse
import cmd
import readline
import shlex
import sys
from typing import Iterator, Optional

from chip8 import (
    Chip8Error, HaltError, KeyWaitTimeout, decode,
    MEM_SIZE, PC_START, HALT_OPCODES, NUM_REGS,
)
from system import Chip8System, Chip8Config, DEFAULT_CLOCK_HZ

MONITOR_KEY_TIMEOUT = 0.1
NOT_FOUND = "[N/A] - Instruction not found"

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

ALU_TEXT = {
    0x0: "[LD] - registers[0x{x:X}] = registers[0x{y:X}]",
    0x1: "[OR] - registers[0x{x:X}] |= registers[0x{y:X}]",
    0x2: "[AND] - registers[0x{x:X}] &= registers[0x{y:X}]",
    0x3: "[XOR] - registers[0x{x:X}] ^= registers[0x{y:X}]",
    0x4: "[ADD] - registers[0x{x:X}] += registers[0x{y:X}] "
         "and set registers[0xF] for overflow",
    0x5: "[SUB] - registers[0x{x:X}] -= registers[0x{y:X}] "
         "and set registers[0xF] for borrow",
    0x6: "[SHR] - registers[0x{x:X}] /= 2 and set registers[0xF] if odd",
    0x7: "[SUBN] - registers[0x{x:X}] = registers[0x{y:X}] - registers[0x{x:X}] "
         "and set registers[0xF] for borrow",
    0xE: "[SHL] - registers[0x{x:X}] *= 2 and set registers[0xF] if odd",
}

MISC_TEXT = {
    0x07: "[LD] - registers[0x{x:X}] = delay timer",
    0x0A: "[LD] - registers[0x{x:X}] = input",
    0x15: "[LD] - delay timer = registers[0x{x:X}]",
    0x18: "[LD] - sound timer = registers[0x{x:X}]",
    0x1E: "[ADD] - I += registers[0x{x:X}]",
    0x29: "[LD] - I = location of sprite at registers[0x{x:X}]",
    0x33: "[LD] - Store BCD representation of registers[0x{x:X}] "
          "into I to I + 2",
    0x55: "[LD] - Store registers[0x0] to registers[0x{x:X}] "
          "into memory[I] to memory[I + 0x{x:X}]",
    0x65: "[LD] - Load registers[0x0] to registers[0x{x:X}] "
          "from memory[I] to memory[I + 0x{x:X}]",
}


def describe_op(opcode: int) -> str:
    """Human-readable description of one opcode.  No side effects."""
    ins = decode(opcode)
    x, y, n, nnn, kk = ins.x, ins.y, ins.n, ins.nnn, ins.kk
    f = ins.family >> 12

    if f == 0x0:
        if ins.opcode == 0x00E0:
            return "[CLS] - Clear display"
        if ins.opcode == 0x00EE:
            return "[RET] - Return from subroutine"
        if ins.opcode in HALT_OPCODES:
            return "[HALT] - Stop execution"
        return NOT_FOUND
    elif f == 0x1:
        return f"[JMP] - Jump to 0x{nnn:X}"
    elif f == 0x2:
        return f"[CALL] - Call subroutine at 0x{nnn:X}"
    elif f == 0x3:
        return f"[SE] - Skip next instruction if registers[0x{x:X}] == 0x{kk:X}"
    elif f == 0x4:
        return f"[SNE] - Skip next instruction if registers[0x{x:X}] != 0x{kk:X}"
    elif f == 0x5:
        if n != 0:
            return NOT_FOUND
        return (f"[SE] - Skip next instruction if "
                f"registers[0x{x:X}] == registers[0x{y:X}]")
    elif f == 0x6:
        return f"[LD] - Set registers[0x{x:X}] to 0x{kk:X}"
    elif f == 0x7:
        return f"[ADD] - registers[0x{x:X}] += 0x{kk:X}"
    elif f == 0x8:
        text = ALU_TEXT.get(n)
        return text.format(x=x, y=y) if text else NOT_FOUND
    elif f == 0x9:
        if n != 0:
            return NOT_FOUND
        return (f"[SNE] - Skip next instruction if "
                f"registers[0x{x:X}] != registers[0x{y:X}]")
    elif f == 0xA:
        return f"[LD] - set I to 0x{nnn:X}"
    elif f == 0xB:
        return f"[JMP] - Jump to 0x{nnn:X} + registers[0x0]"
    elif f == 0xC:
        return f"[RND] - registers[0x{x:X}] = rnd & 0x{kk:X}"
    elif f == 0xD:
        return (f"[DRW] - draws sprite from I to I + {n - 1} starting at "
                f"(registers[0x{x:X}], registers[0x{y:X}])")
    elif f == 0xE:
        if kk == 0x9E:
            return (f"[SKP] - Skip next instruction if key pressed == "
                    f"registers[0x{x:X}]")
        if kk == 0xA1:
            return (f"[SKNP] - Skip next instruction if key pressed != "
                    f"registers[0x{x:X}]")
        return NOT_FOUND
    else:
        text = MISC_TEXT.get(kk)
        return text.format(x=x) if text else NOT_FOUND


def disassemble(mem: bytes | bytearray,
                start: int = PC_START) -> Iterator[tuple[int, int, str]]:
    """Yield (address, opcode, description) from `start` until a halt
    sentinel or the end of memory."""
    end = min(len(mem), MEM_SIZE)
    for addr in range(start, end - 1, 2):
        opcode = (mem[addr] << 8) | mem[addr + 1]
        if opcode in HALT_OPCODES:
            break
        yield addr, opcode, describe_op(opcode)


def format_line(addr: int, opcode: int, text: str) -> str:
    return f"0x{addr:04X}: 0x{opcode:04X} {text}"


# ---------------------------------------------------------------------------
#  Monitor
# ---------------------------------------------------------------------------

class Chip8CLI(cmd.Cmd):
    """Interactive monitor for the CHIP-8 interpreter."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║          CHIP-8 Monitor                                  ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "CHIP8> "

    def __init__(self, system: Chip8System, stdout=None):
        super().__init__(stdout=stdout)
        self.sys = system
        self.breakpoints: set[int] = set()
        # A monitor step must never hang on LD Vx, K
        self.sys.cpu.key_timeout = (system.config.key_timeout
                                    or MONITOR_KEY_TIMEOUT)

    def _out(self, text: str = ""):
        print(text, file=self.stdout)

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (hex with optional 0x prefix, pc or i)."""
        s = s.strip().lower()
        if s == "pc":
            return self.sys.cpu.pc
        if s == "i":
            return self.sys.cpu.i
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load a ROM file at 0x200: load <file>"""
        parts = shlex.split(arg)
        if not parts:
            self._out("Usage: load <file>")
            return
        try:
            self.sys.reset()
            self.sys.load_rom_file(parts[0])
            self._out(f"Loaded {self.sys.rom_size} bytes from "
                      f"'{parts[0]}' at {PC_START:#x}")
        except (OSError, Chip8Error) as e:
            self._out(f"Error: {e}")

    def do_reset(self, arg):
        """Reset registers, timers and PC.  Memory (and the ROM) is kept."""
        rom = bytes(self.sys.cpu.mem[PC_START:PC_START + self.sys.rom_size])
        self.sys.reset()
        self.sys.load_rom(rom)
        self._out("System reset.")

    # -- Execution --

    def _step_one(self) -> bool:
        """Execute one instruction, reporting faults.  False to stop."""
        cpu = self.sys.cpu
        # Timers decay in real time for the rest of the monitor session
        self.sys.ticker.start()
        try:
            self.sys.step()
        except HaltError:
            self._out("CPU is halted.")
            return False
        except KeyWaitTimeout:
            self._out(f"Waiting for a key at {cpu.pc:#06x}; "
                      "use 'key <0-F>' then step again.")
            return False
        except Chip8Error as e:
            self._out(f"Fault: {e}  (PC now {cpu.pc:#06x})")
            return False
        return True

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        cpu = self.sys.cpu
        for _ in range(count):
            addr = cpu.pc
            try:
                opcode = cpu.mem_read16(addr)
            except Chip8Error as e:
                self._out(f"Fault: {e}")
                break
            if not self._step_one():
                break
            self._out("  " + format_line(addr, opcode, describe_op(opcode)))
            if cpu.halted:
                self._out("CPU halted.")
                break

    def do_run(self, arg):
        """Run until halt/fault/breakpoint: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else 1_000_000
        cpu = self.sys.cpu
        total = 0
        while total < max_steps:
            if cpu.halted:
                self._out(f"CPU halted after {total} steps.")
                return
            if total and cpu.pc in self.breakpoints:
                self._out(f"Breakpoint hit at {cpu.pc:#06x}")
                return
            if not self._step_one():
                return
            total += 1
        self._out(f"Stopped after {total} steps.")

    do_c = do_run

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                self._out("Breakpoints:")
                for a in sorted(self.breakpoints):
                    self._out(f"  {a:#06x}")
            else:
                self._out("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._out(f"Breakpoint set at {addr:#06x}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            self._out("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        self._out(f"Breakpoint at {addr:#06x} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show registers, timers and stack depth."""
        self._out(self.sys.cpu.dump_regs())
        self._out(f"  Cycles: {self.sys.cpu.cycle_count}")

    def do_stack(self, arg):
        """Show the return stack, top first."""
        st = self.sys.cpu.stack
        if not len(st):
            self._out("  (empty)")
            return
        for depth in range(len(st) - 1, -1, -1):
            self._out(f"  [{depth:2d}] {st.slots[depth]:#06x}")

    def do_setreg(self, arg):
        """Set register: setreg <V0-VF|i|pc> <value>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._out("Usage: setreg <reg> <value>")
            return
        reg_s = parts[0].lower()
        val = self._parse_int(parts[1])
        cpu = self.sys.cpu
        if reg_s == "pc":
            cpu.pc = val & 0xFFFF
        elif reg_s == "i":
            cpu.i = val & 0xFFFF
        elif reg_s.startswith("v") and len(reg_s) == 2:
            idx = int(reg_s[1], 16)
            if idx >= NUM_REGS:
                self._out("Register must be V0-VF.")
                return
            cpu.regs[idx] = val & 0xFF
        else:
            self._out("Unknown register.")
            return
        self._out(f"  {reg_s.upper()} = {val:#x}")

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [count]
        Count defaults to 64 bytes."""
        parts = shlex.split(arg)
        if not parts:
            self._out("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64
        end = min(addr + count, MEM_SIZE)
        mem = self.sys.cpu.mem
        for row_start in range(addr, end, 16):
            row = mem[row_start:min(row_start + 16, end)]
            hex_str = ' '.join(f"{b:02x}" for b in row)
            self._out(f"  {row_start:#06x}: {hex_str}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        cpu = self.sys.cpu
        addr = self._parse_addr(parts[0]) if parts else cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16
        for _ in range(count):
            if addr + 1 >= MEM_SIZE:
                break
            opcode = cpu.mem_read16(addr)
            marker = ">>>" if addr == cpu.pc else "   "
            self._out(f"  {marker} "
                      + format_line(addr, opcode, describe_op(opcode)))
            addr += 2

    def do_screen(self, arg):
        """Print the display bitmap as text."""
        for line in self.sys.cpu.display:
            self._out("".join("█" if c else "." for c in line))

    def do_status(self, arg):
        """Show full system status."""
        self._out(self.sys.dump_state())

    # -- Input --

    def do_key(self, arg):
        """Press a keypad key: key <0-F> [up]"""
        parts = shlex.split(arg)
        if not parts:
            self._out(f"  Down: {self.sys.keypad.keys_down()}")
            return
        key = int(parts[0], 16) & 0xF
        if len(parts) > 1 and parts[1].lower() == "up":
            self.sys.keypad.release(key)
            self._out(f"  Key {key:X} released")
        else:
            self.sys.keypad.press(key)
            self._out(f"  Key {key:X} pressed")

    def do_quit(self, arg):
        """Exit the monitor."""
        self.sys.ticker.stop()
        self._out("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        self._out()
        return self.do_quit(arg)

    def default(self, line):
        """Handle unknown commands gracefully."""
        self._out(f"Unknown command: {line.split()[0]!r}. "
                  "Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def _print_trace(addr: int, opcode: int):
    print(format_line(addr, opcode, describe_op(opcode)), file=sys.stderr)


def _print_skipped(exc: Chip8Error):
    print(f"[chip8] skipped: {exc}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CHIP-8 interpreter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py roms/PONG\n"
               "  python cli.py roms/PONG --clockspeed 700 --scale 12\n"
               "  python cli.py roms/PONG --disassemble\n"
               "  python cli.py roms/PONG --monitor\n"
               "\n"
               "Keypad:  1 2 3 4 / q w e r / a s d f / z x c v\n"
    )
    parser.add_argument("rom", help="ROM image to run")
    parser.add_argument("--clockspeed", type=int, default=DEFAULT_CLOCK_HZ,
                        metavar="HZ",
                        help=f"Instructions per second (default: {DEFAULT_CLOCK_HZ})")
    parser.add_argument("--debug", action="store_true",
                        help="Trace every instruction to stderr and skip "
                             "unknown opcodes instead of stopping")
    parser.add_argument("--key-timeout", type=float, default=None,
                        metavar="S",
                        help="Give up on a key wait after S seconds")
    parser.add_argument("--scale", type=int, default=10, metavar="N",
                        help="Pixel scale factor for the window (default: 10)")
    parser.add_argument("--headless", action="store_true",
                        help="Run without a window")
    parser.add_argument("--no-hold", action="store_true",
                        help="Close the window as soon as the program halts")
    parser.add_argument("--disassemble", action="store_true",
                        help="Print a disassembly of the ROM and exit")
    parser.add_argument("--monitor", action="store_true",
                        help="Enter the interactive debug monitor")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = Chip8Config(clock_hz=args.clockspeed, debug=args.debug,
                             key_timeout=args.key_timeout, scale=args.scale,
                             hold=not args.no_hold)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    sys_emu = Chip8System(config)
    try:
        sys_emu.load_rom_file(args.rom)
    except (OSError, Chip8Error) as e:
        print(f"Error loading ROM '{args.rom}': {e}", file=sys.stderr)
        return 1

    # ---- Disassemble-only mode ----------------------------------------
    if args.disassemble:
        for addr, opcode, text in disassemble(sys_emu.cpu.mem):
            print(format_line(addr, opcode, text))
        return 0

    if config.debug:
        sys_emu.on_trace = _print_trace
        sys_emu.on_error = _print_skipped

    # ---- Monitor mode ---------------------------------------------------
    if args.monitor:
        cli = Chip8CLI(sys_emu)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        finally:
            sys_emu.ticker.stop()
        return 0

    # ---- Run mode -------------------------------------------------------
    display = None
    if not args.headless:
        try:
            import pygame  # noqa: F401  (the window thread imports it lazily)
            from display import PygameDisplay
            display = PygameDisplay(sys_emu, scale=config.scale,
                                    hold=config.hold)
            display.start()
        except ImportError as e:
            print(f"[display] pygame not available: {e}", file=sys.stderr)
            print("[display] Install with: pip install pygame",
                  file=sys.stderr)
            display = None
    if display is None:
        from display import HeadlessDisplay
        display = HeadlessDisplay(sys_emu)
        display.start()

    status = 0
    try:
        sys_emu.run()
    except KeyboardInterrupt:
        sys_emu.stop()
        print("\nInterrupted.")
    except Chip8Error as e:
        print(f"[chip8] error at PC={sys_emu.cpu.pc:#06x}: {e}",
              file=sys.stderr)
        status = 1

    if display.running and config.hold and not sys_emu.stop_requested:
        try:
            display.wait_closed()
        except KeyboardInterrupt:
            pass
    display.stop()
    return status


if __name__ == "__main__":
    sys.exit(main())
