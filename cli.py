#!/usr/bin/env python3
"""
CHIP-8 Emulator / Monitor CLI
==============================
Command-line front end for the CHIP-8 system emulator.

Provides:
  - ROM loading and execution in a pygame window or the terminal
  - Instruction tracing through the disassembler
  - A ROM listing mode
  - An interactive debug monitor (step, breakpoints, register and
    memory inspection)

Usage:
  python cli.py ROM [--hz N] [--scale N] [--headless] [--seed N]
                    [--max-steps N] [--timeout S] [--trace]
                    [--monitor] [--disasm]
"""

from __future__ import annotations
import argparse
import cmd
import shlex
import sys
from typing import Optional

from chip8 import Chip8Error, Opcode, Nibble, decode, PROGRAM_START, MEM_SIZE
from devices import Keypad, RandomSource
from display import FramebufferDisplay, TerminalDisplay, PygameDisplay
from system import Chip8System

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

ALU_NAMES = {
    0x0: "LD", 0x1: "OR", 0x2: "AND", 0x3: "XOR", 0x4: "ADD",
    0x5: "SUB", 0x6: "SHR", 0x7: "SUBN", 0xE: "SHL",
}

# Fx?? forms: sub-opcode -> format string with {x}
MISC_FORMS = {
    0x07: "LD V{x}, DT",
    0x0A: "LD V{x}, K",
    0x15: "LD DT, V{x}",
    0x18: "LD ST, V{x}",
    0x1E: "ADD I, V{x}",
    0x29: "LD F, V{x}",
    0x33: "LD B, V{x}",
    0x55: "LD [I], V{x}",
    0x65: "LD V{x}, [I]",
}


def disasm_one(op: Opcode | int) -> str:
    """Disassemble one instruction word to its conventional mnemonic."""
    if not isinstance(op, Opcode):
        op = decode(op)
    f = op[Nibble.A]
    x, y, n, nn, nnn = op.x, op.y, op.n, op.nn, op.nnn

    if op.word == 0x00E0:
        return "CLS"
    if op.word == 0x00EE:
        return "RET"
    if f == 0x1:
        return f"JP {nnn:#05x}"
    if f == 0x2:
        return f"CALL {nnn:#05x}"
    if f == 0x3:
        return f"SE V{x:X}, {nn:#04x}"
    if f == 0x4:
        return f"SNE V{x:X}, {nn:#04x}"
    if f == 0x5 and n == 0:
        return f"SE V{x:X}, V{y:X}"
    if f == 0x6:
        return f"LD V{x:X}, {nn:#04x}"
    if f == 0x7:
        return f"ADD V{x:X}, {nn:#04x}"
    if f == 0x8 and n in ALU_NAMES:
        name = ALU_NAMES[n]
        if n in (0x6, 0xE):
            return f"{name} V{x:X}"
        return f"{name} V{x:X}, V{y:X}"
    if f == 0x9 and n == 0:
        return f"SNE V{x:X}, V{y:X}"
    if f == 0xA:
        return f"LD I, {nnn:#05x}"
    if f == 0xB:
        return f"JP V0, {nnn:#05x}"
    if f == 0xC:
        return f"RND V{x:X}, {nn:#04x}"
    if f == 0xD:
        return f"DRW V{x:X}, V{y:X}, {n}"
    if f == 0xE and nn == 0x9E:
        return f"SKP V{x:X}"
    if f == 0xE and nn == 0xA1:
        return f"SKNP V{x:X}"
    if f == 0xF and nn in MISC_FORMS:
        return MISC_FORMS[nn].format(x=f"{x:X}")
    return f"DW {op.word:#06x}"


def disassemble(data: bytes | bytearray, base: int = PROGRAM_START) -> list[str]:
    """Listing of a flat ROM image, one line per word."""
    lines = []
    for off in range(0, len(data) - 1, 2):
        word = (data[off] << 8) | data[off + 1]
        lines.append(f"{base + off:03X}: {word:04X}  {disasm_one(word)}")
    if len(data) % 2:
        lines.append(f"{base + len(data) - 1:03X}: {data[-1]:02X}    DB {data[-1]:#04x}")
    return lines


def trace_printer(pc: int, op: Opcode):
    print(f"  {pc:03X}: {op.word:04X}  {disasm_one(op)}", file=sys.stderr)

# ---------------------------------------------------------------------------
#  Debug monitor
# ---------------------------------------------------------------------------

class Chip8Monitor(cmd.Cmd):
    """Interactive monitor for the CHIP-8 system."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║              CHIP-8 Monitor                              ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "C8> "

    def __init__(self, system: Chip8System, stdout=None):
        super().__init__(stdout=stdout)
        self.sys = system
        self.breakpoints: set[int] = set()

    def _out(self, text: str = ""):
        self.stdout.write(text + "\n")

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (hex with optional 0x prefix, 'pc' or 'i')."""
        s = s.strip().lower()
        if s == "pc":
            return self.sys.cpu.pc
        if s == "i":
            return self.sys.cpu.i
        addr = int(s, 16)
        if not 0 <= addr < MEM_SIZE:
            raise ValueError(f"address {s} outside 000-{MEM_SIZE - 1:03X}")
        return addr

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def _step_one(self) -> bool:
        """Execute one instruction.  Returns False on a fatal error."""
        pc = self.sys.cpu.pc
        try:
            op = self.sys.cycle()
        except Chip8Error as e:
            self._out(f"Fault: {e}")
            return False
        self._out(f"  {pc:03X}: {op.word:04X}  {disasm_one(op)}")
        return True

    # ================================================================
    #  Commands
    # ================================================================

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            if not self._step_one():
                break

    def do_run(self, arg):
        """Run until breakpoint, fault, or key wait: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else 100_000
        for total in range(max_steps):
            pc = self.sys.cpu.pc
            if total and pc in self.breakpoints:
                self._out(f"Breakpoint hit at {pc:03X}")
                return
            try:
                self.sys.cycle()
            except Chip8Error as e:
                self._out(f"Fault after {total} steps: {e}")
                return
            if self.sys.waiting_for_key:
                self._out(f"Waiting for key at {self.sys.cpu.pc:03X} "
                          "(use 'key <k>')")
                return
        self._out(f"Stopped after {max_steps} steps.")

    def do_regs(self, arg):
        """Show registers and timers."""
        self._out(self.sys.cpu.dump_regs())

    def do_state(self, arg):
        """Full system state dump."""
        self._out(self.sys.dump_state())

    def do_mem(self, arg):
        """Hex dump memory: mem <addr> [length]"""
        parts = shlex.split(arg)
        if not parts:
            self._out("Usage: mem <addr> [length]")
            return
        addr = self._parse_addr(parts[0])
        length = self._parse_int(parts[1]) if len(parts) > 1 else 64
        self._out(self.sys.memory.hexdump(addr, length))

    def do_dis(self, arg):
        """Disassemble: dis [addr] [count]"""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.sys.cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 8
        for k in range(count):
            a = addr + 2 * k
            if a + 1 >= MEM_SIZE:
                break
            word = self.sys.memory.read_word(a)
            mark = ">" if a == self.sys.cpu.pc else " "
            self._out(f"{mark} {a:03X}: {word:04X}  {disasm_one(word)}")

    def do_break(self, arg):
        """Set breakpoint: break <addr>   (no arg lists breakpoints)"""
        if not arg.strip():
            if not self.breakpoints:
                self._out("No breakpoints.")
            for bp in sorted(self.breakpoints):
                self._out(f"  {bp:03X}")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._out(f"Breakpoint set at {addr:03X}")

    def do_delete(self, arg):
        """Remove breakpoint: delete <addr>"""
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)

    def do_key(self, arg):
        """Press or release a keypad key: key <hex> [up]"""
        parts = shlex.split(arg)
        if not parts:
            self._out("Usage: key <0-F> [up]")
            return
        key = int(parts[0], 16)
        if len(parts) > 1 and parts[1].lower() == "up":
            self.sys.keypad.release(key)
        else:
            self.sys.keypad.press(key)

    def do_screen(self, arg):
        """Print the framebuffer as text."""
        render = getattr(self.sys.display, "render_text", None)
        if render is None:
            self._out("Display has no text rendering.")
            return
        self._out(render())

    def do_reset(self, arg):
        """Reset registers, timers and stack (memory keeps the ROM)."""
        self.sys.cpu.reset()
        self.sys.stack.reset()
        self.sys.timers.reset()
        self._out("CPU reset.")

    def do_quit(self, arg):
        """Exit the monitor."""
        return True

    do_exit = do_quit
    do_EOF = do_quit

    def emptyline(self):
        pass

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except (ValueError, Chip8Error) as e:
            self._out(f"Error: {e}")
            return False

# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CHIP-8 Emulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py roms/PONG\n"
               "  python cli.py roms/PONG --hz 1000 --scale 12\n"
               "  python cli.py roms/IBM --headless --max-steps 200\n"
               "  python cli.py roms/IBM --disasm\n"
               "  python cli.py roms/IBM --monitor\n"
    )
    parser.add_argument("rom", help="ROM image to load at 0x200")
    parser.add_argument("--hz", type=float, default=700.0,
                        help="Instruction rate in Hz (default: 700, 0 = unthrottled)")
    parser.add_argument("--scale", type=int, default=10, metavar="N",
                        help="Pixel scale factor for the window (default: 10)")
    parser.add_argument("--headless", action="store_true",
                        help="Render to the terminal instead of a pygame window")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the RND instruction")
    parser.add_argument("--max-steps", type=int, default=None,
                        help="Stop after N instructions")
    parser.add_argument("--timeout", type=float, default=None, metavar="S",
                        help="Stop after S seconds")
    parser.add_argument("--trace", action="store_true",
                        help="Print each instruction to stderr as it executes")
    parser.add_argument("--monitor", action="store_true",
                        help="Open the debug monitor instead of running")
    parser.add_argument("--disasm", action="store_true",
                        help="Print a listing of the ROM and exit")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        with open(args.rom, "rb") as f:
            data = f.read()
    except OSError as e:
        print(f"Could not read ROM '{args.rom}': {e}", file=sys.stderr)
        return 1

    # ---- Listing-only mode --------------------------------------------
    if args.disasm:
        for line in disassemble(data):
            print(line)
        return 0

    keypad = Keypad()
    if args.monitor:
        display = FramebufferDisplay()
    elif args.headless:
        display = TerminalDisplay()
    else:
        display = PygameDisplay(keypad, scale=args.scale)

    system = Chip8System(display=display, keypad=keypad,
                         rng=RandomSource(args.seed),
                         cpu_hz=args.hz or None)
    try:
        system.load_rom(data)
    except Chip8Error as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Loaded {len(data)} bytes from '{args.rom}' at {PROGRAM_START:#x}",
          file=sys.stderr)

    if isinstance(display, PygameDisplay):
        try:
            display.open()
        except ImportError as e:
            print(f"[display] pygame not available: {e}", file=sys.stderr)
            print("[display] Install with: pip install pygame, or use --headless",
                  file=sys.stderr)
            return 1

    if args.trace:
        system.trace = trace_printer

    # ---- Monitor mode ---------------------------------------------------
    if args.monitor:
        monitor = Chip8Monitor(system)
        try:
            monitor.cmdloop()
        except KeyboardInterrupt:
            print()
        return 0

    status = 0
    try:
        system.run(max_steps=args.max_steps, timeout=args.timeout)
    except KeyboardInterrupt:
        print(file=sys.stderr)
    except Chip8Error as e:
        print(f"\nFatal: {e}", file=sys.stderr)
        print(system.dump_state(), file=sys.stderr)
        status = 1
    finally:
        close = getattr(display, "close", None)
        if close is not None:
            close()
    print(f"Executed {system.cpu.step_count} instructions.", file=sys.stderr)
    return status


if __name__ == "__main__":
    sys.exit(main())
