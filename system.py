"""
CHIP-8 System Emulator
=======================
Wires together:
  - the interpreter core (chip8.py): Memory, CallStack, Chip8
  - the devices (devices.py): Timers, Keypad, RandomSource
  - a Display backend (display.py)

and owns the two clocks of the machine: the instruction clock (one
cycle() per instruction, optionally paced to ``cpu_hz``) and the 60 Hz
timer clock, which follows elapsed wall-clock time read from ``clock``.
"""

from __future__ import annotations
import time
from pathlib import Path
from typing import Callable, Optional

from chip8 import Chip8, Memory, CallStack, Opcode, PROGRAM_START
from devices import Timers, Keypad, RandomSource
from display import Display, FramebufferDisplay


class Chip8System:
    """Machine facade: one CPU, its memory and stack, timers and devices."""

    def __init__(self, display: Optional[Display] = None,
                 keypad: Optional[Keypad] = None,
                 rng: Optional[RandomSource] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 cpu_hz: Optional[float] = None):
        self.display = display if display is not None else FramebufferDisplay()
        self.keypad = keypad if keypad is not None else Keypad()
        self.rng = rng if rng is not None else RandomSource()
        self.timers = Timers()
        self.memory = Memory()
        self.stack = CallStack()
        self.cpu = Chip8(self.memory, self.stack, self.timers,
                         self.display, self.keypad, self.rng)

        self.clock = clock
        self.sleep = sleep
        self.cpu_hz = cpu_hz
        self._last_time: Optional[float] = None
        self.frames: int = 0

        # Called with (pc, opcode) before each instruction executes
        self.trace: Optional[Callable[[int, Opcode], None]] = None

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_rom(self, data: bytes | bytearray):
        """Load a program image at 0x200.  Raises RomTooLarge on overflow."""
        self.memory.load_rom(data)

    def load_rom_file(self, path: str | Path) -> int:
        data = Path(path).read_bytes()
        self.load_rom(data)
        return len(data)

    def reset(self):
        """Power-cycle: clear memory, registers, stack, timers and screen."""
        self.memory.reset()
        self.stack.reset()
        self.timers.reset()
        self.keypad.reset()
        self.cpu.reset()
        self.display.clear()
        self._last_time = None
        self.frames = 0

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def _advance_timers(self):
        now = self.clock()
        if self._last_time is None:
            self._last_time = now
            return
        elapsed = now - self._last_time
        self._last_time = now
        if self.timers.tick(elapsed):
            # A 60 Hz boundary is also a frame boundary
            self.frames += 1
            self.display.present()

    def cycle(self) -> Opcode:
        """Execute exactly one instruction, then catch the timers up."""
        if self.trace is not None:
            self.trace(self.cpu.pc, self.cpu.fetch())
        op = self.cpu.step()
        self._advance_timers()
        return op

    def run(self, max_steps: Optional[int] = None,
            timeout: Optional[float] = None) -> int:
        """Run while the display is open, up to max_steps / timeout seconds.

        Returns the number of instructions executed.
        """
        start = self.clock()
        period = 1.0 / self.cpu_hz if self.cpu_hz else 0.0
        next_due = start
        steps = 0
        while self.display.is_open():
            if max_steps is not None and steps >= max_steps:
                break
            now = self.clock()
            if timeout is not None and now - start >= timeout:
                break
            if period:
                if now < next_due:
                    self.sleep(next_due - now)
                next_due += period
            self.cycle()
            steps += 1
        return steps

    # -----------------------------------------------------------------
    #  Convenience
    # -----------------------------------------------------------------

    @property
    def pc(self) -> int:
        return self.cpu.pc

    @property
    def sound_active(self) -> bool:
        return self.timers.sound_active

    @property
    def waiting_for_key(self) -> bool:
        return self.cpu.waiting_key is not None

    def dump_state(self) -> str:
        """Full CPU + device state dump."""
        lines = ["=== Registers ===", self.cpu.dump_regs()]
        lines.append(f"  Steps: {self.cpu.step_count}  "
                     f"Unknown opcodes: {self.cpu.illegal_count}")
        lines.append("")
        lines.append("=== Stack ===")
        entries = self.stack.snapshot()
        if entries:
            lines.append("  " + " ".join(f"{a:#05x}" for a in entries))
        else:
            lines.append("  (empty)")
        lines.append("")
        lines.append("=== Devices ===")
        pressed = [f"{k:X}" for k in range(16) if self.keypad.state[k]]
        lines.append(f"  Keypad: pressed={''.join(pressed) or '-'} "
                     f"queued={len(self.keypad.events)}")
        lines.append(f"  Timers: delay={self.timers.delay} "
                     f"sound={self.timers.sound} frames={self.frames}")
        lines.append(f"  Display: {type(self.display).__name__}")
        lines.append("")
        lines.append("=== Program ===")
        lines.append(self.memory.hexdump(PROGRAM_START, 32))
        return "\n".join(lines)
