"""
CHIP-8 Interpreter Core
========================
A direct interpreter for the CHIP-8 virtual machine: 4 KiB of memory,
sixteen 8-bit V registers (VF doubles as the carry / borrow / collision
flag), a 16-bit index register I, a 16-bit program counter and a
16-deep return stack.

Every instruction is a big-endian 16-bit word.  The fetch/decode/execute
loop reads two bytes at PC, splits them into nibbles, switches on the
top nibble and then on the sub-nibbles the family needs.

The core never touches a window, a keyboard or a clock directly.  It
talks to three injected capabilities:

    display   draw(x, y, height, sprite) -> collided, clear()
    keypad    is_pressed(key), poll_key_press(), clear_events()
    rng       next_byte()

and to a Timers object holding the delay and sound registers.  See
devices.py and display.py for the stock implementations, and system.py
for the facade that wires them together.
"""

from __future__ import annotations
import sys
from enum import Enum
from typing import Callable, Optional

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE      = 0x1000   # 4 KiB address space
PROGRAM_START = 0x200    # ROMs load here; 0x000-0x1FF is reserved
MAX_ROM_SIZE  = MEM_SIZE - PROGRAM_START
STACK_DEPTH   = 16
NUM_REGS      = 16
VF            = 0xF      # flag register index

FONT_BASE     = 0x000
GLYPH_SIZE    = 5        # bytes per hex-digit glyph

# Hex-digit glyphs 0-F, 4 pixels wide, 5 rows each (high nibble only).
FONT_SET = bytes([
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
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for fatal interpreter errors.

    The dispatcher stamps ``pc`` and ``opcode`` on any Chip8Error that
    escapes an instruction, so the message always says where it died.
    """

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message
        self.pc: Optional[int] = None
        self.opcode: Optional[int] = None

    def locate(self, pc: int, opcode: Optional[int]):
        if self.pc is None:
            self.pc = pc
            self.opcode = opcode

    def __str__(self) -> str:
        if self.pc is None:
            return self.message
        if self.opcode is None:
            return f"{self.message} (fetch @ {self.pc:#05x})"
        return f"{self.message} (opcode {self.opcode:#06x} @ {self.pc:#05x})"


class MemoryFault(Chip8Error):
    def __init__(self, addr: int, size: int = 1):
        self.addr = addr
        self.size = size
        if size == 1:
            msg = f"Memory fault @ {addr:#x}"
        else:
            msg = f"Memory fault @ {addr:#x}+{size}"
        super().__init__(msg)


class StackOverflow(Chip8Error):
    pass


class StackUnderflow(Chip8Error):
    pass


class RomTooLarge(Chip8Error):
    pass

# ---------------------------------------------------------------------------
#  Memory
# ---------------------------------------------------------------------------

class Memory:
    """4 KiB byte-addressable memory with the font set at 0x000."""

    def __init__(self):
        self.mem = bytearray(MEM_SIZE)
        self.reset()

    def reset(self):
        self.mem[:] = bytes(MEM_SIZE)
        self.mem[FONT_BASE:FONT_BASE + len(FONT_SET)] = FONT_SET

    def _check_addr(self, addr: int, size: int = 1):
        if addr < 0 or addr + size > MEM_SIZE:
            raise MemoryFault(addr, size)

    def read_byte(self, addr: int) -> int:
        self._check_addr(addr)
        return self.mem[addr]

    def write_byte(self, addr: int, val: int):
        self._check_addr(addr)
        self.mem[addr] = val & 0xFF

    def read_slice(self, addr: int, n: int) -> bytes:
        """Copy of ``n`` bytes starting at ``addr``."""
        self._check_addr(addr, n)
        return bytes(self.mem[addr:addr + n])

    def write_slice(self, addr: int, data: bytes | bytearray):
        """Write ``data`` at ``addr``.  Nothing is written if any byte faults."""
        self._check_addr(addr, len(data))
        self.mem[addr:addr + len(data)] = data

    def read_word(self, addr: int) -> int:
        """Big-endian 16-bit read (instruction fetch)."""
        self._check_addr(addr, 2)
        return (self.mem[addr] << 8) | self.mem[addr + 1]

    def load_rom(self, data: bytes | bytearray):
        """Copy a program image to 0x200.  Nothing is written on overflow."""
        if len(data) > MAX_ROM_SIZE:
            raise RomTooLarge(
                f"ROM is {len(data)} bytes, limit is {MAX_ROM_SIZE}")
        self.mem[PROGRAM_START:PROGRAM_START + len(data)] = data

    def hexdump(self, start: int, length: int = 64) -> str:
        lines = []
        for offset in range(0, length, 16):
            addr = start + offset
            if addr >= MEM_SIZE:
                break
            row = self.mem[addr:min(addr + 16, MEM_SIZE, start + length)]
            hex_bytes = ' '.join(f'{b:02X}' for b in row)
            text = ''.join(chr(b) if 0x20 <= b < 0x7F else '.' for b in row)
            lines.append(f'{addr:03X}  {hex_bytes:<47}  {text}')
        return '\n'.join(lines)

# ---------------------------------------------------------------------------
#  Call stack
# ---------------------------------------------------------------------------

class CallStack:
    """Fixed-depth LIFO of return addresses."""

    def __init__(self, depth: int = STACK_DEPTH):
        self.depth = depth
        self.entries: list[int] = [0] * depth
        self.sp: int = 0

    def push(self, addr: int):
        if self.sp >= self.depth:
            raise StackOverflow(f"Stack overflow pushing {addr:#05x}")
        self.entries[self.sp] = addr & 0xFFFF
        self.sp += 1

    def pop(self) -> int:
        if self.sp == 0:
            raise StackUnderflow("Stack underflow")
        self.sp -= 1
        return self.entries[self.sp]

    def reset(self):
        self.entries = [0] * self.depth
        self.sp = 0

    def snapshot(self) -> list[int]:
        return self.entries[:self.sp]

    def __len__(self) -> int:
        return self.sp

# ---------------------------------------------------------------------------
#  Opcode decoding
# ---------------------------------------------------------------------------

class Nibble(Enum):
    """Nibble positions (A = most significant) and contiguous groupings."""
    A = 'A'
    B = 'B'
    C = 'C'
    D = 'D'
    AB = 'AB'
    BC = 'BC'
    CD = 'CD'
    ABC = 'ABC'
    BCD = 'BCD'
    ABCD = 'ABCD'


_SHIFT = {'A': 12, 'B': 8, 'C': 4, 'D': 0}


class Opcode:
    """An immutable decoded instruction word.

    ``op[Nibble.B]`` is the raw 4-bit value of one nibble.
    ``op.get(Nibble.AB)`` keeps the grouping in place, so
    ``op.get(AB) | op.get(CD) == op.word``.  The conventional CHIP-8
    operand fields (x, y, n, nn, nnn) are right-aligned.
    """

    __slots__ = ('word', 'nibbles')

    def __init__(self, word: int):
        word &= 0xFFFF
        object.__setattr__(self, 'word', word)
        object.__setattr__(self, 'nibbles', (
            (word >> 12) & 0xF,
            (word >> 8) & 0xF,
            (word >> 4) & 0xF,
            word & 0xF,
        ))

    def __setattr__(self, name, value):
        raise AttributeError("Opcode is immutable")

    def __getitem__(self, nib: Nibble) -> int:
        if nib not in (Nibble.A, Nibble.B, Nibble.C, Nibble.D):
            raise KeyError(f"{nib.name} is not a single nibble")
        return self.nibbles['ABCD'.index(nib.value)]

    def get(self, nib: Nibble) -> int:
        val = 0
        for name in nib.value:
            val |= self[Nibble(name)] << _SHIFT[name]
        return val

    # -- Named operand fields --

    @property
    def x(self) -> int:
        return self[Nibble.B]

    @property
    def y(self) -> int:
        return self[Nibble.C]

    @property
    def n(self) -> int:
        return self[Nibble.D]

    @property
    def nn(self) -> int:
        return self.get(Nibble.CD)

    @property
    def nnn(self) -> int:
        return self.get(Nibble.BCD)

    def __eq__(self, other) -> bool:
        if isinstance(other, Opcode):
            return self.word == other.word
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.word)

    def __repr__(self) -> str:
        return f"Opcode({self.word:#06x})"

    def __str__(self) -> str:
        return f"{self.word:#06x}"


def decode(word: int) -> Opcode:
    """Split a 16-bit instruction word into its fields."""
    return Opcode(word)

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 register file plus the instruction dispatcher."""

    def __init__(self, memory: Memory, stack: CallStack, timers,
                 display, keypad, rng):
        self.memory = memory
        self.stack = stack
        self.timers = timers
        self.display = display
        self.keypad = keypad
        self.rng = rng

        self.v: list[int] = [0] * NUM_REGS
        self.i: int = 0
        self.pc: int = PROGRAM_START

        # Set while Fx0A is blocked; holds the destination register
        self.waiting_key: Optional[int] = None

        self.step_count: int = 0
        self.illegal_count: int = 0
        # Called with (pc, opcode) for unknown instructions
        self.on_illegal: Optional[Callable[[int, Opcode], None]] = None

    def reset(self):
        self.v = [0] * NUM_REGS
        self.i = 0
        self.pc = PROGRAM_START
        self.waiting_key = None
        self.step_count = 0
        self.illegal_count = 0

    # -- Fetch --

    def fetch(self) -> Opcode:
        return decode(self.memory.read_word(self.pc))

    # =====================================================================
    #  STEP -- the core decode/execute loop
    # =====================================================================

    def step(self) -> Opcode:
        """Execute one instruction.  Returns the decoded opcode."""
        pc = self.pc
        op = None

        try:
            op = self.fetch()
            f = op[Nibble.A]
            if   f == 0x0: self._exec_sys(op)
            elif f == 0x1: self.pc = op.nnn
            elif f == 0x2: self._exec_call(op)
            elif f == 0x3: self._skip_if(self.v[op.x] == op.nn)
            elif f == 0x4: self._skip_if(self.v[op.x] != op.nn)
            elif f == 0x5: self._exec_se_reg(op)
            elif f == 0x6: self._exec_ld_imm(op)
            elif f == 0x7: self._exec_add_imm(op)
            elif f == 0x8: self._exec_alu(op)
            elif f == 0x9: self._exec_sne_reg(op)
            elif f == 0xA: self._exec_ld_i(op)
            elif f == 0xB: self.pc = (self.v[0] + op.nnn) & 0xFFFF
            elif f == 0xC: self._exec_rnd(op)
            elif f == 0xD: self._exec_draw(op)
            elif f == 0xE: self._exec_key(op)
            elif f == 0xF: self._exec_misc(op)
        except Chip8Error as e:
            e.locate(pc, op.word if op is not None else None)
            raise

        # A blocked LD Vx, K is a poll, not a completed instruction
        if self.waiting_key is None:
            self.step_count += 1
        return op

    # -- PC helpers --

    def _next(self):
        self.pc = (self.pc + 2) & 0xFFFF

    def _skip_if(self, cond: bool):
        self.pc = (self.pc + (4 if cond else 2)) & 0xFFFF

    def _illegal(self, op: Opcode):
        """Report an unknown instruction and move past it."""
        self.illegal_count += 1
        if self.on_illegal is not None:
            self.on_illegal(self.pc, op)
        else:
            print(f"[chip8] unknown opcode {op.word:#06x} @ {self.pc:#05x}",
                  file=sys.stderr)
        self._next()

    # =====================================================================
    #  Family executors
    # =====================================================================

    # -- 0x0: CLS / RET --
    def _exec_sys(self, op: Opcode):
        if op.word == 0x00E0:    # CLS
            self.display.clear()
            self._next()
        elif op.word == 0x00EE:  # RET
            self.pc = self.stack.pop()
        else:
            # 0nnn (SYS addr) targets the host CPU; not supported
            self._illegal(op)

    # -- 0x2: CALL addr --
    def _exec_call(self, op: Opcode):
        self.stack.push((self.pc + 2) & 0xFFFF)
        self.pc = op.nnn

    # -- 0x5: SE Vx, Vy --
    def _exec_se_reg(self, op: Opcode):
        if op.n != 0:
            self._illegal(op)
            return
        self._skip_if(self.v[op.x] == self.v[op.y])

    # -- 0x6: LD Vx, kk --
    def _exec_ld_imm(self, op: Opcode):
        self.v[op.x] = op.nn
        self._next()

    # -- 0x7: ADD Vx, kk (no flag) --
    def _exec_add_imm(self, op: Opcode):
        self.v[op.x] = (self.v[op.x] + op.nn) & 0xFF
        self._next()

    # -- 0x8: register/register ALU --
    def _exec_alu(self, op: Opcode):
        x, sub = op.x, op.n
        # Snapshot operands: x or y may be VF
        vx, vy = self.v[x], self.v[op.y]

        if sub == 0x0:    # LD
            self.v[x] = vy
        elif sub == 0x1:  # OR
            self.v[x] = vx | vy
        elif sub == 0x2:  # AND
            self.v[x] = vx & vy
        elif sub == 0x3:  # XOR
            self.v[x] = vx ^ vy
        elif sub == 0x4:  # ADD with carry
            total = vx + vy
            self.v[x] = total & 0xFF
            self.v[VF] = 1 if total > 0xFF else 0
        elif sub == 0x5:  # SUB, VF = NOT borrow
            self.v[x] = (vx - vy) & 0xFF
            self.v[VF] = 1 if vx >= vy else 0
        elif sub == 0x6:  # SHR
            self.v[x] = vx >> 1
            self.v[VF] = vx & 0x1
        elif sub == 0x7:  # SUBN
            self.v[x] = (vy - vx) & 0xFF
            self.v[VF] = 1 if vy >= vx else 0
        elif sub == 0xE:  # SHL
            self.v[x] = (vx << 1) & 0xFF
            self.v[VF] = (vx >> 7) & 0x1
        else:
            self._illegal(op)
            return
        self._next()

    # -- 0x9: SNE Vx, Vy --
    def _exec_sne_reg(self, op: Opcode):
        if op.n != 0:
            self._illegal(op)
            return
        self._skip_if(self.v[op.x] != self.v[op.y])

    # -- 0xA: LD I, addr --
    def _exec_ld_i(self, op: Opcode):
        self.i = op.nnn
        self._next()

    # -- 0xC: RND Vx, kk --
    def _exec_rnd(self, op: Opcode):
        self.v[op.x] = self.rng.next_byte() & op.nn
        self._next()

    # -- 0xD: DRW Vx, Vy, n --
    def _exec_draw(self, op: Opcode):
        height = op.n
        sprite = self.memory.read_slice(self.i, height)
        collided = self.display.draw(self.v[op.x], self.v[op.y],
                                     height, sprite)
        self.v[VF] = 1 if collided else 0
        self._next()

    # -- 0xE: SKP / SKNP --
    def _exec_key(self, op: Opcode):
        key = self.v[op.x] & 0xF
        if op.nn == 0x9E:
            self._skip_if(self.keypad.is_pressed(key))
        elif op.nn == 0xA1:
            self._skip_if(not self.keypad.is_pressed(key))
        else:
            self._illegal(op)

    # -- 0xF: timers, keys, I arithmetic, BCD, register dump/load --
    def _exec_misc(self, op: Opcode):
        x, sub = op.x, op.nn

        if sub == 0x07:    # LD Vx, DT
            self.v[x] = self.timers.delay
        elif sub == 0x0A:  # LD Vx, K
            if self.waiting_key is None:
                # Arm the wait: only presses from now on count
                self.keypad.clear_events()
                self.waiting_key = x
                return
            key = self.keypad.poll_key_press()
            if key is None:
                # Hold PC here; the next cycle re-polls
                return
            self.waiting_key = None
            self.v[x] = key & 0xF
        elif sub == 0x15:  # LD DT, Vx
            self.timers.delay = self.v[x]
        elif sub == 0x18:  # LD ST, Vx
            self.timers.sound = self.v[x]
        elif sub == 0x1E:  # ADD I, Vx
            self.i = (self.i + self.v[x]) & 0xFFFF
        elif sub == 0x29:  # LD F, Vx
            self.i = FONT_BASE + GLYPH_SIZE * (self.v[x] & 0xF)
        elif sub == 0x33:  # LD B, Vx
            val = self.v[x]
            self.memory.write_slice(
                self.i, bytes([val // 100, (val // 10) % 10, val % 10]))
        elif sub == 0x55:  # LD [I], Vx
            self.memory.write_slice(self.i, bytes(self.v[:x + 1]))
        elif sub == 0x65:  # LD Vx, [I]
            self.v[:x + 1] = self.memory.read_slice(self.i, x + 1)
        else:
            self._illegal(op)
            return
        self._next()

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X}={self.v[r]:02X}" for r in range(row, row + 4)))
        lines.append(f"  I = {self.i:#06x}  PC = {self.pc:#06x}  "
                     f"SP = {self.stack.sp}")
        lines.append(f"  DT = {self.timers.delay}  ST = {self.timers.sound}")
        if self.waiting_key is not None:
            lines.append(f"  waiting for key -> V{self.waiting_key:X}")
        return "\n".join(lines)
