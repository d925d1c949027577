"""
CLI, disassembler and monitor tests.

    python -m pytest test_cli.py
"""

import io
import unittest
from contextlib import redirect_stdout, redirect_stderr

import pytest

from cli import Chip8Monitor, disasm_one, disassemble, main
from chip8 import decode
from devices import RandomSource
from system import Chip8System


def words(*ops: int) -> bytes:
    out = bytearray()
    for w in ops:
        out += bytes([(w >> 8) & 0xFF, w & 0xFF])
    return bytes(out)


def make_monitor(program: bytes):
    system = Chip8System(rng=RandomSource(0))
    system.load_rom(program)
    out = io.StringIO()
    mon = Chip8Monitor(system, stdout=out)
    return mon, system, out


# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

class TestDisassembler(unittest.TestCase):
    def test_mnemonics(self):
        cases = {
            0x00E0: "CLS",
            0x00EE: "RET",
            0x1234: "JP 0x234",
            0x2ABC: "CALL 0xabc",
            0x3A42: "SE VA, 0x42",
            0x5120: "SE V1, V2",
            0x8124: "ADD V1, V2",
            0x8106: "SHR V1",
            0xA123: "LD I, 0x123",
            0xB200: "JP V0, 0x200",
            0xD125: "DRW V1, V2, 5",
            0xE19E: "SKP V1",
            0xE2A1: "SKNP V2",
            0xF30A: "LD V3, K",
            0xF433: "LD B, V4",
            0xF565: "LD V5, [I]",
        }
        for word, text in cases.items():
            self.assertEqual(disasm_one(word), text, hex(word))

    def test_accepts_opcode(self):
        self.assertEqual(disasm_one(decode(0x6A42)), "LD VA, 0x42")

    def test_unknown_as_data(self):
        self.assertEqual(disasm_one(0x0123), "DW 0x0123")
        self.assertEqual(disasm_one(0x8128), "DW 0x8128")
        self.assertEqual(disasm_one(0xF1FF), "DW 0xf1ff")

    def test_listing(self):
        lines = disassemble(words(0x00E0, 0x1200) + b"\x7F")
        self.assertEqual(lines[0], "200: 00E0  CLS")
        self.assertEqual(lines[1], "202: 1200  JP 0x200")
        self.assertEqual(lines[2], "204: 7F    DB 0x7f")


# ---------------------------------------------------------------------------
#  Monitor
# ---------------------------------------------------------------------------

class TestMonitor(unittest.TestCase):
    def test_step_and_regs(self):
        mon, system, out = make_monitor(words(0x6A42, 0x6B01))
        mon.onecmd("step 2")
        self.assertEqual(system.pc, 0x204)
        self.assertIn("200: 6A42  LD VA, 0x42", out.getvalue())
        mon.onecmd("regs")
        self.assertIn("VB=01", out.getvalue())

    def test_breakpoint(self):
        # 200: ADD V0,1 / 202: ADD V1,1 / 204: JP 200
        mon, system, out = make_monitor(words(0x7001, 0x7101, 0x1200))
        mon.onecmd("break 204")
        mon.onecmd("run")
        self.assertEqual(system.pc, 0x204)
        self.assertIn("Breakpoint hit at 204", out.getvalue())
        # Running again moves off the breakpoint first
        mon.onecmd("run 10")
        self.assertEqual(system.pc, 0x204)
        self.assertEqual(system.cpu.v[0], 2)
        mon.onecmd("delete 204")
        self.assertEqual(mon.breakpoints, set())

    def test_run_stops_on_key_wait(self):
        mon, system, out = make_monitor(words(0xF20A))
        mon.onecmd("run")
        self.assertIn("Waiting for key", out.getvalue())
        mon.onecmd("key 5")
        mon.onecmd("step")
        self.assertEqual(system.cpu.v[2], 5)
        mon.onecmd("key 5 up")
        self.assertFalse(system.keypad.is_pressed(5))

    def test_fault_reported(self):
        mon, system, out = make_monitor(words(0x00EE))
        mon.onecmd("step")
        self.assertIn("Fault: Stack underflow", out.getvalue())

    def test_mem_and_dis(self):
        mon, system, out = make_monitor(words(0x00E0, 0x1200))
        mon.onecmd("mem 200 16")
        self.assertIn("200  00 E0 12 00", out.getvalue())
        mon.onecmd("dis pc 2")
        self.assertIn("> 200: 00E0  CLS", out.getvalue())
        self.assertIn("  202: 1200  JP 0x200", out.getvalue())

    def test_out_of_range_address(self):
        mon, system, out = make_monitor(words(0x00E0))
        mon.onecmd("dis -2 2")
        mon.onecmd("mem -5")
        mon.onecmd("mem 1000")
        text = out.getvalue()
        self.assertEqual(text.count("Error:"), 3)
        self.assertIn("outside 000-FFF", text)
        # session still usable
        self.assertFalse(mon.onecmd("step"))
        self.assertEqual(system.pc, 0x202)

    def test_invalid_key_reported(self):
        mon, system, out = make_monitor(b"")
        mon.onecmd("key 1F")
        self.assertIn("Error: Invalid key", out.getvalue())
        self.assertFalse(system.keypad.has_events)

    def test_bad_argument(self):
        mon, system, out = make_monitor(b"")
        mon.onecmd("mem zz")
        self.assertIn("Error:", out.getvalue())

    def test_quit(self):
        mon, _, _ = make_monitor(b"")
        self.assertTrue(mon.onecmd("quit"))


# ---------------------------------------------------------------------------
#  main()
# ---------------------------------------------------------------------------

class TestMain(unittest.TestCase):
    @pytest.fixture(autouse=True)
    def _rom_file(self, rom_file):
        self.rom_file = rom_file

    def test_disasm(self):
        path = self.rom_file(words(0x00E0, 0x1202))
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(main([path, "--disasm"]), 0)
        self.assertIn("200: 00E0  CLS", out.getvalue())

    def test_headless_run(self):
        # Draw glyph 0 at (0,0) then spin
        path = self.rom_file(words(0x6000, 0xF029, 0xD005, 0x1206))
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            status = main([path, "--headless", "--hz", "0",
                           "--max-steps", "50", "--seed", "3"])
        self.assertEqual(status, 0)
        self.assertIn("Executed 50 instructions", err.getvalue())

    def test_trace(self):
        path = self.rom_file(words(0x6A42, 0x1202))
        err = io.StringIO()
        with redirect_stdout(io.StringIO()), redirect_stderr(err):
            main([path, "--headless", "--hz", "0", "--max-steps", "2",
                  "--trace"])
        self.assertIn("200: 6A42  LD VA, 0x42", err.getvalue())

    def test_key_wait_polls_not_counted(self):
        path = self.rom_file(words(0xF00A))
        err = io.StringIO()
        with redirect_stdout(io.StringIO()), redirect_stderr(err):
            status = main([path, "--headless", "--hz", "0",
                           "--max-steps", "20"])
        self.assertEqual(status, 0)
        self.assertIn("Executed 0 instructions", err.getvalue())

    def test_missing_rom(self):
        err = io.StringIO()
        with redirect_stderr(err):
            self.assertEqual(main(["/nonexistent/rom.ch8", "--disasm"]), 1)
        self.assertIn("Could not read ROM", err.getvalue())

    def test_rom_too_large(self):
        path = self.rom_file(bytes(4000))
        err = io.StringIO()
        with redirect_stdout(io.StringIO()), redirect_stderr(err):
            self.assertEqual(main([path, "--headless"]), 1)
        self.assertIn("ROM is 4000 bytes", err.getvalue())

    def test_fatal_error_exit_status(self):
        path = self.rom_file(words(0x00EE))
        err = io.StringIO()
        with redirect_stdout(io.StringIO()), redirect_stderr(err):
            self.assertEqual(main([path, "--headless", "--hz", "0"]), 1)
        self.assertIn("Fatal: Stack underflow", err.getvalue())
        self.assertIn("=== Registers ===", err.getvalue())


if __name__ == "__main__":
    unittest.main()
