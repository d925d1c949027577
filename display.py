"""
CHIP-8 Display Backends
========================
The interpreter sees a Display through four calls:

    draw(x, y, height, sprite) -> collided
    clear()
    is_open() -> bool
    present()

FramebufferDisplay holds the 64x32 monochrome grid as a numpy array and
implements the XOR sprite semantics.  The two concrete front-ends
build on it:

  TerminalDisplay  -- ANSI text rendering to a stream (headless hosts)
  PygameDisplay    -- scaled pygame window, also feeds the keypad

Sprites clip at the right and bottom edges; only the starting
coordinate wraps onto the grid.

Usage (programmatic):
    from display import PygameDisplay
    keypad = Keypad()
    disp = PygameDisplay(keypad, scale=10)
    system = Chip8System(display=disp, keypad=keypad)
    system.run()
    disp.close()
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Optional, TextIO

import numpy as np

if TYPE_CHECKING:
    from devices import Keypad

WIDTH = 64
HEIGHT = 32
SPRITE_WIDTH = 8

# Default colours (R, G, B)
FG_COLOR = (230, 230, 230)
BG_COLOR = (16, 16, 24)

# QWERTY layout -> hex keypad
#   1 2 3 4      1 2 3 C
#   Q W E R  ->  4 5 6 D
#   A S D F      7 8 9 E
#   Z X C V      A 0 B F
KEY_MAP = {
    '1': 0x1, '2': 0x2, '3': 0x3, '4': 0xC,
    'q': 0x4, 'w': 0x5, 'e': 0x6, 'r': 0xD,
    'a': 0x7, 's': 0x8, 'd': 0x9, 'f': 0xE,
    'z': 0xA, 'x': 0x0, 'c': 0xB, 'v': 0xF,
}


# ── Base interface ────────────────────────────────────────────────────


class Display:
    """Abstract display capability."""

    width = WIDTH
    height = HEIGHT

    def draw(self, x: int, y: int, height: int, sprite: bytes) -> bool:
        raise NotImplementedError

    def clear(self):
        raise NotImplementedError

    def is_open(self) -> bool:
        return True

    def present(self):
        pass


# ── Framebuffer ───────────────────────────────────────────────────────


class FramebufferDisplay(Display):
    """Headless 64x32 pixel buffer.  Used directly by tests and tools."""

    def __init__(self, width: int = WIDTH, height: int = HEIGHT):
        self.width = width
        self.height = height
        # Row-major: pixels[y, x], 1 = lit
        self.pixels = np.zeros((height, width), dtype=np.uint8)
        self.dirty = True
        self.draw_count = 0

    def draw(self, x: int, y: int, height: int, sprite: bytes) -> bool:
        if height == 0:
            return False
        x %= self.width
        y %= self.height

        rows = np.frombuffer(bytes(sprite[:height]), dtype=np.uint8)
        bits = np.unpackbits(rows).reshape(len(rows), SPRITE_WIDTH)

        # Clip against the right and bottom edges
        w = min(SPRITE_WIDTH, self.width - x)
        h = min(len(rows), self.height - y)
        bits = bits[:h, :w]

        region = self.pixels[y:y + h, x:x + w]
        collided = bool(np.any(region & bits))
        region ^= bits
        self.dirty = True
        self.draw_count += 1
        return collided

    def clear(self):
        self.pixels.fill(0)
        self.dirty = True

    def pixel(self, x: int, y: int) -> int:
        return int(self.pixels[y, x])

    @property
    def lit_count(self) -> int:
        return int(self.pixels.sum())

    def render_text(self, on: str = '#', off: str = ' ') -> str:
        """The grid as text, one line per row."""
        return '\n'.join(
            ''.join(on if p else off for p in row) for row in self.pixels)


# ── Terminal ──────────────────────────────────────────────────────────


class TerminalDisplay(FramebufferDisplay):
    """Renders the framebuffer to a terminal using ANSI escapes.

    Two pixel rows share one character cell via half-block glyphs, so
    the 64x32 grid fits in 64x16 characters.
    """

    HOME = "\x1b[H"
    CLEAR_SCREEN = "\x1b[2J"
    HIDE_CURSOR = "\x1b[?25l"
    SHOW_CURSOR = "\x1b[?25h"

    # (upper, lower) -> glyph
    GLYPHS = {(0, 0): ' ', (1, 0): '▀', (0, 1): '▄', (1, 1): '█'}

    def __init__(self, stream: Optional[TextIO] = None):
        super().__init__()
        self.stream = stream if stream is not None else sys.stdout
        self._started = False
        self._open = True

    def frame_text(self) -> str:
        lines = []
        for y in range(0, self.height, 2):
            upper = self.pixels[y]
            lower = self.pixels[y + 1] if y + 1 < self.height else \
                np.zeros(self.width, dtype=np.uint8)
            lines.append(''.join(
                self.GLYPHS[(int(u), int(l))] for u, l in zip(upper, lower)))
        return '\n'.join(lines)

    def present(self):
        if not self.dirty:
            return
        out = []
        if not self._started:
            out.append(self.CLEAR_SCREEN + self.HIDE_CURSOR)
            self._started = True
        out.append(self.HOME)
        out.append(self.frame_text())
        out.append('\n')
        self.stream.write(''.join(out))
        self.stream.flush()
        self.dirty = False

    def is_open(self) -> bool:
        return self._open

    def close(self):
        if self._started:
            self.stream.write(self.SHOW_CURSOR + '\n')
            self.stream.flush()
        self._open = False


# ── Pygame window ─────────────────────────────────────────────────────


class PygameDisplay(FramebufferDisplay):
    """Scaled pygame window.  Polling the window also drives the keypad.

    pygame is imported lazily so headless hosts never need a video
    driver.
    """

    def __init__(self, keypad: Optional["Keypad"] = None, scale: int = 10,
                 title: str = "CHIP-8", fg=FG_COLOR, bg=BG_COLOR):
        super().__init__()
        self.keypad = keypad
        self.scale = max(1, scale)
        self.title = title
        self.fg = fg
        self.bg = bg
        self._pygame = None
        self._screen = None
        self._surface = None
        self._open = False
        self._key_lookup: dict[int, int] = {}

    # -- lifecycle --------------------------------------------------------

    def open(self):
        """Create the window.  Called on first is_open() if not done yet."""
        import pygame

        self._pygame = pygame
        pygame.init()
        pygame.display.set_caption(self.title)
        self._screen = pygame.display.set_mode(
            (self.width * self.scale, self.height * self.scale))
        self._surface = pygame.Surface((self.width, self.height))
        self._key_lookup = {
            pygame.key.key_code(name): key for name, key in KEY_MAP.items()
        }
        self._open = True
        self.dirty = True

    def close(self):
        if self._pygame is not None:
            self._pygame.quit()
            self._pygame = None
        self._open = False

    def is_open(self) -> bool:
        if self._pygame is None:
            if self._open is False and self._screen is not None:
                return False
            self.open()
        self._pump_events()
        return self._open

    # -- events -----------------------------------------------------------

    def _pump_events(self):
        pygame = self._pygame
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                self._open = False
            elif event.type == pygame.KEYDOWN:
                if event.key == pygame.K_ESCAPE:
                    self._open = False
                elif self.keypad is not None and event.key in self._key_lookup:
                    self.keypad.press(self._key_lookup[event.key])
            elif event.type == pygame.KEYUP:
                if self.keypad is not None and event.key in self._key_lookup:
                    self.keypad.release(self._key_lookup[event.key])

    # -- rendering --------------------------------------------------------

    def to_rgb(self) -> np.ndarray:
        """Pixel buffer as a (width, height, 3) array for surfarray."""
        fg = np.array(self.fg, dtype=np.uint8)
        bg = np.array(self.bg, dtype=np.uint8)
        rgb = np.where(self.pixels.T[:, :, None] == 1, fg, bg)
        return rgb.astype(np.uint8)

    def present(self):
        if self._pygame is None or not self.dirty:
            return
        pygame = self._pygame
        pygame.surfarray.blit_array(self._surface, self.to_rgb())
        scaled = pygame.transform.scale(
            self._surface, (self.width * self.scale, self.height * self.scale))
        self._screen.blit(scaled, (0, 0))
        pygame.display.flip()
        self.dirty = False
