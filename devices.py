"""
CHIP-8 Peripheral / Device Layer
=================================
The pieces of the machine that live outside the interpreter core:

  Timers        delay + sound registers, counting down at 60 Hz
  Keypad        16-key hex keypad (the Input capability)
  RandomSource  byte generator behind the RND instruction

Timers are driven by elapsed wall-clock seconds handed to tick(), not
by instruction count, so their rate is independent of how fast the CPU
is stepped.  The keypad keeps both the current key state (for SKP/SKNP)
and a bounded queue of key-press events for the blocking LD Vx, K,
which clears the queue when it starts waiting.
"""

from __future__ import annotations
import random
import time
from collections import deque
from typing import Callable, Optional

TIMER_HZ = 60
TIMER_PERIOD = 1.0 / TIMER_HZ
NUM_KEYS = 16
MAX_KEY_EVENTS = 16      # oldest presses drop once the queue is full


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """A named peripheral with an optional clock input."""

    def __init__(self, name: str):
        self.name = name

    def tick(self, elapsed: float) -> int:
        """Advance the device by ``elapsed`` seconds.  Returns periods crossed."""
        return 0

    def reset(self):
        pass


# ---------------------------------------------------------------------------
#  Timers -- delay and sound
# ---------------------------------------------------------------------------

class Timers(Device):
    """Delay and sound timers, each decremented once per 1/60 s while non-zero."""

    def __init__(self, hz: int = TIMER_HZ):
        super().__init__("Timers")
        self.hz = hz
        self._delay: int = 0
        self._sound: int = 0
        self._accum: float = 0.0   # seconds not yet converted to ticks

    @property
    def delay(self) -> int:
        return self._delay

    @delay.setter
    def delay(self, value: int):
        self._delay = value & 0xFF

    @property
    def sound(self) -> int:
        return self._sound

    @sound.setter
    def sound(self, value: int):
        self._sound = value & 0xFF

    @property
    def sound_active(self) -> bool:
        """True while the buzzer should be sounding."""
        return self._sound > 0

    def tick(self, elapsed: float) -> int:
        if elapsed <= 0:
            return 0
        self._accum += elapsed
        # Epsilon absorbs float drift when elapsed is an exact multiple
        periods = int(self._accum * self.hz + 1e-9)
        if periods == 0:
            return 0
        self._accum = max(0.0, self._accum - periods / self.hz)
        self._delay = max(0, self._delay - periods)
        self._sound = max(0, self._sound - periods)
        return periods

    def reset(self):
        self._delay = 0
        self._sound = 0
        self._accum = 0.0


# ---------------------------------------------------------------------------
#  Keypad -- Input capability
# ---------------------------------------------------------------------------
# Key layout on the original COSMAC VIP:
#
#   1 2 3 C
#   4 5 6 D
#   7 8 9 E
#   A 0 B F

class Keypad(Device):
    """16-key hex keypad: current state plus a queue of press events."""

    def __init__(self):
        super().__init__("Keypad")
        self.state: list[bool] = [False] * NUM_KEYS
        self.events: deque[int] = deque(maxlen=MAX_KEY_EVENTS)

    @staticmethod
    def _check_key(key: int) -> int:
        if not 0 <= key < NUM_KEYS:
            raise ValueError(f"Invalid key {key!r}, expected 0x0-0xF")
        return key

    def press(self, key: int):
        key = self._check_key(key)
        if not self.state[key]:
            self.events.append(key)
        self.state[key] = True

    def release(self, key: int):
        self.state[self._check_key(key)] = False

    def is_pressed(self, key: int) -> bool:
        return self.state[key & 0xF]

    def poll_key_press(self) -> Optional[int]:
        """Pop the next key-press event, or None if there is none."""
        if self.events:
            return self.events.popleft()
        return None

    def wait_key(self, pump: Callable[[], bool] = lambda: True,
                 timeout: Optional[float] = None,
                 interval: float = TIMER_PERIOD) -> Optional[int]:
        """Block until a key is pressed.

        ``pump`` is called once per poll so a host can feed in events;
        when it returns False (window closed) the wait is cancelled.
        Returns the key, or None on cancel / timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            key = self.poll_key_press()
            if key is not None:
                return key
            if not pump():
                return None
            if deadline is not None and time.monotonic() >= deadline:
                return None
            time.sleep(interval)

    def clear_events(self):
        """Drop queued presses so a new wait only sees fresh ones."""
        self.events.clear()

    @property
    def has_events(self) -> bool:
        return bool(self.events)

    def reset(self):
        self.state = [False] * NUM_KEYS
        self.events.clear()


# ---------------------------------------------------------------------------
#  RandomSource -- Random-Byte capability
# ---------------------------------------------------------------------------

class RandomSource(Device):
    """Uniform random bytes for RND.  Pass a seed for reproducible runs."""

    def __init__(self, seed: Optional[int] = None):
        super().__init__("RNG")
        self.seed = seed
        self.rng = random.Random(seed)

    def next_byte(self) -> int:
        return self.rng.randint(0, 255)

    def reset(self):
        self.rng = random.Random(self.seed)
