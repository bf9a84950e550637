"""Guest devices: serial port, real-time clock, keyboard, disk and frame buffer."""

from __future__ import annotations

import sys
import time
from collections import deque
from os import PathLike
from typing import Callable, Mapping, Optional, TextIO

from .memory import PhysicalMemory, host_read, host_write
from .mmio import MMIOBus, MMIOError

TIMER_HZ = 60
_UPDATE_INTERVAL_US = 100000 // TIMER_HZ

QUIT = "quit"


def _word(space, index: int) -> int:
    return host_read(space, 4 * index, 4)


def _set_word(space, index: int, value: int) -> None:
    host_write(space, 4 * index, 4, value)


class Clock:
    """Microseconds elapsed since the clock was created."""

    def __init__(self) -> None:
        self._boot = time.monotonic_ns()

    def uptime_us(self) -> int:
        return (time.monotonic_ns() - self._boot) // 1000


class Serial:
    """A write-only character port whose output goes to ``stream`` (stderr by default)."""

    SIZE = 8
    CH_OFFSET = 0

    def __init__(self, bus: MMIOBus, addr: int, stream: Optional[TextIO] = None) -> None:
        self.stream = stream
        self.space = bus.io.new_space(self.SIZE)
        bus.add_map("serial", addr, self.space, self._handle)

    def _handle(self, offset: int, length: int, is_write: bool) -> None:
        if length != 1:
            raise MMIOError(f"serial access must be 1 byte, got {length}")
        if offset != self.CH_OFFSET:
            raise MMIOError(f"do not support offset = {offset}")
        if not is_write:
            raise MMIOError("do not support read")
        stream = sys.stderr if self.stream is None else self.stream
        stream.write(chr(self.space[0]))
        stream.flush()


class RTC:
    """Uptime in microseconds plus the local calendar time, refreshed on each read.

    Words: uptime low, uptime high, second, minute, hour, day, month, year.
    """

    SIZE = 32

    def __init__(self, bus: MMIOBus, addr: int, clock: Optional[Clock] = None) -> None:
        self.clock = Clock() if clock is None else clock
        self.space = bus.io.new_space(self.SIZE)
        bus.add_map("rtc", addr, self.space, self._handle)

    def _handle(self, offset: int, length: int, is_write: bool) -> None:
        if is_write:
            raise MMIOError("rtc is read-only")
        us = self.clock.uptime_us()
        tm = time.localtime()
        values = (
            us & 0xFFFFFFFF, (us >> 32) & 0xFFFFFFFF,
            tm.tm_sec, tm.tm_min, tm.tm_hour, tm.tm_mday, tm.tm_mon, tm.tm_year,
        )
        for index, value in enumerate(values):
            _set_word(self.space, index, value)


KEYDOWN_MASK = 0x8000
KEY_NONE = 0
KEY_QUEUE_LEN = 1024

KEY_NAMES = (
    "ESCAPE", "F1", "F2", "F3", "F4", "F5", "F6", "F7", "F8", "F9", "F10", "F11", "F12",
    "GRAVE", "1", "2", "3", "4", "5", "6", "7", "8", "9", "0", "MINUS", "EQUALS", "BACKSPACE",
    "TAB", "Q", "W", "E", "R", "T", "Y", "U", "I", "O", "P",
    "LEFTBRACKET", "RIGHTBRACKET", "BACKSLASH",
    "CAPSLOCK", "A", "S", "D", "F", "G", "H", "J", "K", "L", "SEMICOLON", "APOSTROPHE", "RETURN",
    "LSHIFT", "Z", "X", "C", "V", "B", "N", "M", "COMMA", "PERIOD", "SLASH", "RSHIFT",
    "LCTRL", "APPLICATION", "LALT", "SPACE", "RALT", "RCTRL",
    "UP", "DOWN", "LEFT", "RIGHT", "INSERT", "DELETE", "HOME", "END", "PAGEUP", "PAGEDOWN",
)
KEY_CODES = {name: code for code, name in enumerate(KEY_NAMES, start=1)}

# USB HID based scancodes as reported by the host window system.
SCANCODES = {
    **{chr(ord("A") + i): 4 + i for i in range(26)},
    **{str(d): 30 + (d - 1) for d in range(1, 10)},
    "0": 39, "RETURN": 40, "ESCAPE": 41, "BACKSPACE": 42, "TAB": 43, "SPACE": 44,
    "MINUS": 45, "EQUALS": 46, "LEFTBRACKET": 47, "RIGHTBRACKET": 48, "BACKSLASH": 49,
    "SEMICOLON": 51, "APOSTROPHE": 52, "GRAVE": 53, "COMMA": 54, "PERIOD": 55,
    "SLASH": 56, "CAPSLOCK": 57,
    **{f"F{n}": 57 + n for n in range(1, 13)},
    "INSERT": 73, "HOME": 74, "PAGEUP": 75, "DELETE": 76, "END": 77, "PAGEDOWN": 78,
    "RIGHT": 79, "LEFT": 80, "DOWN": 81, "UP": 82, "APPLICATION": 101,
    "LCTRL": 224, "LSHIFT": 225, "LALT": 226, "RCTRL": 228, "RSHIFT": 229, "RALT": 230,
}
KEYMAP = {SCANCODES[name]: KEY_CODES[name] for name in KEY_NAMES}


class Keyboard:
    """Queues key events and hands them to the guest one word per read."""

    SIZE = 4

    def __init__(self, bus: MMIOBus, addr: int,
                 is_running: Optional[Callable[[], bool]] = None) -> None:
        self.is_running = (lambda: True) if is_running is None else is_running
        self._queue: deque[int] = deque()
        self.space = bus.io.new_space(self.SIZE)
        _set_word(self.space, 0, KEY_NONE)
        bus.add_map("keyboard", addr, self.space, self._handle)

    def send_key(self, scancode: int, is_keydown: bool) -> None:
        """Queue a host scancode while the guest runs; unknown keys are dropped."""
        code = KEYMAP.get(scancode, KEY_NONE)
        if not self.is_running() or code == KEY_NONE:
            return
        if len(self._queue) >= KEY_QUEUE_LEN - 1:
            raise OverflowError("key queue overflow!")
        self._queue.append(code | (KEYDOWN_MASK if is_keydown else 0))

    def dequeue(self) -> int:
        """Return the oldest queued key code, or ``KEY_NONE`` if there is none."""
        return self._queue.popleft() if self._queue else KEY_NONE

    def _handle(self, offset: int, length: int, is_write: bool) -> None:
        if is_write:
            raise MMIOError("keyboard is read-only")
        if offset != 0:
            raise MMIOError(f"do not support offset = {offset}")
        _set_word(self.space, 0, self.dequeue())


class Disk:
    """A disk image the guest reads by DMA into memory.

    Registers: disk offset, memory address, size; a write to the fourth word
    starts a command (1 reads, 2 writes) and the word is cleared afterwards.
    The image is opened read-only, so write commands have no effect.
    ``on_load(base, data)`` receives the whole memory after every read.
    """

    CMD_READ = 1
    CMD_WRITE = 2

    def __init__(self, bus: MMIOBus, addr: int, memory: PhysicalMemory,
                 path: str | PathLike,
                 on_load: Optional[Callable[[int, bytes], None]] = None) -> None:
        self.memory = memory
        self.on_load = on_load
        self._file = open(path, "rb")
        try:
            self.space = bus.io.new_space(16)
            bus.add_map("diskctl", addr, self.space[:12])
            bus.add_map("diskrw", addr + 12, self.space[12:16], self._handle)
        except BaseException:
            self._file.close()
            raise

    def close(self) -> None:
        self._file.close()

    def _handle(self, offset: int, length: int, is_write: bool) -> None:
        if not is_write:
            return
        disk_addr = _word(self.space, 0)
        mem_addr = _word(self.space, 1)
        size = _word(self.space, 2)
        if _word(self.space, 3) == self.CMD_READ:
            self._file.seek(disk_addr)
            self.memory.write_bytes(mem_addr, self._file.read(size))
            if self.on_load is not None:
                self.on_load(self.memory.base, bytes(self.memory.data))
        _set_word(self.space, 3, 0)


SCREEN_W = 400
SCREEN_H = 300


class VGA:
    """A 32-bit ARGB frame buffer with a sync register and a fast block copy.

    The block copy takes x, y, w, h, the destination width and height, and
    the guest address of the pixels, and runs on a write to its trigger word.
    """

    def __init__(self, bus: MMIOBus, ctl_addr: int, fb_addr: int, ffb_addr: int,
                 memory: PhysicalMemory) -> None:
        self.memory = memory
        self.frames = 0
        self.frame = b""
        self.ctl = bus.io.new_space(8)
        _set_word(self.ctl, 0, (SCREEN_W << 16) | SCREEN_H)
        bus.add_map("vgactl", ctl_addr, self.ctl)
        self.vmem = bus.io.new_space(SCREEN_W * SCREEN_H * 4)
        bus.add_map("vmem", fb_addr, self.vmem)
        self.ffb = bus.io.new_space(28)
        bus.add_map("ffb_mem", ffb_addr, self.ffb)
        self.ffb_trigger = bus.io.new_space(4)
        bus.add_map("ffb_draw", ffb_addr + 28, self.ffb_trigger, self._draw)

    def pixel(self, x: int, y: int) -> int:
        if not (0 <= x < SCREEN_W and 0 <= y < SCREEN_H):
            raise IndexError(f"pixel ({x}, {y}) outside the screen")
        return host_read(self.vmem, 4 * (y * SCREEN_W + x), 4)

    def update_screen(self) -> bool:
        """Present the frame buffer if the guest asked for a sync; return whether it did."""
        if _word(self.ctl, 1) == 0:
            return False
        self.frame = bytes(self.vmem)
        self.frames += 1
        _set_word(self.ctl, 1, 0)
        return True

    def _draw(self, offset: int, length: int, is_write: bool) -> None:
        if not is_write:
            raise MMIOError("fast frame buffer draw is write-only")
        x, y, w, h, width, height, pixels = (_word(self.ffb, i) for i in range(7))
        if y + h > height:
            rows = 0 if y > height else height - y
        else:
            rows = h
        cols = width - x if x + w > width else w
        if rows <= 0 or cols <= 0:
            return
        if ((y + rows - 1) * width + x + cols) * 4 > len(self.vmem):
            raise MMIOError("fast draw outside the frame buffer")
        for i in range(rows):
            src = self.memory.read_bytes(pixels + 4 * i * w, 4 * cols)
            dst = 4 * ((y + i) * width + x)
            self.vmem[dst:dst + 4 * cols] = src


class Devices:
    """All guest devices on one bus.

    ``config`` maps "serial", "rtc", "keyboard", "vga_ctl", "fb", "ffb" and,
    when ``disk_path`` is given, "disk_ctl" to guest addresses.  Host events go
    into ``events``: ``QUIT`` or ``(scancode, is_keydown)``.
    """

    def __init__(self, bus: MMIOBus, memory: PhysicalMemory, config: Mapping[str, int],
                 disk_path: Optional[str | PathLike] = None) -> None:
        self.bus = bus
        self.memory = memory
        self.clock = Clock()
        self.is_running: Callable[[], bool] = lambda: True
        self.on_disk_load: Optional[Callable[[int, bytes], None]] = None
        self.events: deque = deque()
        self._last = 0
        self.serial = Serial(bus, config["serial"])
        self.rtc = RTC(bus, config["rtc"], self.clock)
        self.vga = VGA(bus, config["vga_ctl"], config["fb"], config["ffb"], memory)
        self.keyboard = Keyboard(bus, config["keyboard"], lambda: self.is_running())
        self.disk = (
            Disk(bus, config["disk_ctl"], memory, disk_path, self._disk_loaded)
            if disk_path is not None else None
        )

    def _disk_loaded(self, base: int, data: bytes) -> None:
        if self.on_disk_load is not None:
            self.on_disk_load(base, data)

    def update(self) -> bool:
        """Refresh the screen and handle host events; return True if a quit was seen.

        Does nothing more often than ``TIMER_HZ`` allows.
        """
        now = self.clock.uptime_us()
        if now - self._last < _UPDATE_INTERVAL_US:
            return False
        self._last = now
        self.vga.update_screen()
        quit_seen = False
        while self.events:
            event = self.events.popleft()
            if event == QUIT:
                quit_seen = True
            else:
                scancode, is_keydown = event
                self.keyboard.send_key(scancode, is_keydown)
        return quit_seen