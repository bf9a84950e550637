import io
import time

import pytest

from rvsim.devices import (
    KEY_NONE,
    KEY_QUEUE_LEN,
    KEYDOWN_MASK,
    QUIT,
    RTC,
    SCREEN_H,
    SCREEN_W,
    VGA,
    Clock,
    Devices,
    Disk,
    Keyboard,
    Serial,
)
from rvsim.memory import PhysicalMemory
from rvsim.mmio import MMIOBus, MMIOError

BASE = 0x80000000
SERIAL = 0xA00003F8
RTC_ADDR = 0xA0000048
KBD = 0xA0000080
VGA_CTL = 0xA0000100
FB = 0xA1000000
FFB = 0xA0000200
DISK = 0xA0000300
CONFIG = {
    "serial": SERIAL, "rtc": RTC_ADDR, "keyboard": KBD, "vga_ctl": VGA_CTL,
    "fb": FB, "ffb": FFB, "disk_ctl": DISK,
}
ESCAPE_SCANCODE = 41


class FakeClock:
    def __init__(self, us=0):
        self.us = us

    def uptime_us(self):
        return self.us


@pytest.fixture
def memory():
    return PhysicalMemory(BASE, 0x10000)


@pytest.fixture
def bus(memory):
    return MMIOBus(memory)


def test_clock_is_monotonic():
    clock = Clock()
    first = clock.uptime_us()
    second = clock.uptime_us()
    assert 0 <= first <= second


def test_serial_writes_character(bus):
    out = io.StringIO()
    Serial(bus, SERIAL, out)
    bus.write(SERIAL, 1, ord("h"))
    bus.write(SERIAL, 1, ord("i"))
    assert out.getvalue() == "hi"


def test_serial_rejects_reads_and_bad_accesses(bus):
    Serial(bus, SERIAL, io.StringIO())
    with pytest.raises(MMIOError):
        bus.read(SERIAL, 1)
    with pytest.raises(MMIOError):
        bus.write(SERIAL + 1, 1, 0)
    with pytest.raises(MMIOError):
        bus.write(SERIAL, 2, 0)


def test_rtc_reports_uptime_and_calendar(bus):
    RTC(bus, RTC_ADDR, FakeClock((1 << 32) + 2))
    before = time.localtime().tm_year
    low = bus.read(RTC_ADDR, 4)
    after = time.localtime().tm_year
    assert low == 2
    assert bus.read(RTC_ADDR + 4, 4) == 1
    assert before <= bus.read(RTC_ADDR + 28, 4) <= after
    assert 1 <= bus.read(RTC_ADDR + 24, 4) <= 12


def test_rtc_is_read_only(bus):
    RTC(bus, RTC_ADDR, FakeClock())
    with pytest.raises(MMIOError):
        bus.write(RTC_ADDR, 4, 0)


def test_keyboard_key_codes(bus):
    kbd = Keyboard(bus, KBD)
    kbd.send_key(ESCAPE_SCANCODE, True)
    kbd.send_key(ESCAPE_SCANCODE, False)
    assert kbd.dequeue() == 1 | KEYDOWN_MASK
    assert kbd.dequeue() == 1
    assert kbd.dequeue() == KEY_NONE


def test_keyboard_ignores_unknown_and_when_stopped(bus):
    running = [True]
    kbd = Keyboard(bus, KBD, lambda: running[0])
    kbd.send_key(0, True)
    running[0] = False
    kbd.send_key(ESCAPE_SCANCODE, True)
    assert kbd.dequeue() == KEY_NONE


def test_keyboard_read_through_bus_in_order(bus):
    kbd = Keyboard(bus, KBD)
    kbd.send_key(ESCAPE_SCANCODE, True)
    kbd.send_key(ESCAPE_SCANCODE, False)
    assert bus.read(KBD, 4) == 1 | KEYDOWN_MASK
    assert bus.read(KBD, 4) == 1
    assert bus.read(KBD, 4) == KEY_NONE
    with pytest.raises(MMIOError):
        bus.write(KBD, 4, 0)


def test_keyboard_queue_overflow(bus):
    kbd = Keyboard(bus, KBD)
    for _ in range(KEY_QUEUE_LEN - 1):
        kbd.send_key(ESCAPE_SCANCODE, True)
    with pytest.raises(OverflowError):
        kbd.send_key(ESCAPE_SCANCODE, True)


def test_disk_read_into_memory(bus, memory, tmp_path):
    image = tmp_path / "disk.img"
    image.write_bytes(bytes(range(16)))
    loads = []
    disk = Disk(bus, DISK, memory, image, lambda base, data: loads.append((base, len(data))))
    try:
        bus.write(DISK, 4, 4)
        bus.write(DISK + 4, 4, BASE + 0x100)
        bus.write(DISK + 8, 4, 8)
        bus.write(DISK + 12, 4, Disk.CMD_READ)
        assert memory.read_bytes(BASE + 0x100, 8) == bytes(range(4, 12))
        assert bus.read(DISK + 12, 4) == 0
        assert loads == [(BASE, memory.size)]
    finally:
        disk.close()


def test_disk_write_leaves_image_untouched(bus, memory, tmp_path):
    image = tmp_path / "disk.img"
    image.write_bytes(bytes(8))
    memory.write_bytes(BASE, b"\xff" * 8)
    disk = Disk(bus, DISK, memory, image)
    try:
        bus.write(DISK + 4, 4, BASE)
        bus.write(DISK + 8, 4, 8)
        bus.write(DISK + 12, 4, Disk.CMD_WRITE)
        assert image.read_bytes() == bytes(8)
        assert bus.read(DISK + 12, 4) == 0
    finally:
        disk.close()


def test_disk_missing_image(bus, memory, tmp_path):
    with pytest.raises(FileNotFoundError):
        Disk(bus, DISK, memory, tmp_path / "missing.img")


def _write_ffb(bus, values):
    for i, value in enumerate(values):
        bus.write(FFB + 4 * i, 4, value)
    bus.write(FFB + 28, 4, 0)


def test_vga_control_and_pixels(bus, memory):
    vga = VGA(bus, VGA_CTL, FB, FFB, memory)
    assert bus.read(VGA_CTL, 4) == (SCREEN_W << 16) | SCREEN_H
    bus.write(FB + 4 * (2 * SCREEN_W + 3), 4, 0x00FF00FF)
    assert vga.pixel(3, 2) == 0x00FF00FF
    with pytest.raises(IndexError):
        vga.pixel(SCREEN_W, 0)


def test_vga_fast_draw(bus, memory):
    vga = VGA(bus, VGA_CTL, FB, FFB, memory)
    for i, value in enumerate([0x11, 0x22, 0x33, 0x44]):
        memory.write(BASE + 4 * i, 4, value)
    _write_ffb(bus, [1, 2, 2, 2, SCREEN_W, SCREEN_H, BASE])
    assert [vga.pixel(1, 2), vga.pixel(2, 2), vga.pixel(1, 3), vga.pixel(2, 3)] == [
        0x11, 0x22, 0x33, 0x44]


def test_vga_fast_draw_clips(bus, memory):
    vga = VGA(bus, VGA_CTL, FB, FFB, memory)
    for i in range(16):
        memory.write(BASE + 4 * i, 4, i + 1)
    _write_ffb(bus, [SCREEN_W - 2, 0, 4, 1, SCREEN_W, SCREEN_H, BASE])
    assert vga.pixel(SCREEN_W - 1, 0) == 2
    assert vga.pixel(0, 1) == 0
    _write_ffb(bus, [0, SCREEN_H - 1, 1, 3, SCREEN_W, SCREEN_H, BASE])
    assert vga.pixel(0, SCREEN_H - 1) == 1


def test_vga_update_screen_follows_sync(bus, memory):
    vga = VGA(bus, VGA_CTL, FB, FFB, memory)
    assert vga.update_screen() is False
    bus.write(FB, 4, 0x123)
    bus.write(VGA_CTL + 4, 4, 1)
    assert vga.update_screen() is True
    assert vga.frames == 1
    assert vga.frame[:4] == (0x123).to_bytes(4, "little")
    assert bus.read(VGA_CTL + 4, 4) == 0


def test_devices_wiring(bus, memory, tmp_path):
    image = tmp_path / "disk.img"
    image.write_bytes(b"abcd")
    devices = Devices(bus, memory, CONFIG, image)
    try:
        out = io.StringIO()
        devices.serial.stream = out
        bus.write(SERIAL, 1, ord("x"))
        assert out.getvalue() == "x"
        assert bus.read(VGA_CTL, 4) == (SCREEN_W << 16) | SCREEN_H
        assert devices.disk is not None
    finally:
        devices.disk.close()


def test_devices_without_disk(bus, memory):
    devices = Devices(bus, memory, CONFIG)
    assert devices.disk is None
    assert {m.name for m in bus.maps} == {
        "serial", "rtc", "vgactl", "vmem", "ffb_mem", "ffb_draw", "keyboard"}


def test_devices_update_processes_events(bus, memory):
    devices = Devices(bus, memory, CONFIG)
    devices.clock = FakeClock(5000)
    devices.events.append((ESCAPE_SCANCODE, True))
    devices.events.append(QUIT)
    assert devices.update() is True
    assert devices.keyboard.dequeue() == 1 | KEYDOWN_MASK
    assert len(devices.events) == 0


def test_devices_update_is_rate_limited(bus, memory):
    devices = Devices(bus, memory, CONFIG)
    devices.clock = FakeClock(5000)
    assert devices.update() is False
    devices.events.append(QUIT)
    devices.clock.us = 5001
    assert devices.update() is False
    assert list(devices.events) == [QUIT]


def test_devices_keyboard_respects_running(bus, memory):
    devices = Devices(bus, memory, CONFIG)
    devices.is_running = lambda: False
    devices.clock = FakeClock(5000)
    devices.events.append((ESCAPE_SCANCODE, True))
    devices.update()
    assert devices.keyboard.dequeue() == KEY_NONE