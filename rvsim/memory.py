"""Guest physical memory and little-endian host accessors."""

from __future__ import annotations

import random
from os import PathLike
from pathlib import Path

from .bits import WORD_MASK

DEFAULT_MBASE = 0x80000000

_ACCESS_SIZES = (1, 2, 4, 8)


def _check_access(buffer, offset: int, length: int) -> None:
    if length not in _ACCESS_SIZES:
        raise ValueError(f"unsupported access length: {length}")
    if offset < 0 or offset + length > len(buffer):
        raise IndexError(f"access of {length} bytes at offset {offset} outside buffer")


def host_read(buffer, offset: int, length: int) -> int:
    """Read a little-endian value of ``length`` bytes, truncated to a word."""
    _check_access(buffer, offset, length)
    value = int.from_bytes(bytes(buffer[offset:offset + length]), "little")
    return value & WORD_MASK


def host_write(buffer, offset: int, length: int, data: int) -> None:
    """Store the word ``data`` as a little-endian value of ``length`` bytes."""
    _check_access(buffer, offset, length)
    value = (data & WORD_MASK) & ((1 << (8 * length)) - 1)
    buffer[offset:offset + length] = value.to_bytes(length, "little")


class AddressOutOfBounds(Exception):
    """Raised when a guest address falls outside physical memory."""

    def __init__(self, addr: int, low: int, high: int) -> None:
        self.addr = addr
        self.low = low
        self.high = high
        super().__init__(
            f"address = 0x{addr:08x} is out of bound of pmem "
            f"[0x{low:08x}, 0x{high:08x})"
        )


class PhysicalMemory:
    """A contiguous block of guest RAM starting at ``base``."""

    def __init__(self, base: int, size: int) -> None:
        if size <= 0:
            raise ValueError(f"memory size must be positive: {size}")
        self.base = base
        self.size = size
        self.data = bytearray(size)

    def __len__(self) -> int:
        return self.size

    @property
    def end(self) -> int:
        """First guest address past the end of memory."""
        return self.base + self.size

    def in_pmem(self, addr: int) -> bool:
        return self.base <= addr < self.end

    def _check_range(self, addr: int, n: int) -> None:
        if not self.in_pmem(addr) or (n > 0 and not self.in_pmem(addr + n - 1)):
            raise AddressOutOfBounds(addr, self.base, self.end)

    def guest_to_host(self, addr: int) -> int:
        """Map a guest address to an offset into ``data``."""
        return addr - self.base

    def host_to_guest(self, offset: int) -> int:
        """Map an offset into ``data`` back to a guest address."""
        return offset + self.base

    def read(self, addr: int, length: int) -> int:
        self._check_range(addr, length)
        return host_read(self.data, self.guest_to_host(addr), length)

    def write(self, addr: int, length: int, data: int) -> None:
        self._check_range(addr, length)
        host_write(self.data, self.guest_to_host(addr), length, data)

    def read_bytes(self, addr: int, n: int) -> bytes:
        if n < 0:
            raise ValueError(f"negative byte count: {n}")
        if n == 0:
            return b""
        self._check_range(addr, n)
        offset = self.guest_to_host(addr)
        return bytes(self.data[offset:offset + n])

    def write_bytes(self, addr: int, data: bytes) -> None:
        if not data:
            return
        self._check_range(addr, len(data))
        offset = self.guest_to_host(addr)
        self.data[offset:offset + len(data)] = data

    def fill_random(self, seed=None) -> None:
        """Fill memory with pseudo-random bytes; ``None`` seeds from the clock."""
        rng = random.Random(seed)
        self.data[:] = rng.randbytes(self.size)

    def load_image(self, path: str | PathLike) -> int:
        """Copy a binary image to the start of memory and return its size."""
        image = Path(path).read_bytes()
        if len(image) > self.size:
            raise ValueError(
                f"image of {len(image)} bytes does not fit in {self.size} bytes of memory"
            )
        self.data[:len(image)] = image
        return len(image)