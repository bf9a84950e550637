"""Memory-mapped I/O regions and the bus that dispatches accesses to them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .bits import roundup
from .memory import PhysicalMemory, host_read, host_write

logger = logging.getLogger(__name__)

IO_SPACE_MAX = 2 * 1024 * 1024
PAGE_SIZE = 4096
NR_MAP = 16

IOCallback = Callable[[int, int, bool], None]


class MMIOError(Exception):
    """Raised for invalid device mappings and accesses that no device serves."""


@dataclass
class IOMap:
    """A device region covering guest addresses ``low`` to ``high`` inclusive."""

    name: str
    low: int
    high: int
    space: memoryview
    callback: Optional[IOCallback] = None

    def inside(self, addr: int) -> bool:
        return self.low <= addr <= self.high


class IOSpace:
    """A fixed pool from which devices take page-aligned backing buffers."""

    def __init__(self, capacity: int = IO_SPACE_MAX) -> None:
        if capacity <= 0:
            raise ValueError(f"I/O space capacity must be positive: {capacity}")
        self.capacity = capacity
        self.used = 0
        self._buffer = bytearray(capacity)

    def new_space(self, size: int) -> memoryview:
        """Reserve ``size`` bytes (rounded up to a page) and return a view on them."""
        if size < 0:
            raise ValueError(f"negative space size: {size}")
        start = self.used
        end = start + roundup(size, PAGE_SIZE)
        if end >= self.capacity:
            raise MMIOError(f"I/O space exhausted: {end} of {self.capacity} bytes")
        self.used = end
        return memoryview(self._buffer)[start:start + size]


def _overlap(name1: str, l1: int, r1: int, name2: str, l2: int, r2: int) -> MMIOError:
    return MMIOError(
        f"MMIO region {name1}@[0x{l1:08x}, 0x{r1:08x}] is overlapped "
        f"with {name2}@[0x{l2:08x}, 0x{r2:08x}]"
    )


class MMIOBus:
    """Routes accesses outside physical memory to registered device regions.

    ``on_access`` is called whenever an address resolves to a device region.
    """

    def __init__(self, memory: PhysicalMemory,
                 on_access: Optional[Callable[[], None]] = None) -> None:
        self.memory = memory
        self.on_access = on_access
        self.maps: list[IOMap] = []
        self.io = IOSpace()

    def add_map(self, name: str, addr: int, space,
                callback: Optional[IOCallback] = None) -> IOMap:
        """Map ``space`` at guest address ``addr``; ``callback`` runs on each access."""
        if len(self.maps) >= NR_MAP:
            raise MMIOError(f"too many MMIO regions (at most {NR_MAP})")
        view = memoryview(space)
        if len(view) == 0:
            raise ValueError(f"MMIO region {name} is empty")
        left, right = addr, addr + len(view) - 1
        if self.memory.in_pmem(left) or self.memory.in_pmem(right):
            raise _overlap(name, left, right, "pmem",
                           self.memory.base, self.memory.end - 1)
        for other in self.maps:
            if left <= other.high and right >= other.low:
                raise _overlap(name, left, right, other.name, other.low, other.high)
        io_map = IOMap(name, left, right, view, callback)
        self.maps.append(io_map)
        logger.info("Add mmio map '%s' at [0x%08x, 0x%08x]", name, left, right)
        return io_map

    def find(self, addr: int) -> Optional[IOMap]:
        """Return the region containing ``addr``, or ``None``."""
        for io_map in self.maps:
            if io_map.inside(addr):
                if self.on_access is not None:
                    self.on_access()
                return io_map
        return None

    def _locate(self, addr: int, length: int) -> tuple[IOMap, int]:
        if not 1 <= length <= 8:
            raise ValueError(f"unsupported access length: {length}")
        io_map = self.find(addr)
        if io_map is None:
            raise MMIOError(f"no device at address 0x{addr:08x}")
        offset = addr - io_map.low
        if offset + length > len(io_map.space):
            raise MMIOError(
                f"access of {length} bytes at 0x{addr:08x} crosses the end of {io_map.name}"
            )
        return io_map, offset

    def read(self, addr: int, length: int) -> int:
        """Let the device prepare its data, then read it."""
        io_map, offset = self._locate(addr, length)
        if io_map.callback is not None:
            io_map.callback(offset, length, False)
        return host_read(io_map.space, offset, length)

    def write(self, addr: int, length: int, data: int) -> None:
        """Store the data, then let the device react to it."""
        io_map, offset = self._locate(addr, length)
        host_write(io_map.space, offset, length, data)
        if io_map.callback is not None:
            io_map.callback(offset, length, True)