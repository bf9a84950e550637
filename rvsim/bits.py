"""Bit-field helpers for 32-bit RISC-V words."""

WORD_BITS = 32
WORD_MASK = (1 << WORD_BITS) - 1
DWORD_MASK = (1 << 64) - 1


def bitmask(bits: int) -> int:
    """Return a mask with the low ``bits`` bits set."""
    if bits < 0:
        raise ValueError(f"negative bit count: {bits}")
    return (1 << bits) - 1


def bits(x: int, hi: int, lo: int) -> int:
    """Extract ``x[hi:lo]`` (inclusive), like a Verilog part select."""
    if lo < 0 or hi < lo:
        raise ValueError(f"invalid bit range [{hi}:{lo}]")
    return (x >> lo) & bitmask(hi - lo + 1)


def sext(x: int, length: int) -> int:
    """Sign-extend the low ``length`` bits of ``x`` to an unsigned 64-bit value."""
    if not 1 <= length <= 64:
        raise ValueError(f"invalid field length: {length}")
    value = x & bitmask(length)
    if value >> (length - 1):
        value -= 1 << length
    return value & DWORD_MASK


def _check_alignment(size: int) -> None:
    if size <= 0 or size & (size - 1):
        raise ValueError(f"alignment must be a positive power of two: {size}")


def roundup(a: int, size: int) -> int:
    """Round ``a`` up to a multiple of ``size`` (a power of two)."""
    _check_alignment(size)
    return (a + size - 1) & ~(size - 1)


def rounddown(a: int, size: int) -> int:
    """Round ``a`` down to a multiple of ``size`` (a power of two)."""
    _check_alignment(size)
    return a & ~(size - 1)


def to_signed(value: int) -> int:
    """Interpret the low 32 bits of ``value`` as a two's-complement integer."""
    value &= WORD_MASK
    return value - (1 << WORD_BITS) if value >> (WORD_BITS - 1) else value


def to_unsigned(value: int) -> int:
    """Truncate ``value`` to an unsigned 32-bit word."""
    return value & WORD_MASK