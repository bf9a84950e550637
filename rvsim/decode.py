"""Instruction pattern matching from strings of '0', '1' and '?'."""

from __future__ import annotations

from dataclasses import dataclass

_MAX_BINARY_LEN = 64
_MAX_HEX_LEN = 16
_HEX_DIGITS = "0123456789abcdef"


@dataclass(frozen=True)
class Pattern:
    """A decoded pattern: ``key`` and ``mask`` after dropping ``shift`` trailing wildcard bits."""

    key: int
    mask: int
    shift: int

    def matches(self, value: int) -> bool:
        return ((value >> self.shift) & self.mask) == self.key


def _decode(pattern: str, max_len: int, digit_bits: int, digit_value) -> Pattern:
    if len(pattern) > max_len:
        raise ValueError("pattern too long")
    full = (1 << digit_bits) - 1
    key = mask = shift = 0
    for c in pattern:
        if c == " ":
            continue
        if c == "?":
            key <<= digit_bits
            mask <<= digit_bits
            shift += digit_bits
        else:
            key = (key << digit_bits) | digit_value(c)
            mask = (mask << digit_bits) | full
            shift = 0
    return Pattern(key >> shift, mask >> shift, shift)


def _binary_digit(c: str) -> int:
    if c not in "01":
        raise ValueError(f"invalid character '{c}' in pattern string")
    return int(c)


def _hex_digit(c: str) -> int:
    index = _HEX_DIGITS.find(c)
    if len(c) != 1 or index < 0:
        raise ValueError(f"invalid character '{c}' in pattern string")
    return index


def pattern_decode(pattern: str) -> Pattern:
    """Decode a binary pattern; spaces are ignored and '?' matches any bit."""
    return _decode(pattern, _MAX_BINARY_LEN, 1, _binary_digit)


def pattern_decode_hex(pattern: str) -> Pattern:
    """Decode a lower-case hex pattern; '?' matches any nibble."""
    return _decode(pattern, _MAX_HEX_LEN, 4, _hex_digit)