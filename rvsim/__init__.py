"""A RISC-V (RV32IM) instruction-set simulator with devices, difftest and a debugger."""

__version__ = "0.1.0"

__all__ = [
    "bits",
    "memory",
    "decode",
    "isa",
    "mmio",
    "devices",
    "difftest",
    "simulator",
    "expr",
    "sdb",
]