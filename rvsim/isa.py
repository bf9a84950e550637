"""RV32IM interpreter with machine-mode CSRs, used as the reference CPU."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import Callable

from .bits import bits, sext, to_signed, to_unsigned
from .decode import Pattern, pattern_decode
from .memory import PhysicalMemory

REGS = (
    "$0", "ra", "sp", "gp", "tp", "t0", "t1", "t2",
    "s0", "s1", "a0", "a1", "a2", "a3", "a4", "a5",
    "a6", "a7", "s2", "s3", "s4", "s5", "s6", "s7",
    "s8", "s9", "s10", "s11", "t3", "t4", "t5", "t6",
)
NR_GPR = 32
# GPRs + pc + 4 CSRs, each a 32-bit word.
REG_STATE_SIZE = 4 * (NR_GPR + 1 + 4)
_STATE_FORMAT = f"<{NR_GPR + 1 + 4}I"

CSR_MSTATUS = 0x300
CSR_MTVEC = 0x305
CSR_MEPC = 0x341
CSR_MCAUSE = 0x342
_CSR_FIELDS = {
    CSR_MSTATUS: "mstatus",
    CSR_MTVEC: "mtvec",
    CSR_MEPC: "mepc",
    CSR_MCAUSE: "mcause",
}

ECALL_CAUSE = 11


def reg_name(index: int) -> str:
    """Return the ABI name of general-purpose register ``index``."""
    if not 0 <= index < NR_GPR:
        raise IndexError(f"register index out of range: {index}")
    return REGS[index]


class InvalidInstruction(Exception):
    """Raised when the word at ``pc`` matches no known instruction."""

    def __init__(self, pc: int, words: tuple[int, int]) -> None:
        self.pc = pc
        self.words = words
        raw = words[0].to_bytes(4, "little") + words[1].to_bytes(4, "little")
        byte_text = " ".join(f"{b:02x}" for b in raw)
        super().__init__(
            f"invalid opcode(PC = 0x{pc:08x}):\n"
            f"\t{byte_text} ...\n"
            f"\t{words[0]:08x} {words[1]:08x}...\n"
            "There are two cases which will trigger this unexpected exception:\n"
            f"1. The instruction at PC = 0x{pc:08x} is not implemented.\n"
            "2. Something is implemented incorrectly.\n"
            f"Find this PC(0x{pc:08x}) in the disassembling result "
            "to distinguish which case it is."
        )


@dataclass
class CSR:
    """Machine-mode control and status registers."""

    mepc: int = 0
    mstatus: int = 0
    mcause: int = 0
    mtvec: int = 0


@dataclass
class CPUState:
    """Architectural state: general registers, program counter and CSRs."""

    gpr: list[int] = field(default_factory=lambda: [0] * NR_GPR)
    pc: int = 0
    csr: CSR = field(default_factory=CSR)

    def __post_init__(self) -> None:
        if len(self.gpr) != NR_GPR:
            raise ValueError(f"expected {NR_GPR} registers, got {len(self.gpr)}")

    def to_bytes(self) -> bytes:
        """Pack the state as little-endian words: gpr, pc, mepc, mstatus, mcause, mtvec."""
        words = [*self.gpr, self.pc, self.csr.mepc, self.csr.mstatus,
                 self.csr.mcause, self.csr.mtvec]
        return struct.pack(_STATE_FORMAT, *(to_unsigned(w) for w in words))

    @classmethod
    def from_bytes(cls, data: bytes) -> CPUState:
        if len(data) != REG_STATE_SIZE:
            raise ValueError(
                f"register state must be {REG_STATE_SIZE} bytes, got {len(data)}"
            )
        words = struct.unpack(_STATE_FORMAT, data)
        gpr = list(words[:NR_GPR])
        pc, mepc, mstatus, mcause, mtvec = words[NR_GPR:]
        return cls(gpr=gpr, pc=pc,
                   csr=CSR(mepc=mepc, mstatus=mstatus, mcause=mcause, mtvec=mtvec))

    def reg_value(self, name: str) -> int:
        """Return the value of ``pc`` or of a register given by ABI name."""
        if name == "pc":
            return self.pc
        try:
            return self.gpr[REGS.index(name)]
        except ValueError:
            raise KeyError(name) from None


class _Type(enum.Enum):
    I = enum.auto()
    U = enum.auto()
    S = enum.auto()
    J = enum.auto()
    B = enum.auto()
    R = enum.auto()
    RI = enum.auto()
    N = enum.auto()


@dataclass
class _Exec:
    pc: int
    inst: int
    dnpc: int
    rd: int = 0
    src1: int = 0
    src2: int = 0
    imm: int = 0


def _imm(inst: int, kind: _Type) -> int:
    i = inst
    if kind in (_Type.I,):
        value = sext(bits(i, 31, 20), 12)
    elif kind is _Type.U:
        value = sext(bits(i, 31, 12), 20) << 12
    elif kind is _Type.S:
        value = (sext(bits(i, 31, 25), 7) << 5) | bits(i, 11, 7)
    elif kind is _Type.J:
        value = ((sext(bits(i, 31, 31), 1) << 20) | (bits(i, 19, 12) << 12)
                 | (bits(i, 20, 20) << 11) | (bits(i, 30, 21) << 1))
    elif kind is _Type.B:
        value = ((sext(bits(i, 31, 31), 1) << 12) | (bits(i, 7, 7) << 11)
                 | (bits(i, 30, 25) << 5) | (bits(i, 11, 8) << 1))
    elif kind is _Type.RI:
        value = bits(i, 24, 20)
    else:
        value = 0
    return to_unsigned(value)


_Handler = Callable[["CPU", _Exec], None]


@dataclass(frozen=True)
class _Instruction:
    name: str
    pattern: Pattern
    kind: _Type
    run: _Handler


def _div_trunc(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return -q if (a < 0) != (b < 0) else q


def _push_prv(mstatus: int) -> int:
    tem = ((mstatus & 0x1FF) << 3) | 0x6
    return (mstatus & ~0xFFF & 0xFFFFFFFF) | tem


def _pop_prv(mstatus: int) -> int:
    tem = ((mstatus & (0x1FF << 3)) >> 3) | (0x1 << 9)
    return (mstatus & ~0xFFF & 0xFFFFFFFF) | tem


def _set(expr: Callable[[CPU, _Exec], int]) -> _Handler:
    def run(cpu: CPU, x: _Exec) -> None:
        cpu.state.gpr[x.rd] = to_unsigned(expr(cpu, x))
    return run


def _branch(taken: Callable[[int, int], bool]) -> _Handler:
    def run(cpu: CPU, x: _Exec) -> None:
        if taken(x.src1, x.src2):
            x.dnpc = x.pc + x.imm
    return run


def _load(length: int, signed: bool) -> _Handler:
    def run(cpu: CPU, x: _Exec) -> None:
        value = cpu._mem_read(x.src1 + x.imm, length)
        if signed:
            value = sext(value, 8 * length)
        cpu.state.gpr[x.rd] = to_unsigned(value)
    return run


def _store(length: int) -> _Handler:
    def run(cpu: CPU, x: _Exec) -> None:
        cpu._mem_write(x.src1 + x.imm, length, x.src2)
    return run


def _jal(cpu: CPU, x: _Exec) -> None:
    x.dnpc = x.pc + x.imm
    cpu.state.gpr[x.rd] = to_unsigned(x.pc + 4)


def _jalr(cpu: CPU, x: _Exec) -> None:
    x.dnpc = x.src1 + x.imm
    cpu.state.gpr[x.rd] = to_unsigned(x.pc + 4)


def _div(cpu: CPU, x: _Exec) -> int:
    if x.src1 == 0x80000000 and x.src2 == 0xFFFFFFFF:
        return 0x80000000
    b = to_signed(x.src2)
    return _div_trunc(to_signed(x.src1), b) if b != 0 else -1


def _rem(cpu: CPU, x: _Exec) -> int:
    if x.src1 == 0x80000000 and x.src2 == 0xFFFFFFFF:
        return 0
    a, b = to_signed(x.src1), to_signed(x.src2)
    return a - b * _div_trunc(a, b) if b != 0 else x.src1


def _csr(update: Callable[[_Exec, int], int], always_write_rd: bool = True) -> _Handler:
    def run(cpu: CPU, x: _Exec) -> None:
        if always_write_rd or x.rd != 0:
            cpu.state.gpr[x.rd] = cpu.csr_read(x.imm)
        old = cpu.state.gpr[x.rd]
        cpu.csr_write(x.imm, update(x, old))
    return run


def _zimm(x: _Exec) -> int:
    return bits(x.inst, 19, 15)


def _nop(cpu: CPU, x: _Exec) -> None:
    pass


def _ecall(cpu: CPU, x: _Exec) -> None:
    x.dnpc = cpu.raise_intr(ECALL_CAUSE, x.pc)
    cpu.state.csr.mstatus = _push_prv(cpu.state.csr.mstatus)


def _mret(cpu: CPU, x: _Exec) -> None:
    x.dnpc = cpu.state.csr.mepc
    cpu.state.csr.mstatus = _pop_prv(cpu.state.csr.mstatus)


def _ebreak(cpu: CPU, x: _Exec) -> None:
    cpu._trap(x.pc, cpu.state.gpr[10])


def _invalid(cpu: CPU, x: _Exec) -> None:
    words = (cpu._mem_read(x.pc, 4), cpu._mem_read(x.pc + 4, 4))
    raise InvalidInstruction(x.pc, words)


def _mulhsu(cpu: CPU, x: _Exec) -> int:
    return ((to_signed(x.src1) * x.src2) & 0xFFFFFFFFFFFFFFFF) >> 32


_SPEC: list[tuple[str, str, _Type, _Handler]] = [
    ("??????? ????? ????? ??? ????? 01101 11", "lui", _Type.U, _set(lambda c, x: x.imm)),
    ("??????? ????? ????? ??? ????? 00101 11", "auipc", _Type.U, _set(lambda c, x: x.pc + x.imm)),
    ("??????? ????? ????? ??? ????? 11011 11", "jal", _Type.J, _jal),
    ("??????? ????? ????? 000 ????? 11001 11", "jalr", _Type.I, _jalr),
    ("??????? ????? ????? 000 ????? 11000 11", "beq", _Type.B, _branch(lambda a, b: a == b)),
    ("??????? ????? ????? 001 ????? 11000 11", "bne", _Type.B, _branch(lambda a, b: a != b)),
    ("??????? ????? ????? 100 ????? 11000 11", "blt", _Type.B,
     _branch(lambda a, b: to_signed(a) < to_signed(b))),
    ("??????? ????? ????? 101 ????? 11000 11", "bge", _Type.B,
     _branch(lambda a, b: to_signed(a) >= to_signed(b))),
    ("??????? ????? ????? 110 ????? 11000 11", "bltu", _Type.B, _branch(lambda a, b: a < b)),
    ("??????? ????? ????? 111 ????? 11000 11", "bgeu", _Type.B, _branch(lambda a, b: a >= b)),
    ("??????? ????? ????? 000 ????? 00000 11", "lb", _Type.I, _load(1, True)),
    ("??????? ????? ????? 001 ????? 00000 11", "lh", _Type.I, _load(2, True)),
    ("??????? ????? ????? 010 ????? 00000 11", "lw", _Type.I, _load(4, False)),
    ("??????? ????? ????? 100 ????? 00000 11", "lbu", _Type.I, _load(1, False)),
    ("??????? ????? ????? 101 ????? 00000 11", "lhu", _Type.I, _load(2, False)),
    ("??????? ????? ????? 000 ????? 01000 11", "sb", _Type.S, _store(1)),
    ("??????? ????? ????? 001 ????? 01000 11", "sh", _Type.S, _store(2)),
    ("??????? ????? ????? 010 ????? 01000 11", "sw", _Type.S, _store(4)),
    ("??????? ????? ????? 000 ????? 00100 11", "addi", _Type.I, _set(lambda c, x: x.src1 + x.imm)),
    ("??????? ????? ????? 010 ????? 00100 11", "slti", _Type.I,
     _set(lambda c, x: int(to_signed(x.src1) < to_signed(x.imm)))),
    ("??????? ????? ????? 011 ????? 00100 11", "sltiu", _Type.I,
     _set(lambda c, x: int(x.src1 < x.imm))),
    ("??????? ????? ????? 100 ????? 00100 11", "xori", _Type.I, _set(lambda c, x: x.src1 ^ x.imm)),
    ("??????? ????? ????? 110 ????? 00100 11", "ori", _Type.I, _set(lambda c, x: x.src1 | x.imm)),
    ("??????? ????? ????? 111 ????? 00100 11", "andi", _Type.I, _set(lambda c, x: x.src1 & x.imm)),
    ("000000? ????? ????? 001 ????? 00100 11", "slli", _Type.RI, _set(lambda c, x: x.src1 << x.imm)),
    ("000000? ????? ????? 101 ????? 00100 11", "srli", _Type.RI, _set(lambda c, x: x.src1 >> x.imm)),
    ("010000? ????? ????? 101 ????? 00100 11", "srai", _Type.RI,
     _set(lambda c, x: to_signed(x.src1) >> x.imm)),
    ("0000000 ????? ????? 000 ????? 01100 11", "add", _Type.R, _set(lambda c, x: x.src1 + x.src2)),
    ("0100000 ????? ????? 000 ????? 01100 11", "sub", _Type.R, _set(lambda c, x: x.src1 - x.src2)),
    ("0000000 ????? ????? 001 ????? 01100 11", "sll", _Type.R,
     _set(lambda c, x: x.src1 << bits(x.src2, 4, 0))),
    ("0000000 ????? ????? 010 ????? 01100 11", "slt", _Type.R,
     _set(lambda c, x: int(to_signed(x.src1) < to_signed(x.src2)))),
    ("0000000 ????? ????? 011 ????? 01100 11", "sltu", _Type.R,
     _set(lambda c, x: int(x.src1 < x.src2))),
    ("0000000 ????? ????? 100 ????? 01100 11", "xor", _Type.R, _set(lambda c, x: x.src1 ^ x.src2)),
    ("0000000 ????? ????? 101 ????? 01100 11", "srl", _Type.R,
     _set(lambda c, x: x.src1 >> bits(x.src2, 4, 0))),
    ("0100000 ????? ????? 101 ????? 01100 11", "sra", _Type.R,
     _set(lambda c, x: to_signed(x.src1) >> bits(x.src2, 4, 0))),
    ("0000000 ????? ????? 110 ????? 01100 11", "or", _Type.R, _set(lambda c, x: x.src1 | x.src2)),
    ("0000000 ????? ????? 111 ????? 01100 11", "and", _Type.R, _set(lambda c, x: x.src1 & x.src2)),
    ("0000001 ????? ????? 000 ????? 01100 11", "mul", _Type.R,
     _set(lambda c, x: to_signed(x.src1) * to_signed(x.src2))),
    ("0000001 ????? ????? 001 ????? 01100 11", "mulh", _Type.R,
     _set(lambda c, x: (to_signed(x.src1) * to_signed(x.src2)) >> 32)),
    ("0000001 ????? ????? 010 ????? 01100 11", "mulhsu", _Type.R, _set(_mulhsu)),
    ("0000001 ????? ????? 011 ????? 01100 11", "mulhu", _Type.R,
     _set(lambda c, x: (x.src1 * x.src2) >> 32)),
    ("0000001 ????? ????? 100 ????? 01100 11", "div", _Type.R, _set(_div)),
    ("0000001 ????? ????? 101 ????? 01100 11", "divu", _Type.R,
     _set(lambda c, x: x.src1 // x.src2 if x.src2 != 0 else -1)),
    ("0000001 ????? ????? 110 ????? 01100 11", "rem", _Type.R, _set(_rem)),
    ("0000001 ????? ????? 111 ????? 01100 11", "remu", _Type.R,
     _set(lambda c, x: x.src1 % x.src2 if x.src2 != 0 else x.src1)),
    ("??????? ????? ????? 001 ????? 11100 11", "csrrw", _Type.I,
     _csr(lambda x, old: x.src1, always_write_rd=False)),
    ("??????? ????? ????? 010 ????? 11100 11", "csrrs", _Type.I, _csr(lambda x, old: x.src1 | old)),
    ("??????? ????? ????? 011 ????? 11100 11", "csrrc", _Type.I, _csr(lambda x, old: ~x.src1 & old)),
    ("??????? ????? ????? 101 ????? 11100 11", "csrrwi", _Type.I, _csr(lambda x, old: _zimm(x))),
    ("??????? ????? ????? 110 ????? 11100 11", "csrrsi", _Type.I,
     _csr(lambda x, old: _zimm(x) | old)),
    ("??????? ????? ????? 111 ????? 11100 11", "csrrci", _Type.I,
     _csr(lambda x, old: ~_zimm(x) & old)),
    ("0000000 00000 00000 001 00000 00011 11", "fence.i", _Type.N, _nop),
    ("0000??? ????? 00000 000 00000 00011 11", "fence", _Type.N, _nop),
    ("0000000 00000 00000 000 00000 11100 11", "ecall", _Type.N, _ecall),
    ("0011000 00010 00000 000 00000 11100 11", "mret", _Type.N, _mret),
    ("0000000 00001 00000 000 00000 11100 11", "ebreak", _Type.N, _ebreak),
    ("??????? ????? ????? ??? ????? ????? ??", "inv", _Type.N, _invalid),
]

_TABLE = tuple(
    _Instruction(name, pattern_decode(pattern), kind, run)
    for pattern, name, kind, run in _SPEC
)

_WITH_SRC1 = {_Type.I, _Type.S, _Type.B, _Type.R, _Type.RI}
_WITH_SRC2 = {_Type.S, _Type.B, _Type.R}


class CPU:
    """Executes RV32IM instructions from a :class:`PhysicalMemory`.

    Out-of-memory loads read as zero and such stores are dropped.
    """

    def __init__(self, memory: PhysicalMemory) -> None:
        self.memory = memory
        self.state = CPUState(pc=memory.base)
        self.inst_count = 0
        self.trap: tuple[int, int] | None = None
        self.out = None

    def restart(self) -> None:
        """Set the pc to the reset vector and clear the zero register."""
        self.state.pc = self.memory.base
        self.state.gpr[0] = 0

    def csr_read(self, index: int) -> int:
        try:
            name = _CSR_FIELDS[index]
        except KeyError:
            raise ValueError(f"unsupported CSR: 0x{index:x}") from None
        return getattr(self.state.csr, name)

    def csr_write(self, index: int, value: int) -> None:
        try:
            name = _CSR_FIELDS[index]
        except KeyError:
            raise ValueError(f"unsupported CSR: 0x{index:x}") from None
        setattr(self.state.csr, name, to_unsigned(value))

    def raise_intr(self, no: int, epc: int) -> int:
        """Record a trap with cause ``no`` at ``epc`` and return the handler address."""
        self.state.csr.mepc = to_unsigned(epc)
        self.state.csr.mcause = to_unsigned(no)
        return self.state.csr.mtvec

    def _range_in_pmem(self, addr: int, length: int) -> bool:
        return self.memory.in_pmem(addr) and self.memory.in_pmem(addr + length - 1)

    def _mem_read(self, addr: int, length: int) -> int:
        addr = to_unsigned(addr)
        if self._range_in_pmem(addr, length):
            return self.memory.read(addr, length)
        return 0

    def _mem_write(self, addr: int, length: int, data: int) -> None:
        addr = to_unsigned(addr)
        if self._range_in_pmem(addr, length):
            self.memory.write(addr, length, data)

    def _trap(self, pc: int, code: int) -> None:
        self.trap = (pc, code)
        print("nemu end", file=self.out)

    def exec_once(self) -> str:
        """Fetch, decode and execute one instruction; return its mnemonic."""
        pc = self.state.pc
        inst = self._mem_read(pc, 4)
        x = _Exec(pc=pc, inst=inst, dnpc=pc + 4)
        entry = next(e for e in _TABLE if e.pattern.matches(inst))
        x.rd = bits(inst, 11, 7)
        if entry.kind in _WITH_SRC1:
            x.src1 = self.state.gpr[bits(inst, 19, 15)]
        if entry.kind in _WITH_SRC2:
            x.src2 = self.state.gpr[bits(inst, 24, 20)]
        x.imm = _imm(inst, entry.kind)
        entry.run(self, x)
        self.state.gpr[0] = 0
        self.state.pc = to_unsigned(x.dnpc)
        return entry.name

    def execute(self, n: int) -> None:
        for _ in range(n):
            self.exec_once()
            self.inst_count += 1

    def reg_value(self, name: str) -> int:
        return self.state.reg_value(name)

    def reg_display(self) -> None:
        for name in REGS:
            value = self.state.reg_value(name)
            print(f"{name}\t0x{value:08x}\t{value}", file=self.out)