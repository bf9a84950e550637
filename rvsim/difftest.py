"""Differential testing of a CPU under test against a reference interpreter."""

from __future__ import annotations

import sys
from typing import Optional, TextIO

from .isa import CPU, REGS, CPUState
from .memory import PhysicalMemory

CSR_NAMES = ("mepc", "mstatus", "mcause", "mtvec")

_ANSI_BG_RED = "\33[1;41m"
_ANSI_NONE = "\33[0m"


class ReferenceModel:
    """A reference interpreter with its own memory, driven through copy and exec calls."""

    def __init__(self, base: int, size: int, seed=None) -> None:
        self.memory = PhysicalMemory(base, size)
        self.memory.fill_random(seed)
        self.cpu = CPU(self.memory)
        self.cpu.restart()

    def memcpy_to_ref(self, addr: int, data: bytes) -> None:
        """Copy ``data`` into the reference memory at guest address ``addr``."""
        self.memory.write_bytes(addr, data)

    def memcpy_from_ref(self, addr: int, n: int) -> bytes:
        """Return ``n`` bytes of reference memory starting at ``addr``."""
        return self.memory.read_bytes(addr, n)

    def regcpy_to_ref(self, state: CPUState) -> None:
        """Replace the reference register state with a copy of ``state``."""
        self.cpu.state = CPUState.from_bytes(state.to_bytes())

    def regcpy_from_ref(self) -> CPUState:
        """Return a copy of the reference register state."""
        return CPUState.from_bytes(self.cpu.state.to_bytes())

    def exec(self, n: int) -> None:
        """Execute ``n`` instructions on the reference."""
        self.cpu.execute(n)


class Difftest:
    """Compares the state of a CPU under test with a :class:`ReferenceModel`.

    On creation the whole of ``memory`` is copied to the reference and its
    registers are set to zero with the pc at the start of memory.
    """

    def __init__(self, ref: ReferenceModel, memory: PhysicalMemory) -> None:
        self.ref = ref
        self.memory = memory
        self.out: Optional[TextIO] = None
        self.is_skip_ref = False
        self.skip_dut_nr_inst = 0
        self.pc = memory.base
        self.mismatches: list[str] = []
        ref.memcpy_to_ref(memory.base, bytes(memory.data))
        ref.regcpy_to_ref(CPUState(pc=memory.base))

    def _print(self, text: str) -> None:
        print(text, file=sys.stdout if self.out is None else self.out)

    def sync(self, state: CPUState) -> None:
        """Copy the registers of the CPU under test to the reference."""
        self.ref.regcpy_to_ref(state)

    def skip_ref(self) -> None:
        """Mark the current instruction as one the reference cannot reproduce."""
        self.is_skip_ref = True
        self.skip_dut_nr_inst = 0

    def skip_dut(self, nr_ref: int, nr_dut: int) -> None:
        """Let the reference run ``nr_ref`` instructions ahead; remember ``nr_dut`` to skip."""
        self.skip_dut_nr_inst += nr_dut
        if nr_ref > 0:
            self.ref.exec(nr_ref)

    def check_regs(self, ref_state: CPUState, dut_state: CPUState) -> bool:
        """Return True if the states agree; report each difference otherwise."""
        mismatches = [
            f"{name}: right = 0x{right:08x}, wrong = 0x{wrong:08x}"
            for name, right, wrong in zip(REGS, ref_state.gpr, dut_state.gpr)
            if right != wrong
        ]
        if ref_state.pc != dut_state.pc:
            mismatches.append(
                f"pc: right = 0x{ref_state.pc:08x}, wrong = 0x{dut_state.pc:08x}"
            )
        for name in CSR_NAMES:
            right = getattr(ref_state.csr, name)
            wrong = getattr(dut_state.csr, name)
            if right != wrong:
                mismatches.append(f"{name}: right = 0x{right:08x}, wrong = 0x{wrong:08x}")
        self.mismatches = mismatches
        for line in mismatches:
            self._print(f"difference at pc = 0x{dut_state.pc:08x}, {line}")
        return not mismatches

    def check_mem(self, ref_memory: bytes) -> bool:
        """Return True if ``ref_memory`` equals the memory under test byte for byte."""
        if len(ref_memory) != len(self.memory.data):
            raise ValueError(
                f"reference memory has {len(ref_memory)} bytes, "
                f"expected {len(self.memory.data)}"
            )
        first = next(
            (i for i, (right, wrong) in enumerate(zip(ref_memory, self.memory.data))
             if right != wrong),
            None,
        )
        if first is None:
            return True
        right, wrong = ref_memory[first], self.memory.data[first]
        self._print(
            f"{_ANSI_BG_RED}memory of NPC is different before executing instruction at "
            f"pc = 0x{self.pc:08x}, mem[{first:x}] right = 0x{right:08x}, "
            f"wrong = 0x{wrong:08x}, diff = 0x{right ^ wrong:08x}{_ANSI_NONE}"
        )
        return False

    def step(self, dut_state: CPUState) -> bool:
        """Check ``dut_state`` against the reference, then advance the reference one step."""
        self.pc = dut_state.pc
        ok = self.check_regs(self.ref.regcpy_from_ref(), dut_state)
        self.ref.exec(1)
        return ok