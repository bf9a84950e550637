"""Run loop that steps a CPU, checks it against a reference and stops at ebreak."""

from __future__ import annotations

import enum
import sys
from dataclasses import dataclass
from typing import Optional, TextIO

from .isa import REGS, InvalidInstruction

ANSI_FG_BLACK = "\33[1;30m"
ANSI_FG_RED = "\33[1;31m"
ANSI_FG_GREEN = "\33[1;32m"
ANSI_FG_YELLOW = "\33[1;33m"
ANSI_FG_BLUE = "\33[1;34m"
ANSI_FG_MAGENTA = "\33[1;35m"
ANSI_FG_CYAN = "\33[1;36m"
ANSI_FG_WHITE = "\33[1;37m"
ANSI_BG_BLACK = "\33[1;40m"
ANSI_BG_RED = "\33[1;41m"
ANSI_BG_GREEN = "\33[1;42m"
ANSI_BG_YELLOW = "\33[1;43m"
ANSI_BG_BLUE = "\33[1;44m"
ANSI_BG_MAGENTA = "\33[1;35m"
ANSI_BG_CYAN = "\33[1;46m"
ANSI_BG_WHITE = "\33[1;47m"
ANSI_NONE = "\33[0m"

EBREAK = 0x00100073
_COUNT_LIMIT = 1 << 32


def ansi_fmt(text: str, color: str) -> str:
    """Wrap ``text`` in an ANSI colour sequence and a reset."""
    return f"{color}{text}{ANSI_NONE}"


class RunState(enum.Enum):
    RUNNING = 0
    STOP = 1
    END = 2
    ABORT = 3
    QUIT = 4


@dataclass
class SimState:
    state: RunState = RunState.STOP
    halt_pc: int = 0
    halt_ret: int = 0


class Simulator:
    """Drives ``cpu`` one instruction per cycle.

    ``cpu`` needs ``state``, ``memory`` and ``exec_once()``.  With a
    ``difftest`` every committed instruction is checked against the
    reference; with ``devices`` their ``update()`` runs each cycle.
    """

    def __init__(self, cpu, difftest=None, devices=None,
                 out: Optional[TextIO] = None) -> None:
        self.cpu = cpu
        self.difftest = difftest
        self.devices = devices
        self.out = out
        self.sim_state = SimState()
        self.inst_count = 0
        self._uncache_pre = False
        if devices is not None:
            devices.is_running = lambda: self.sim_state.state is RunState.RUNNING
            if difftest is not None:
                devices.on_disk_load = difftest.ref.memcpy_to_ref

    def _print(self, text: str) -> None:
        print(text, file=sys.stdout if self.out is None else self.out)

    def _log(self, text: str) -> None:
        self._print(ansi_fmt(text, ANSI_FG_CYAN))

    def test_break(self) -> bool:
        """Return True if the instruction at the current pc is ``ebreak``."""
        pc = self.cpu.state.pc
        memory = self.cpu.memory
        if not (memory.in_pmem(pc) and memory.in_pmem(pc + 3)):
            return False
        return memory.read(pc, 4) == EBREAK

    def _commit(self) -> None:
        st = self.sim_state
        if self.difftest is not None:
            if self._uncache_pre:
                self.difftest.sync(self.cpu.state)
            if not self.difftest.step(self.cpu.state):
                st.state = RunState.ABORT
                st.halt_pc = self.cpu.state.pc
                self.reg_display()
        self.inst_count += 1

    def cpu_exec(self, n: int) -> None:
        """Execute up to ``n`` instructions; ``n`` is taken modulo 2**32, so -1 runs on."""
        st = self.sim_state
        if st.state in (RunState.END, RunState.ABORT, RunState.QUIT):
            self._print(
                "Program execution has ended. To restart the program, exit NPC and run again."
            )
            return
        st.state = RunState.RUNNING

        for _ in range(n % _COUNT_LIMIT):
            if self.test_break():
                st.halt_pc = self.cpu.state.pc
                st.halt_ret = self.cpu.state.gpr[10]
                st.state = RunState.END
                break
            try:
                self._commit()
                self.cpu.exec_once()
            except InvalidInstruction as exc:
                self._print(str(exc))
                st.state = RunState.ABORT
                st.halt_pc = exc.pc
            if self.difftest is not None:
                self._uncache_pre = self.difftest.is_skip_ref
                self.difftest.is_skip_ref = False
            if self.devices is not None and self.devices.update():
                st.state = RunState.QUIT
            if st.state is not RunState.RUNNING:
                break

        if st.state is RunState.RUNNING:
            st.state = RunState.STOP
        elif st.state in (RunState.END, RunState.ABORT):
            if st.state is RunState.ABORT:
                label = ansi_fmt("ABORT", ANSI_FG_RED)
            elif st.halt_ret == 0:
                label = ansi_fmt("HIT GOOD TRAP", ANSI_FG_GREEN)
            else:
                label = ansi_fmt("HIT BAD TRAP", ANSI_FG_RED)
            self._log(f"sim: {label} at pc = 0x{st.halt_pc:08x}")
            self.statistic()
        elif st.state is RunState.QUIT:
            self.statistic()

    def reg_value(self, name: str) -> int:
        """Return ``pc`` or a register by ABI name; raise KeyError for unknown names."""
        return self.cpu.state.reg_value(name)

    def reg_display(self) -> None:
        for index, (name, value) in enumerate(zip(REGS, self.cpu.state.gpr)):
            self._print(f"gpr[{index}]({name}) = 0x{value:x}")

    def statistic(self) -> None:
        self._log(f"total guest instructions = {self.inst_count}")