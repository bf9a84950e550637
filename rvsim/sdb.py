"""Interactive debugger for the simulator and the command-line entry point."""

from __future__ import annotations

import argparse
import re
import sys
from typing import Iterable, Iterator, Optional, TextIO

from .bits import WORD_MASK, to_signed
from .difftest import Difftest, ReferenceModel
from .expr import ExprError, evaluate
from .isa import CPU
from .memory import DEFAULT_MBASE, AddressOutOfBounds, PhysicalMemory
from .simulator import ANSI_FG_CYAN, ANSI_FG_GREEN, RunState, Simulator, ansi_fmt

DEFAULT_MSIZE = 0x8000000
PROMPT = "(sim) "

_COMMANDS = (
    ("help", "Display informations about all supported commands"),
    ("c", "Continue the execution of the program"),
    ("q", "Exit NEMU"),
    ("si", "Excute several steps"),
    ("info", "Print the info of rigisters(r)"),
    ("x", "Scan the mem"),
    ("p", "Calc expressions"),
)

_ATOI = re.compile(r"\s*([+-]?\d+)")


def _atoi(text: str) -> int:
    match = _ATOI.match(text)
    return int(match.group(1)) if match else 0


def _words(args: Optional[str]) -> list[str]:
    return [word for word in (args or "").split(" ") if word]


def _read_lines() -> Iterator[str]:
    try:
        import readline  # noqa: F401  (enables line editing and history for input())
    except ImportError:
        pass
    while True:
        try:
            yield input(PROMPT)
        except EOFError:
            return


class Debugger:
    """A command interpreter over a :class:`Simulator` and its memory."""

    def __init__(self, simulator: Simulator, memory: PhysicalMemory,
                 out: Optional[TextIO] = None, batch: bool = False) -> None:
        self.simulator = simulator
        self.memory = memory
        self.out = out
        self.batch = batch
        handlers = {
            "help": self._cmd_help,
            "c": self._cmd_c,
            "q": self._cmd_q,
            "si": self._cmd_si,
            "info": self._cmd_info,
            "x": self._cmd_x,
            "p": self._cmd_p,
        }
        self.commands = {name: (description, handlers[name]) for name, description in _COMMANDS}

    def _print(self, text: str) -> None:
        print(text, file=sys.stdout if self.out is None else self.out)

    def _paddr_read(self, addr: int) -> int:
        try:
            return self.memory.read(addr & WORD_MASK, 4)
        except AddressOutOfBounds as exc:
            self._print(str(exc))
            return 0

    def _expr(self, text: str) -> int:
        return evaluate(text, self.simulator.reg_value, self._paddr_read)

    def _cmd_help(self, args: Optional[str]) -> bool:
        words = _words(args)
        if not words:
            for name, (description, _) in self.commands.items():
                self._print(f"{name} - {description}")
        elif words[0] in self.commands:
            self._print(f"{words[0]} - {self.commands[words[0]][0]}")
        else:
            self._print(f"Unknown command '{words[0]}'")
        return True

    def _cmd_c(self, args: Optional[str]) -> bool:
        self.simulator.cpu_exec(-1)
        return True

    def _cmd_q(self, args: Optional[str]) -> bool:
        self.simulator.sim_state.state = RunState.QUIT
        return False

    def _cmd_si(self, args: Optional[str]) -> bool:
        words = _words(args)
        self.simulator.cpu_exec(_atoi(words[0]) if words else 1)
        return True

    def _cmd_info(self, args: Optional[str]) -> bool:
        words = _words(args)
        if words and words[0] == "r":
            self.simulator.reg_display()
        else:
            self._print("Usage: info r")
        return True

    def _cmd_x(self, args: Optional[str]) -> bool:
        words = _words(args)
        if len(words) < 2:
            self._print("Usage: x n addr")
            return True
        count = _atoi(words[0])
        try:
            addr = self._expr(words[1])
        except ExprError as exc:
            self._print(str(exc))
            addr = 0
        if not self.memory.in_pmem(addr):
            self._print("addr out of scope!")
            return True
        for i in range(count):
            cell = (addr + 4 * i) & WORD_MASK
            self._print(f"0x{cell:08x}:\t0x{self._paddr_read(cell):08x}")
        return True

    def _cmd_p(self, args: Optional[str]) -> bool:
        if args is None:
            self._print("Usage: p [expr]")
            return True
        try:
            value = self._expr(args)
        except ExprError as exc:
            self._print(str(exc))
            self._print("p: wrong expr!")
            return True
        self._print(f"DEC: {to_signed(value)}")
        self._print(f"HEX: 0x{value:08x}")
        return True

    def execute(self, line: str) -> bool:
        """Run one command line; return False when the debugger should stop."""
        stripped = line.lstrip(" ")
        if not stripped:
            return True
        cmd, _, rest = stripped.partition(" ")
        args = rest or None
        entry = self.commands.get(cmd)
        if entry is None:
            self._print(f"Unknown command '{cmd}'")
            return True
        return entry[1](args)

    def mainloop(self, lines: Optional[Iterable[str]] = None) -> None:
        """Read commands from ``lines`` (the terminal by default) until quit or end of input.

        In batch mode the program simply runs to the end.
        """
        if self.batch:
            self._cmd_c(None)
            return
        for line in _read_lines() if lines is None else lines:
            if not self.execute(line):
                return


def _int(text: str) -> int:
    return int(text, 0)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="rvsim", description="Run a RISC-V binary image.")
    parser.add_argument("image", help="binary image loaded at the start of memory")
    parser.add_argument("-b", "--batch", action="store_true", help="run without prompting")
    parser.add_argument("--mbase", type=_int, default=DEFAULT_MBASE, help="memory base address")
    parser.add_argument("--msize", type=_int, default=DEFAULT_MSIZE, help="memory size in bytes")
    parser.add_argument("--no-difftest", action="store_true",
                        help="do not check against the reference model")
    args = parser.parse_args(argv)

    print(ansi_fmt(f"Load img: {args.image}", ANSI_FG_GREEN))
    try:
        memory = PhysicalMemory(args.mbase, args.msize)
        memory.load_image(args.image)
    except (OSError, ValueError) as exc:
        print(f"rvsim: {exc}", file=sys.stderr)
        return 1

    cpu = CPU(memory)
    difftest = None
    if not args.no_difftest:
        difftest = Difftest(ReferenceModel(args.mbase, args.msize), memory)
        print(ansi_fmt(f"Differential testing: {ansi_fmt('ON', ANSI_FG_GREEN)}", ANSI_FG_CYAN))
    simulator = Simulator(cpu, difftest)
    cpu.restart()

    Debugger(simulator, memory, batch=args.batch).mainloop()

    print(ansi_fmt("Testcase end!", ANSI_FG_GREEN))
    return int(simulator.sim_state.state is RunState.ABORT)


if __name__ == "__main__":
    raise SystemExit(main())