import io

import pytest

from rvsim.difftest import Difftest, ReferenceModel
from rvsim.isa import CPU
from rvsim.memory import PhysicalMemory
from rvsim.simulator import (
    ANSI_FG_RED,
    RunState,
    Simulator,
    ansi_fmt,
)

BASE = 0x80000000
SIZE = 0x1000
EBREAK = 0x00100073


def addi(rd, rs1, imm):
    return ((imm & 0xFFF) << 20) | (rs1 << 15) | (rd << 7) | 0x13


def program(*words):
    return b"".join(w.to_bytes(4, "little") for w in words)


def make_sim(*words, with_difftest=False, devices=None):
    memory = PhysicalMemory(BASE, SIZE)
    memory.write_bytes(BASE, program(*words))
    cpu = CPU(memory)
    difftest = None
    if with_difftest:
        difftest = Difftest(ReferenceModel(BASE, SIZE, seed=5), memory)
        difftest.out = io.StringIO()
    out = io.StringIO()
    return Simulator(cpu, difftest, devices, out), out


class FakeDevices:
    def __init__(self, quit_after):
        self.calls = 0
        self.quit_after = quit_after
        self.is_running = None
        self.on_disk_load = None

    def update(self):
        self.calls += 1
        return self.calls >= self.quit_after


def test_ansi_fmt():
    assert ansi_fmt("x", ANSI_FG_RED) == "\33[1;31mx\33[0m"


def test_good_trap():
    sim, out = make_sim(addi(10, 0, 0), EBREAK)
    sim.cpu_exec(-1)
    assert sim.sim_state.state is RunState.END
    assert sim.sim_state.halt_ret == 0
    assert sim.sim_state.halt_pc == BASE + 4
    text = out.getvalue()
    assert "HIT GOOD TRAP" in text
    assert "total guest instructions = 1" in text


def test_bad_trap():
    sim, out = make_sim(addi(10, 0, 1), EBREAK)
    sim.cpu_exec(-1)
    assert sim.sim_state.halt_ret == 1
    assert "HIT BAD TRAP" in out.getvalue()


def test_exec_after_end_is_refused():
    sim, out = make_sim(EBREAK)
    sim.cpu_exec(-1)
    sim.cpu_exec(1)
    assert "Program execution has ended" in out.getvalue()
    assert sim.sim_state.state is RunState.END


def test_single_step_stops():
    sim, _ = make_sim(addi(10, 0, 3), addi(11, 0, 4), EBREAK)
    sim.cpu_exec(1)
    assert sim.sim_state.state is RunState.STOP
    assert sim.reg_value("pc") == BASE + 4
    assert sim.reg_value("a0") == 3
    assert sim.inst_count == 1


def test_test_break():
    sim, _ = make_sim(EBREAK)
    assert sim.test_break() is True
    sim2, _ = make_sim(addi(1, 0, 1))
    assert sim2.test_break() is False


def test_reg_value_unknown():
    sim, _ = make_sim(EBREAK)
    with pytest.raises(KeyError):
        sim.reg_value("xyz")


def test_reg_display():
    sim, out = make_sim(addi(10, 0, 3), EBREAK)
    sim.cpu_exec(1)
    sim.reg_display()
    lines = out.getvalue().splitlines()
    assert "gpr[10](a0) = 0x3" in lines
    assert sum(line.startswith("gpr[") for line in lines) == 32


def test_difftest_agreement():
    sim, out = make_sim(addi(10, 0, 0), addi(11, 0, 2), EBREAK, with_difftest=True)
    sim.cpu_exec(-1)
    assert sim.sim_state.state is RunState.END
    assert sim.difftest.ref.regcpy_from_ref() == sim.cpu.state


def test_difftest_mismatch_aborts():
    sim, out = make_sim(addi(10, 0, 1), addi(10, 0, 0), EBREAK, with_difftest=True)
    sim.difftest.ref.memcpy_to_ref(BASE, program(addi(10, 0, 7)))
    sim.cpu_exec(-1)
    assert sim.sim_state.state is RunState.ABORT
    assert sim.sim_state.halt_pc == BASE + 4
    text = out.getvalue()
    assert "ABORT" in text
    assert "gpr[10](a0)" in text


def test_invalid_instruction_aborts():
    sim, out = make_sim(0)
    sim.cpu_exec(-1)
    assert sim.sim_state.state is RunState.ABORT
    assert sim.sim_state.halt_pc == BASE
    assert "invalid opcode" in out.getvalue()


def test_device_quit():
    devices = FakeDevices(quit_after=2)
    sim, out = make_sim(addi(1, 0, 1), addi(2, 0, 2), addi(3, 0, 3), EBREAK,
                        devices=devices)
    assert devices.is_running() is False
    sim.cpu_exec(-1)
    assert sim.sim_state.state is RunState.QUIT
    assert sim.inst_count == 2
    assert "total guest instructions = 2" in out.getvalue()