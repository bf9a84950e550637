import io

import pytest

from rvsim.difftest import Difftest, ReferenceModel
from rvsim.isa import CSR, CPUState
from rvsim.memory import PhysicalMemory

BASE = 0x80000000
SIZE = 0x1000


def addi(rd, rs1, imm):
    return ((imm & 0xFFF) << 20) | (rs1 << 15) | (rd << 7) | 0x13


def program(*words):
    return b"".join(w.to_bytes(4, "little") for w in words)


def make_difftest(*words):
    memory = PhysicalMemory(BASE, SIZE)
    memory.write_bytes(BASE, program(*words))
    ref = ReferenceModel(BASE, SIZE, seed=3)
    dt = Difftest(ref, memory)
    dt.out = io.StringIO()
    return dt, memory


def test_memcpy_round_trip():
    ref = ReferenceModel(BASE, SIZE, seed=1)
    ref.memcpy_to_ref(BASE + 16, b"\x01\x02\x03")
    assert ref.memcpy_from_ref(BASE + 16, 3) == b"\x01\x02\x03"


def test_same_seed_gives_same_memory():
    a = ReferenceModel(BASE, SIZE, seed=7)
    b = ReferenceModel(BASE, SIZE, seed=7)
    assert a.memcpy_from_ref(BASE, SIZE) == b.memcpy_from_ref(BASE, SIZE)


def test_regcpy_round_trip_and_copy():
    ref = ReferenceModel(BASE, SIZE, seed=1)
    state = CPUState(pc=BASE + 8, csr=CSR(mepc=1, mstatus=2, mcause=3, mtvec=4))
    state.gpr[5] = 0x1234
    ref.regcpy_to_ref(state)
    copied = ref.regcpy_from_ref()
    assert copied == state
    copied.gpr[5] = 0
    assert ref.regcpy_from_ref().gpr[5] == 0x1234


def test_reference_exec():
    ref = ReferenceModel(BASE, SIZE, seed=1)
    ref.memcpy_to_ref(BASE, program(addi(10, 0, 5)))
    ref.regcpy_to_ref(CPUState(pc=BASE))
    ref.exec(1)
    state = ref.regcpy_from_ref()
    assert state.gpr[10] == 5
    assert state.pc == BASE + 4


def test_init_copies_memory_and_registers():
    dt, memory = make_difftest(addi(10, 0, 5))
    assert dt.ref.memcpy_from_ref(BASE, SIZE) == bytes(memory.data)
    assert dt.ref.regcpy_from_ref() == CPUState(pc=BASE)


def test_step_matching_advances_reference():
    dt, _ = make_difftest(addi(10, 0, 5))
    assert dt.step(CPUState(pc=BASE)) is True
    assert dt.ref.regcpy_from_ref().pc == BASE + 4
    assert dt.mismatches == []


def test_step_mismatch_reports_register():
    dt, _ = make_difftest(addi(10, 0, 5))
    dut = CPUState(pc=BASE)
    dut.gpr[10] = 9
    assert dt.step(dut) is False
    assert any(m.startswith("a0") for m in dt.mismatches)
    assert "a0" in dt.out.getvalue()


def test_check_regs_pc_and_csr():
    dt, _ = make_difftest()
    ref_state = CPUState(pc=BASE)
    assert dt.check_regs(ref_state, CPUState(pc=BASE + 4)) is False
    assert dt.mismatches[0].startswith("pc")
    dut = CPUState(pc=BASE, csr=CSR(mtvec=BASE))
    assert dt.check_regs(ref_state, dut) is False
    assert dt.mismatches[0].startswith("mtvec")
    assert dt.check_regs(ref_state, CPUState(pc=BASE)) is True


def test_check_mem():
    dt, memory = make_difftest(addi(10, 0, 5))
    assert dt.check_mem(bytes(memory.data)) is True
    changed = bytearray(memory.data)
    changed[20] ^= 0xFF
    assert dt.check_mem(bytes(changed)) is False
    assert "memory of NPC is different" in dt.out.getvalue()


def test_check_mem_wrong_length():
    dt, _ = make_difftest()
    with pytest.raises(ValueError):
        dt.check_mem(b"\x00")


def test_sync_copies_state():
    dt, _ = make_difftest()
    state = CPUState(pc=BASE + 12)
    state.gpr[1] = 42
    dt.sync(state)
    assert dt.ref.regcpy_from_ref() == state


def test_skip_ref_and_skip_dut():
    dt, _ = make_difftest(addi(1, 0, 1), addi(2, 0, 2))
    dt.skip_dut(2, 3)
    assert dt.skip_dut_nr_inst == 3
    assert dt.ref.regcpy_from_ref().pc == BASE + 8
    dt.skip_ref()
    assert dt.is_skip_ref is True
    assert dt.skip_dut_nr_inst == 0