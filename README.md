# rvsim

`rvsim` is a simulator for 32-bit RISC-V programs. It covers the base integer
set, multiply/divide, and the machine-mode CSRs `mstatus`, `mtvec`, `mepc` and
`mcause`. It loads a raw binary image into physical memory and runs it. It
stops when the program reaches `ebreak`. At that point it reports a good trap
if `a0` is zero and a bad trap otherwise.

Alongside the core it offers:

- a memory-mapped I/O bus (`rvsim.mmio`);
- guest devices on that bus (`rvsim.devices`): a serial port, a real-time
  clock, a keyboard queue, a disk controller and a frame buffer;
- differential testing (`rvsim.difftest`), which runs a reference model in
  lock step with the simulated CPU and reports every register that disagrees;
- a small debugger with expression evaluation (`rvsim.sdb`, `rvsim.expr`).

## Installation

```
pip install .
```

The package needs nothing beyond the Python standard library, on Python 3.10
or later. To run the test suite:

```
pip install ".[test]"
pytest
```

## Running a program

```
rvsim program.bin
```

The image is copied to the start of physical memory. Then the debugger prompt
`(sim)` appears.

Options:

| option              | meaning                                               |
|---------------------|-------------------------------------------------------|
| `-b`, `--batch`     | run to the end without prompting                      |
| `--mbase ADDR`      | memory base address (default `0x80000000`)            |
| `--msize BYTES`     | memory size (default `0x8000000`)                     |
| `--no-difftest`     | do not check each instruction against the reference   |

Debugger commands:

| command      | effect                                              |
|--------------|-----------------------------------------------------|
| `help [cmd]` | list the commands, or describe one                  |
| `c`          | continue until the program ends                     |
| `q`          | quit                                                |
| `si [N]`     | execute N instructions (default 1)                  |
| `info r`     | print all general-purpose registers                 |
| `x N EXPR`   | print N words of memory starting at address EXPR    |
| `p EXPR`     | evaluate an expression, printing decimal and hex    |

Expressions can use the following:

- decimal and `0x` hexadecimal numbers;
- register names (`$0`, `ra`, `sp`, `a0`, `t3`, `pc`, ...);
- the operators `+ - * /` and `==`;
- parentheses;
- a `*` at the start of an expression, or in front of a hex number, which
  reads a word from memory.

```
(sim) p a0 + 4
(sim) p *0x80000000
(sim) x 4 pc
```

The exit status is 1 when the run was aborted, for example by a difftest
mismatch or an invalid instruction. Otherwise it is 0.

## Using the library

```python
from rvsim.memory import PhysicalMemory
from rvsim.isa import CPU

memory = PhysicalMemory(0x80000000, 0x8000000)
memory.load_image("program.bin")

cpu = CPU(memory)
cpu.restart()
cpu.execute(100)
print(hex(cpu.reg_value("a0")))
```

Instruction patterns can be decoded and matched directly:

```python
from rvsim.decode import pattern_decode

addi = pattern_decode("??????? ????? ????? 000 ????? 00100 11")
addi.matches(0x00500093)   # addi x1, x0, 5 -> True
```

Debugger expressions can be evaluated against any source of register and
memory values:

```python
from rvsim.expr import evaluate

evaluate("(1 + 2) * 3", lambda name: 0, lambda addr: 0)   # 9
```

Devices are attached to an `MMIOBus` through `Devices`. It takes a mapping of
device names to guest addresses: `"serial"`, `"rtc"`, `"keyboard"`,
`"vga_ctl"`, `"fb"`, `"ffb"`, and `"disk_ctl"` when a disk image is given.
Pass it to `Simulator` so that `Devices.update()` runs every cycle.

## What it does not do

- The `rvsim` command does not attach any devices. To use them, build the
  bus, the `Devices` and the `Simulator` in Python.
- There is no display window. `VGA.update_screen()` copies the frame buffer
  into `VGA.frame`; a program has to draw that itself.
- Host key and quit events are not collected from the keyboard or a window.
  They are pushed into `Devices.events` by the program that embeds the
  simulator.
- There is no instruction trace and no disassembler.