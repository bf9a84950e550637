[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rvsim"
version = "0.1.0"
description = "A RISC-V (RV32IM) instruction-set simulator with memory-mapped devices, differential testing and an interactive debugger"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "riscv",
    "rv32",
    "emulator",
    "simulator",
    "debugger",
    "difftest",
    "mmio",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
    "Topic :: Software Development :: Debuggers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
rvsim = "rvsim.sdb:main"

[tool.hatch.build.targets.wheel]
packages = ["rvsim"]

[tool.pytest.ini_options]
addopts = "-ra"
