#!/usr/bin/env python3
"""
CLI tests: launcher exit codes, trace and report text, disassembly, and
the interactive monitor.

    python -m pytest test_cli.py
"""
import io
import logging

import pytest

from cli import (main, disasm, format_report, M88kMonitor, TraceRenderer,
                 EXIT_OK, EXIT_ERROR)
from asm import assemble
from system import MC88100System, Statistics


LOAD_HALT = "14200004\n00000000\n"

COUNTDOWN = """
        lda  r1, r0, 5
loop:
        sub  r1, r1, 1
        bcnd ne0, r1, loop
        halt
"""


def make_monitor(source: str) -> M88kMonitor:
    words = assemble(source)
    system = MC88100System()
    system.load_words(words)
    return M88kMonitor(system, words)


# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("word, text", [
    (0x00000000, "halt"),
    (0x14200004, "ld   r1,r0,4"),
    (0x24430010, "st   r2,r3,10"),
    (0xF4227003, "add  r1,r2,r3"),
    (0xF4641605, "ld   r3,r4[r5]"),
    (0xF0229004, "ext  r1,r2,4"),
    (0xC0000002, "br 2"),
    (0xC000000A, "br a (= decimal 10)"),
    (0xC3FFFFFF, "br 3ffffff (= decimal -1)"),
    (0xE8410002, "bcnd eq0,r1,2"),
    (0xE901FFFE, "bcnd mask=8,r1,fffe (= decimal -2)"),
    (0x5C200004, ".word 5c200004"),
])
def test_disasm(word, text):
    assert disasm(word) == text


def test_disasm_matches_assembler():
    for line, text in (("lda r7, r2[r3]", "lda  r7,r2[r3]"),
                       ("extu r1, r2, 31", "extu r1,r2,1f"),
                       ("bcnd always, r9, 1", "bcnd always,r9,1")):
        assert disasm(assemble(line)[0]) == text


# ---------------------------------------------------------------------------
#  Report
# ---------------------------------------------------------------------------

def test_report_with_cache():
    stats = Statistics(2, 1, 0, 0, 0, {"reads": 1, "writes": 0, "hits": 0,
                                       "misses": 1, "write_backs": 0})
    assert format_report(stats).split("\n") == [
        "execution statistics (in decimal):",
        "  instruction fetches = 2",
        "  data words read     = 1",
        "  data words written  = 0",
        "  branches executed   = 0",
        "  branches taken      = 0",
        "cache statistics (in decimal):",
        "  cache reads       = 1",
        "  cache writes      = 0",
        "  cache hits        = 0",
        "  cache misses      = 1",
        "  cache write backs = 0",
    ]


def test_report_taken_percentage():
    text = format_report(Statistics(12, 0, 0, 5, 4))
    assert "  branches taken      = 4 (80.0%)" in text
    assert "cache statistics" not in text


def test_report_after_run(run_asm):
    system = run_asm(COUNTDOWN, cache_enabled=False)
    text = format_report(system.statistics())
    assert "  instruction fetches = 12" in text
    assert "  branches taken      = 4 (80.0%)" in text
    assert "cache statistics" not in text


def test_trace_renderer_register_dump(capsys):
    seen = []
    system = MC88100System(on_trace=TraceRenderer(verbose=2))
    system.load_words([0x70200001, 0])
    system.cpu.on_halt = lambda: seen.append(True)
    system.run()
    out = capsys.readouterr().out
    assert out.count("  r0: 00000000") == 2
    assert "  r1: 00000001" in out
    assert seen == [True]


# ---------------------------------------------------------------------------
#  Launcher
# ---------------------------------------------------------------------------

def test_run_report(program_file, capsys):
    assert main([program_file(LOAD_HALT)]) == EXIT_OK
    out = capsys.readouterr().out
    assert out.startswith("execution statistics (in decimal):")
    assert "  instruction fetches = 2" in out
    assert "  data words read     = 1" in out
    assert "  cache misses      = 1" in out


def test_run_from_stdin(monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO(LOAD_HALT))
    assert main([]) == EXIT_OK
    assert "  instruction fetches = 2" in capsys.readouterr().out


def test_trace(program_file, capsys):
    assert main(["-t", program_file(LOAD_HALT)]) == EXIT_OK
    lines = capsys.readouterr().out.split("\n")
    assert lines[:4] == [
        "instruction trace:",
        "at 00, ld   r1,r0,4",
        "  read access at address 4",
        "at 04, halt",
    ]
    assert lines[4] == "  r0: 00000000  r8: 00000000  r10: 00000000  r18: 00000000"
    assert "execution statistics (in decimal):" in lines


def test_verbose_echoes_words(program_file, capsys):
    path = program_file(LOAD_HALT)
    assert main(["-v", path]) == EXIT_OK
    out = capsys.readouterr().out
    assert out.startswith(f"reading words from {path}:\n  014200004\n  000000000\n")
    assert "from stdin" not in out
    assert out.count("  r0: 00000000") == 2


def test_verbose_stdin_banner(monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO(LOAD_HALT))
    assert main(["-v"]) == EXIT_OK
    assert capsys.readouterr().out.startswith(
        "reading words in hex from stdin:\n  014200004\n")


def test_trace_shows_faulting_instruction(program_file, capsys):
    words = assemble("sub r1, r0, 4\nld r2, r1, 0\nhalt")
    path = program_file(" ".join(f"{w:x}" for w in words))
    assert main(["-t", path]) == EXIT_ERROR
    captured = capsys.readouterr()
    lines = captured.out.split("\n")
    assert lines[-3:] == ["at 04, ld   r2,r1,0",
                          "  read access at address fffffffc", ""]
    assert "fatal: memory access out of bounds" in captured.err


def test_write_trace_line(program_file, capsys):
    hexwords = "\n".join(f"{w:08x}" for w in assemble("st r0, r0, 0x40\nhalt"))
    assert main(["-t", program_file(hexwords)]) == EXIT_OK
    assert "  write access at address 40" in capsys.readouterr().out


def test_assembly_source(program_file, capsys):
    assert main([program_file(COUNTDOWN, "count.s")]) == EXIT_OK
    out = capsys.readouterr().out
    assert "  branches executed   = 5" in out
    assert "  branches taken      = 4 (80.0%)" in out


def test_no_cache(program_file, capsys):
    assert main(["--no-cache", program_file(LOAD_HALT)]) == EXIT_OK
    assert "cache statistics" not in capsys.readouterr().out


def test_usage_error(capsys):
    assert main(["-t", "-v"]) == EXIT_ERROR
    assert "not allowed with" in capsys.readouterr().err


def test_unknown_flag(capsys):
    assert main(["--frobnicate"]) == EXIT_ERROR
    assert "usage:" in capsys.readouterr().err


def test_unknown_instruction(program_file, capsys):
    assert main([program_file("5c200004 00000000")]) == EXIT_ERROR
    err = capsys.readouterr().err
    assert "unknown instruction 5c200004" in err
    assert " op1=17 op2=0 d=1 s1=0 s2=4" in err
    assert "program terminates" in err


def test_overflow(program_file, capsys):
    assert main([program_file("00000000\n" * 257)]) == EXIT_ERROR
    assert "too many words loaded (257 > 256)" in capsys.readouterr().err


def test_limit_accepted(program_file):
    assert main([program_file("00000000\n" * 256)]) == EXIT_OK


def test_bad_hex(program_file, capsys):
    assert main([program_file("14200004 nothex")]) == EXIT_ERROR
    assert "nothex" in capsys.readouterr().err


def test_missing_file(tmp_path, capsys):
    assert main([str(tmp_path / "absent.hex")]) == EXIT_ERROR
    assert capsys.readouterr().err


def test_out_of_bounds(program_file, capsys):
    words = assemble("sub r1, r0, 4\nld r2, r1, 0\nhalt")
    assert main([program_file(" ".join(f"{w:x}" for w in words))]) == EXIT_ERROR
    assert "fatal: memory access out of bounds" in capsys.readouterr().err


def test_zero_branch(program_file, capsys):
    assert main([program_file("c0000000")]) == EXIT_ERROR
    assert "zero displacement" in capsys.readouterr().err


def test_max_steps(program_file, capsys):
    path = program_file("loop: add r1, r1, 1\nbr loop\n", "spin.asm")
    assert main(["--max-steps", "50", path]) == EXIT_ERROR
    assert "no halt after 50 instructions" in capsys.readouterr().err


def test_assemble_only(tmp_path, capsys):
    src = tmp_path / "prog.s"
    out = tmp_path / "prog.hex"
    src.write_text("add r1, r0, 1\nhalt\n")
    assert main(["--assemble", str(src), str(out)]) == EXIT_OK
    assert out.read_text() == "70200001\n00000000\n"
    assert "Assembled" in capsys.readouterr().out
    assert main([str(out)]) == EXIT_OK


def test_assemble_error(tmp_path, capsys):
    src = tmp_path / "bad.s"
    src.write_text("halt\nfrob r1\n")
    assert main(["--assemble", str(src), str(tmp_path / "out.hex")]) == EXIT_ERROR
    assert "Line 2" in capsys.readouterr().err


def test_debug_logging(program_file, caplog):
    caplog.set_level(logging.DEBUG, logger="system")
    assert main(["--debug", program_file(LOAD_HALT)]) == EXIT_OK
    assert "loaded 2 words" in caplog.text


# ---------------------------------------------------------------------------
#  Monitor
# ---------------------------------------------------------------------------

def test_monitor_step(capsys):
    mon = make_monitor("ld r1, r0, 4\nhalt")
    mon.onecmd("step")
    mon.onecmd("step")
    mon.onecmd("step")
    out = capsys.readouterr().out
    assert "  00000000: ld   r1,r0,4  [miss]" in out
    assert "  00000004: halt" in out
    assert "CPU halted." in out
    assert "CPU is halted" in out


def test_monitor_branch_annotation(capsys):
    mon = make_monitor(COUNTDOWN)
    mon.onecmd("step 3")
    assert "[taken]" in capsys.readouterr().out


def test_monitor_run_and_inspect(capsys):
    mon = make_monitor(COUNTDOWN)
    mon.onecmd("run")
    mon.onecmd("regs")
    mon.onecmd("stats")
    out = capsys.readouterr().out
    assert "CPU halted after 12 fetches." in out
    assert "state=halted" in out
    assert "  branches taken      = 4 (80.0%)" in out


def test_monitor_breakpoint(capsys):
    mon = make_monitor(COUNTDOWN)
    mon.onecmd("bp 0x8")
    mon.onecmd("run")
    assert "Breakpoint hit at 0x00000008" in capsys.readouterr().out
    assert mon.sys.cpu.inst_fetches == 2
    mon.onecmd("bpd 8")
    mon.onecmd("run")
    assert "CPU halted" in capsys.readouterr().out


def test_monitor_registers(capsys):
    mon = make_monitor("add r2, r3, 1\nhalt")
    mon.onecmd("setreg r0 5")
    assert "Bad register" in capsys.readouterr().out
    mon.onecmd("setreg r3 0x10")
    mon.onecmd("step")
    assert mon.sys.cpu.regs[2] == 0x11


def test_monitor_memory(capsys):
    mon = make_monitor("ld r1, r0, 0x40\nhalt")
    mon.onecmd("setmem 0x40 0xcafe")
    mon.onecmd("dump 0x40 1")
    mon.onecmd("disasm 0 2")
    mon.onecmd("run")
    out = capsys.readouterr().out
    assert "  00000040: 0000cafe" in out
    assert "  00000000: 14200040  ld   r1,r0,40" in out
    assert mon.sys.cpu.regs[1] == 0xCAFE


def test_monitor_cache(capsys):
    mon = make_monitor("st r0, r0, 0x48\nhalt")
    mon.onecmd("run")
    mon.onecmd("cache")
    mon.onecmd("cache 64")
    out = capsys.readouterr().out
    assert "set  9" in out
    assert "d=1" in out
    assert "Set index must be 0..63" in out


def test_monitor_asm_and_reset(capsys):
    mon = make_monitor("halt")
    mon.onecmd("asm -e 'lda r1, r0, 5; halt'")
    mon.onecmd("run")
    assert mon.sys.cpu.regs[1] == 5
    mon.onecmd("reset")
    out = capsys.readouterr().out
    assert "Assembled 2 words" in out
    assert "System reset." in out
    assert mon.sys.cpu.inst_fetches == 0
    assert mon.sys.cpu.regs[1] == 0


def test_monitor_load(program_file, capsys):
    mon = make_monitor("halt")
    mon.onecmd(f"load {program_file(LOAD_HALT)}")
    assert "Loaded 2 words" in capsys.readouterr().out
    mon.onecmd("load /nonexistent/prog.hex")
    assert "Error:" in capsys.readouterr().out


def test_monitor_unknown_instruction(capsys):
    system = MC88100System()
    system.load_words([0x5C200004])
    mon = M88kMonitor(system)
    mon.onecmd("run")
    assert "unknown instruction 5c200004" in capsys.readouterr().out


def test_monitor_misc(capsys):
    mon = make_monitor("halt")
    mon.onecmd("frobnicate now")
    assert "Unknown command: frobnicate" in capsys.readouterr().out
    assert mon.onecmd("quit") is True
