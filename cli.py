#!/usr/bin/env python3
"""
MC88100 Simulator CLI
======================
Command-line launcher and interactive monitor for the MC88100 subset
simulator.

Provides:
  - Program loading (hex words, or assembly source ending in .s/.asm)
  - Instruction trace (-t) and full trace with register dumps (-v)
  - The end-of-run execution and cache statistics report
  - An interactive monitor for stepping and inspecting registers, memory
    and cache sets
  - Disassembly

Usage:
  python cli.py [-t | -v] [--no-cache] [--max-steps N] [PROGRAM]
  python cli.py --assemble SRC OUT
  python cli.py --monitor [PROGRAM]

Input is read as hex 32-bit values from stdin when PROGRAM is omitted.
"""

from __future__ import annotations
import argparse
import cmd
import logging
import readline  # line editing for the monitor
import shlex
import sys
from typing import Optional

from mc88100 import (
    M88kError, HaltError, UnknownInstruction, Instruction, TraceEvent,
    decode, format_regs, sign_extend, u32, s32, COND_NAMES,
    FORM_NONE, FORM_IMM, FORM_REG, FORM_SCALED, FORM_BR, FORM_BCND,
    FORM_BITFIELD, NUM_REGS,
)
from cache import READ, NUM_SETS
from asm import assemble, AsmError
from system import MC88100System, Statistics, LoadError, parse_hex_words

log = logging.getLogger(__name__)

EXIT_OK    = 0
EXIT_ERROR = -1

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

def disasm(word: int) -> str:
    """Render one instruction word in trace format."""
    return disasm_inst(decode(word))


def disasm_inst(inst: Instruction) -> str:
    form = inst.form
    m = inst.mnemonic
    if form is None:
        return f".word {inst.word:08x}"
    if form == FORM_NONE:
        return m
    if form == FORM_IMM:
        return f"{m:<5}r{inst.d:x},r{inst.s1:x},{inst.imm16:x}"
    if form == FORM_REG:
        return f"{m:<5}r{inst.d:x},r{inst.s1:x},r{inst.s2:x}"
    if form == FORM_SCALED:
        return f"{m:<5}r{inst.d:x},r{inst.s1:x}[r{inst.s2:x}]"
    if form == FORM_BITFIELD:
        return f"{m:<5}r{inst.d:x},r{inst.s1:x},{inst.s2:x}"
    if form == FORM_BR:
        disp = sign_extend(inst.disp26, 26)
        text = f"br {inst.disp26:x}"
        if disp < 0 or disp > 9:
            text += f" (= decimal {disp})"
        return text
    if form == FORM_BCND:
        cond = COND_NAMES.get(inst.d, f"mask={inst.d}")
        disp = sign_extend(inst.disp16, 16)
        text = f"bcnd {cond},r{inst.s1},{inst.disp16:x}"
        if disp < 0:
            text += f" (= decimal {disp})"
        return text
    return f".word {inst.word:08x}"


def format_unknown(inst: Instruction) -> str:
    return (f"unknown instruction {inst.word:08x}\n"
            f" op1={inst.op1:x} op2={inst.op2:x} d={inst.d:x} "
            f"s1={inst.s1:x} s2={inst.s2:x}\n"
            f"program terminates")

# ---------------------------------------------------------------------------
#  Trace rendering and report
# ---------------------------------------------------------------------------

class TraceRenderer:
    """on_trace observer printing the instruction trace.

    verbose=1: one line per instruction, registers after halt.
    verbose=2: registers after every instruction.
    A faulting instruction gets its line (and access line) only.
    """

    def __init__(self, verbose: int = 1):
        self.verbose = verbose

    def __call__(self, event: TraceEvent):
        print(f"at {u32(event.address):02x}, {disasm_inst(event.inst)}")
        if event.access_kind is not None:
            kind = "read" if event.access_kind == READ else "write"
            print(f"  {kind} access at address {u32(event.access_address):x}")
        if event.faulted:
            return
        if self.verbose > 1 or (event.halted and self.verbose == 1):
            print(format_regs(event.regs))


def format_report(stats: Statistics) -> str:
    lines = [
        "execution statistics (in decimal):",
        f"  instruction fetches = {stats.inst_fetches}",
        f"  data words read     = {stats.memory_reads}",
        f"  data words written  = {stats.memory_writes}",
        f"  branches executed   = {stats.branches}",
    ]
    if stats.taken_branches == 0:
        lines.append("  branches taken      = 0")
    else:
        lines.append(f"  branches taken      = {stats.taken_branches} "
                     f"({stats.taken_pct:.1f}%)")
    if stats.cache is not None:
        c = stats.cache
        lines += [
            "cache statistics (in decimal):",
            f"  cache reads       = {c['reads']}",
            f"  cache writes      = {c['writes']}",
            f"  cache hits        = {c['hits']}",
            f"  cache misses      = {c['misses']}",
            f"  cache write backs = {c['write_backs']}",
        ]
    return "\n".join(lines)


def read_program(path: Optional[str]) -> list[int]:
    """Program words from *path* (hex, or assembly for .s/.asm), or stdin."""
    if path is None:
        return parse_hex_words(sys.stdin.read())
    with open(path, "r") as f:
        text = f.read()
    if path.endswith((".s", ".asm")):
        return assemble(text)
    return parse_hex_words(text)

# ---------------------------------------------------------------------------
#  Interactive monitor
# ---------------------------------------------------------------------------

class M88kMonitor(cmd.Cmd):
    """Interactive monitor for one MC88100 simulation."""

    intro = (
        "\n"
        "MC88100 subset simulator monitor\n"
        "Type 'help' for commands.  'quit' to exit.\n"
    )
    prompt = "m88k> "

    def __init__(self, system: MC88100System, program: Optional[list[int]] = None):
        super().__init__()
        self.sys = system
        self.program = list(program or [])
        self.breakpoints: set[int] = set()

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (decimal, 0x hex, pc, or a register name)."""
        s = s.strip().lower()
        if s.startswith("r") and s[1:].isdigit():
            return self.sys.cpu.regs[int(s[1:])]
        if s == "pc":
            return self.sys.cpu.pc
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def _fresh_system(self) -> MC88100System:
        return MC88100System(mem_words=self.sys.memory.size_words,
                             cache_enabled=self.sys.cache is not None)

    def _install(self, words: list[int]):
        """Start a fresh run with *words* as the program."""
        system = self._fresh_system()
        system.load_words(words)
        self.sys = system
        self.program = list(words)

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load a program file (hex words, or .s/.asm source): load <file>"""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: load <file>")
            return
        try:
            words = read_program(parts[0])
            self._install(words)
            print(f"Loaded {len(words)} words from '{parts[0]}'")
        except (OSError, LoadError, AsmError) as e:
            print(f"Error: {e}")

    def do_asm(self, arg):
        """Assemble and load: asm <file.s>  OR  asm -e 'lda r1,r0,5; halt'"""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: asm <file.s>  OR  asm -e \"code\"")
            return
        try:
            if parts[0] == "-e":
                source = parts[1].replace(";", "\n") if len(parts) > 1 else ""
            else:
                with open(parts[0], "r") as f:
                    source = f.read()
            words = assemble(source)
            self._install(words)
            print(f"Assembled {len(words)} words")
        except (OSError, LoadError, AsmError) as e:
            print(f"Error: {e}")

    def do_reset(self, arg):
        """Fresh simulation with the last loaded program: reset"""
        self.sys = self._fresh_system()
        if self.program:
            self.sys.load_words(self.program)
        print("System reset.")

    # -- Execution --

    def _step_one(self) -> bool:
        """Step once, printing the instruction. False when execution stops."""
        try:
            event = self.sys.step()
        except HaltError as e:
            print(str(e))
            return False
        except UnknownInstruction as e:
            print(format_unknown(e.inst))
            return False
        except M88kError as e:
            print(f"Fault: {e}")
            return False
        line = f"  {u32(event.address):08x}: {disasm_inst(event.inst)}"
        if event.cache_result is not None:
            line += f"  [{event.cache_result}]"
        elif event.branch_taken is not None:
            line += "  [taken]" if event.branch_taken else "  [not taken]"
        print(line)
        if event.halted:
            print("CPU halted.")
            return False
        return True

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            if not self._step_one():
                break

    def do_run(self, arg):
        """Run until halt/fault/breakpoint: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else 10_000_000
        cpu = self.sys.cpu
        for n in range(max_steps):
            if n and u32(cpu.pc) in self.breakpoints:
                print(f"Breakpoint hit at {u32(cpu.pc):#010x}")
                return
            try:
                event = self.sys.step()
            except HaltError as e:
                print(str(e))
                return
            except UnknownInstruction as e:
                print(format_unknown(e.inst))
                return
            except M88kError as e:
                print(f"Fault: {e}")
                return
            if event.halted:
                print(f"CPU halted after {cpu.inst_fetches} fetches.")
                return
        print(f"Stopped after {max_steps} steps.")

    def do_bp(self, arg):
        """Set a breakpoint: bp <addr>   (no argument lists them)"""
        if not arg.strip():
            for a in sorted(self.breakpoints):
                print(f"  {a:#010x}")
            return
        self.breakpoints.add(u32(self._parse_addr(arg)))

    def do_bpd(self, arg):
        """Delete a breakpoint: bpd <addr>"""
        self.breakpoints.discard(u32(self._parse_addr(arg)))

    # -- Inspection --

    def do_regs(self, arg):
        """Show registers and instruction pointers: regs"""
        cpu = self.sys.cpu
        print(format_regs(cpu.regs))
        print(f"  fip={u32(cpu.fip):08x} xip={u32(cpu.xip):08x} state={cpu.state}")

    def do_setreg(self, arg):
        """Set a register: setreg rN value"""
        parts = arg.split()
        if len(parts) != 2:
            print("Usage: setreg rN value")
            return
        name = parts[0].lower()
        if name == "pc":
            self.sys.cpu.pc = self._parse_int(parts[1])
            return
        if not (name.startswith("r") and name[1:].isdigit()
                and 0 < int(name[1:]) < NUM_REGS):
            print(f"Bad register: {parts[0]} (r0 is hard-wired to 0)")
            return
        self.sys.cpu.regs[int(name[1:])] = s32(self._parse_int(parts[1]))

    def do_dump(self, arg):
        """Dump memory words: dump <addr> [count]"""
        parts = arg.split()
        if not parts:
            print("Usage: dump <addr> [count]")
            return
        addr = self._parse_addr(parts[0]) & ~3
        count = self._parse_int(parts[1]) if len(parts) > 1 else 8
        mem = self.sys.memory
        for i in range(count):
            index = (addr >> 2) + i
            if not 0 <= index < mem.size_words:
                print(f"  {index << 2:08x}: <out of range>")
                break
            print(f"  {index << 2:08x}: {u32(mem.peek(index)):08x}")

    def do_setmem(self, arg):
        """Write a memory word: setmem <addr> <value>"""
        parts = arg.split()
        if len(parts) != 2:
            print("Usage: setmem <addr> <value>")
            return
        index = self._parse_addr(parts[0]) >> 2
        if not 0 <= index < self.sys.memory.size_words:
            print("Address out of range")
            return
        self.sys.memory.poke(index, self._parse_int(parts[1]))

    def do_disasm(self, arg):
        """Disassemble: disasm [addr] [count]"""
        parts = arg.split()
        addr = self._parse_addr(parts[0]) & ~3 if parts else self.sys.cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 8
        mem = self.sys.memory
        for i in range(count):
            index = (addr >> 2) + i
            if not 0 <= index < mem.size_words:
                break
            word = u32(mem.peek(index))
            print(f"  {index << 2:08x}: {word:08x}  {disasm(word)}")

    def do_cache(self, arg):
        """Show cache sets: cache [set]   (default: every occupied set)"""
        cache = self.sys.cache
        if cache is None:
            print("Cache model disabled.")
            return
        if arg.strip():
            index = self._parse_int(arg)
            if not 0 <= index < NUM_SETS:
                print(f"Set index must be 0..{NUM_SETS - 1}")
                return
            print("  " + cache.dump_set(index))
            return
        for i in range(NUM_SETS):
            if any(w.valid for w in cache.sets[i].ways):
                print("  " + cache.dump_set(i))

    def do_stats(self, arg):
        """Show execution and cache statistics: stats"""
        print(format_report(self.sys.statistics()))

    def do_quit(self, arg):
        """Exit the monitor."""
        return True

    do_exit = do_quit

    def do_EOF(self, arg):
        print()
        return True

    def default(self, line):
        print(f"Unknown command: {line.split()[0]}  (type 'help')")

    def emptyline(self):
        pass

# ---------------------------------------------------------------------------
#  Launcher
# ---------------------------------------------------------------------------

class UsageError(M88kError):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="m88ksim",
        description="MC88100 subset simulator with data-cache statistics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  m88ksim < prog.hex          just execution statistics\n"
               "  m88ksim -t prog.hex         instruction trace\n"
               "  m88ksim -v prog.hex         instructions, registers, and memory\n"
               "  m88ksim --assemble prog.s prog.hex\n"
               "\n"
               "Input is read as hex 32-bit values from stdin when PROGRAM is omitted.\n"
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("-t", "--trace", action="store_true",
                      help="instruction trace")
    mode.add_argument("-v", "--verbose", action="store_true",
                      help="instructions, registers after every cycle, and loaded words")
    parser.add_argument("program", nargs="?", default=None,
                        help="hex program file, or .s/.asm source (default: stdin)")
    parser.add_argument("--no-cache", action="store_true",
                        help="run without the data-cache model")
    parser.add_argument("--max-steps", type=int, default=None, metavar="N",
                        help="stop with an error after N instructions")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="assemble SRC to hex words in OUT and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="print an assembly listing (with --assemble)")
    parser.add_argument("--monitor", action="store_true",
                        help="load the program and enter the interactive monitor")
    parser.add_argument("--debug", action="store_true",
                        help="enable debug logging")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except UsageError:
        return EXIT_ERROR

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        try:
            with open(src_path, "r") as f:
                words = assemble(f.read(), listing=args.listing)
        except (OSError, AsmError) as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            return EXIT_ERROR
        with open(out_path, "w") as f:
            f.write("".join(f"{w:08x}\n" for w in words))
        print(f"Assembled {src_path} -> {out_path} ({len(words)} words)")
        return EXIT_OK

    verbose = 2 if args.verbose else 1 if args.trace else 0
    sys_emu = MC88100System(cache_enabled=not args.no_cache)

    try:
        words = read_program(args.program)
        if verbose > 1:
            if args.program is None:
                print("reading words in hex from stdin:")
            else:
                print(f"reading words from {args.program}:")
            for w in words:
                print(f"  0{w:08x}")
            print()
        sys_emu.load_words(words)
    except (OSError, LoadError, AsmError) as e:
        print(e, file=sys.stderr)
        return EXIT_ERROR
    log.debug("program from %s, cache model %s", args.program or "stdin",
              "off" if args.no_cache else "on")

    if args.monitor:
        monitor = M88kMonitor(sys_emu, words)
        try:
            monitor.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return EXIT_OK

    if verbose:
        sys_emu.cpu.on_trace = TraceRenderer(verbose)
        print("instruction trace:")

    try:
        sys_emu.run(args.max_steps)
    except UnknownInstruction as e:
        print(format_unknown(e.inst), file=sys.stderr)
        return EXIT_ERROR
    except M88kError as e:
        print(f"fatal: {e}", file=sys.stderr)
        return EXIT_ERROR

    if not sys_emu.halted:
        print(f"no halt after {args.max_steps} instructions", file=sys.stderr)
        return EXIT_ERROR

    if verbose:
        print()
    print(format_report(sys_emu.statistics()))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
