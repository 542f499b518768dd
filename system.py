"""
MC88100 Simulation Context
===========================
Wires together, for one run:
  - the MC88100 execution engine (mc88100.py)
  - its word-addressed Memory
  - the data-cache directory model (cache.py), unless disabled
  - the hex program loader

Each MC88100System owns all of its mutable state, so independent runs
(tests in particular) never see each other's registers, memory or counters.
"""

from __future__ import annotations
import logging
from typing import Callable, Optional

from mc88100 import (MC88100, Memory, M88kError, TraceEvent, MEM_WORDS,
                     RUNNING, u32)
from cache import CacheDirectory, NUM_SETS

log = logging.getLogger(__name__)

# The loader accepts at most this many words, placed from word index 0.
INPUT_WORD_LIMIT = 256

# ---------------------------------------------------------------------------
#  Loader
# ---------------------------------------------------------------------------

class LoadError(M88kError):
    pass

class LoadOverflow(LoadError):
    def __init__(self, count: int, limit: int = INPUT_WORD_LIMIT):
        self.count = count
        self.limit = limit
        super().__init__(f"too many words loaded ({count} > {limit})")


def parse_hex_words(text: str) -> list[int]:
    """Parse whitespace-separated hexadecimal words (``0x`` prefix optional)."""
    words = []
    for tok in text.split():
        try:
            words.append(u32(int(tok, 16)))
        except ValueError:
            raise LoadError(f"not a hexadecimal word: {tok!r}") from None
    return words

# ---------------------------------------------------------------------------
#  Statistics
# ---------------------------------------------------------------------------

class Statistics:
    """Snapshot of every run counter, gathered from their owners."""

    def __init__(self, inst_fetches: int = 0, memory_reads: int = 0,
                 memory_writes: int = 0, branches: int = 0,
                 taken_branches: int = 0, cache: Optional[dict] = None):
        self.inst_fetches = inst_fetches
        self.memory_reads = memory_reads
        self.memory_writes = memory_writes
        self.branches = branches
        self.taken_branches = taken_branches
        self.cache = cache  # None when the cache model is off

    @classmethod
    def collect(cls, cpu: MC88100, memory: Memory,
                cache: Optional[CacheDirectory]) -> "Statistics":
        cache_counts = None
        if cache is not None:
            cache_counts = {
                "reads": cache.reads,
                "writes": cache.writes,
                "hits": cache.hits,
                "misses": cache.misses,
                "write_backs": cache.write_backs,
            }
        return cls(cpu.inst_fetches, memory.reads, memory.writes,
                   cpu.branches, cpu.taken_branches, cache_counts)

    @property
    def taken_pct(self) -> float:
        if self.branches == 0:
            return 0.0
        return 100.0 * self.taken_branches / self.branches

    def as_dict(self) -> dict:
        d = {
            "inst_fetches": self.inst_fetches,
            "memory_reads": self.memory_reads,
            "memory_writes": self.memory_writes,
            "branches": self.branches,
            "taken_branches": self.taken_branches,
        }
        if self.cache is not None:
            d["cache"] = dict(self.cache)
        return d

# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class MC88100System:
    """One simulation run: CPU + memory + optional data-cache directory."""

    def __init__(self, mem_words: int = MEM_WORDS,
                 cache_enabled: bool = True,
                 on_trace: Optional[Callable[[TraceEvent], None]] = None):
        self.memory = Memory(mem_words)
        self.cache = CacheDirectory() if cache_enabled else None
        self.cpu = MC88100(self.memory, self.cache)
        self.cpu.on_trace = on_trace
        self.loaded_words = 0

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_words(self, words: list[int]):
        """Place program words from word index 0."""
        if len(words) > INPUT_WORD_LIMIT:
            log.debug("rejecting program of %d words", len(words))
            raise LoadOverflow(len(words))
        self.memory.load(words)
        self.loaded_words = len(words)
        log.debug("loaded %d words", len(words))

    def load_hex(self, text: str) -> list[int]:
        words = parse_hex_words(text)
        self.load_words(words)
        return words

    def load_hex_file(self, path: str) -> list[int]:
        """Load a hex program file."""
        with open(path, "r") as f:
            return self.load_hex(f.read())

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def step(self) -> TraceEvent:
        return self.cpu.step()

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until halt, a fatal error, or *max_steps* instructions."""
        try:
            steps = self.cpu.run(max_steps)
        except M88kError as e:
            log.debug("run faulted after %d fetches: %s",
                      self.cpu.inst_fetches, e)
            raise
        if self.cpu.state == RUNNING:
            log.debug("step limit reached after %d steps", steps)
        else:
            log.debug("%s after %d fetches", self.cpu.state,
                      self.cpu.inst_fetches)
        return steps

    # -----------------------------------------------------------------
    #  State queries
    # -----------------------------------------------------------------

    @property
    def halted(self) -> bool:
        return self.cpu.halted

    def statistics(self) -> Statistics:
        return Statistics.collect(self.cpu, self.memory, self.cache)

    def dump_state(self) -> str:
        """CPU registers, pointers, and the occupied cache sets."""
        lines = ["=== Registers ===", self.cpu.dump_regs(),
                 f"  fip={u32(self.cpu.fip):08x} xip={u32(self.cpu.xip):08x} "
                 f"state={self.cpu.state}"]
        if self.cache is not None:
            lines.append("=== Cache ===")
            for i in range(NUM_SETS):
                if any(w.valid for w in self.cache.sets[i].ways):
                    lines.append("  " + self.cache.dump_set(i))
        return "\n".join(lines)
