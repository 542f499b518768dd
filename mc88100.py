"""
MC88100 Subset Instruction Simulator
=====================================
A behavioural simulator for a reduced subset of the Motorola MC88100 RISC
instruction set: word loads/stores in all three addressing modes, add/sub
without carry, the bit-field shifts, rotate, and the br/bcnd branches.

Reference manual: MC88100 RISC Microprocessor User's Manual, 2nd ed. (1990).

Every instruction is one 32-bit word.  The fetch/decode/execute loop keeps
two instruction pointers like the hardware does: FIP (next word to fetch)
and XIP (the instruction executing).  Branch displacements are in words and
relative to XIP, not to the already-advanced FIP.

Loads and stores go to Memory first and are then reported to the attached
data-cache directory model (cache.py), if any.
"""

from __future__ import annotations
from typing import Callable, Optional

from cache import CacheDirectory, READ, WRITE

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MASK32 = (1 << 32) - 1
SIGN32 = 1 << 31

MEM_WORDS = 256 * 1024   # 1 MiB of word-addressed memory
NUM_REGS  = 32

# Primary opcodes (bits 31..26)
OP_HALT     = 0x00
OP_LD_IMM   = 0x05
OP_ST_IMM   = 0x09
OP_LDA_IMM  = 0x0D
OP_ADD_IMM  = 0x1C
OP_SUB_IMM  = 0x1D
OP_BR       = 0x30
OP_BCND     = 0x3A
OP_BITFIELD = 0x3C  # ext/extu/mak/rot, selected by op2
OP_TRIADIC  = 0x3D  # three-register ld/st/lda/add/sub, selected by op2

# Secondary opcodes (bits 15..10) under OP_BITFIELD
OP2_EXT  = 0x24
OP2_EXTU = 0x26
OP2_MAK  = 0x28
OP2_ROT  = 0x2A

# Secondary opcodes under OP_TRIADIC
OP2_LD  = 0x05
OP2_ST  = 0x09
OP2_LDA = 0x0D
OP2_ADD = 0x1C
OP2_SUB = 0x1D

# bcnd condition masks (the d field); bit N selects flag value N
CC_NEVER  = 0x0
CC_GT0    = 0x1
CC_EQ0    = 0x2
CC_GE0    = 0x3
CC_LT0    = 0xC
CC_NE0    = 0xD
CC_LE0    = 0xE
CC_ALWAYS = 0xF

COND_NAMES = {
    CC_NEVER: "never", CC_GT0: "gt0", CC_EQ0: "eq0", CC_GE0: "ge0",
    CC_LT0: "lt0", CC_NE0: "ne0", CC_LE0: "le0", CC_ALWAYS: "always",
}

# Instruction forms
FORM_NONE     = "none"      # halt
FORM_IMM      = "imm"       # rD, rS1, imm16
FORM_REG      = "reg"       # rD, rS1, rS2
FORM_SCALED   = "scaled"    # rD, rS1[rS2]
FORM_BR       = "br"        # disp26
FORM_BCND     = "bcnd"      # mask, rS1, disp16
FORM_BITFIELD = "bitfield"  # rD, rS1, amount

# (op1, op2 or None) -> (mnemonic, form)
OPCODES = {
    (OP_HALT, None):        ("halt", FORM_NONE),
    (OP_LD_IMM, None):      ("ld",   FORM_IMM),
    (OP_ST_IMM, None):      ("st",   FORM_IMM),
    (OP_LDA_IMM, None):     ("lda",  FORM_IMM),
    (OP_ADD_IMM, None):     ("add",  FORM_IMM),
    (OP_SUB_IMM, None):     ("sub",  FORM_IMM),
    (OP_BR, None):          ("br",   FORM_BR),
    (OP_BCND, None):        ("bcnd", FORM_BCND),
    (OP_BITFIELD, OP2_EXT):  ("ext",  FORM_BITFIELD),
    (OP_BITFIELD, OP2_EXTU): ("extu", FORM_BITFIELD),
    (OP_BITFIELD, OP2_MAK):  ("mak",  FORM_BITFIELD),
    (OP_BITFIELD, OP2_ROT):  ("rot",  FORM_BITFIELD),
    (OP_TRIADIC, OP2_LD):   ("ld",   FORM_REG),
    (OP_TRIADIC, OP2_ST):   ("st",   FORM_REG),
    (OP_TRIADIC, OP2_LDA):  ("lda",  FORM_REG),
    (OP_TRIADIC, OP2_ADD):  ("add",  FORM_REG),
    (OP_TRIADIC, OP2_SUB):  ("sub",  FORM_REG),
}

# Execution states
RUNNING = "running"
HALTED  = "halted"
FAULTED = "faulted"

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u32(v: int) -> int:
    """Mask to unsigned 32 bits."""
    return v & MASK32

def s32(v: int) -> int:
    """Interpret a 32-bit value as signed."""
    v = u32(v)
    return v - (1 << 32) if v >= SIGN32 else v

def sign_extend(val: int, bits: int) -> int:
    """Sign-extend a *bits*-wide value to a Python int."""
    mask = (1 << bits) - 1
    val &= mask
    if val & (1 << (bits - 1)):
        val -= (1 << bits)
    return val

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class M88kError(Exception):
    """Base for simulator-generated fatal conditions."""
    pass

class UnknownInstruction(M88kError):
    def __init__(self, inst: "Instruction", address: int = 0):
        self.inst = inst
        self.address = address
        super().__init__(
            f"unknown instruction {inst.word:08x} at {u32(address):#x} "
            f"(op1={inst.op1:x} op2={inst.op2:x} d={inst.d:x} "
            f"s1={inst.s1:x} s2={inst.s2:x})")

class OutOfBoundsAccess(M88kError):
    def __init__(self, address: int, message: str = ""):
        self.address = address
        super().__init__(message or f"memory access out of bounds @ {u32(address):#010x}")

class InvalidBranchEncoding(M88kError):
    pass

class HaltError(M88kError):
    pass

# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

class Instruction:
    """Field views of one 32-bit instruction word."""

    __slots__ = ("word", "op1", "op2", "d", "s1", "s2", "imm16", "scaled",
                 "disp26", "disp16")

    def __init__(self, word: int):
        word = u32(word)
        self.word   = word
        self.op1    = (word >> 26) & 0x3F
        self.op2    = (word >> 10) & 0x3F
        self.d      = (word >> 21) & 0x1F
        self.s1     = (word >> 16) & 0x1F
        self.s2     = word & 0x1F
        self.imm16  = word & 0xFFFF
        self.scaled = (word >> 9) & 1
        self.disp26 = word & 0x03FF_FFFF
        self.disp16 = word & 0xFFFF

    @property
    def key(self) -> tuple[int, Optional[int]]:
        """Dispatch key: op2 only matters for the 0x3C/0x3D groups."""
        if self.op1 in (OP_BITFIELD, OP_TRIADIC):
            return (self.op1, self.op2)
        return (self.op1, None)

    @property
    def mnemonic(self) -> Optional[str]:
        entry = OPCODES.get(self.key)
        return entry[0] if entry else None

    @property
    def form(self) -> Optional[str]:
        entry = OPCODES.get(self.key)
        if entry is None:
            return None
        form = entry[1]
        if form == FORM_REG and self.scaled and self.op2 in (OP2_LD, OP2_ST, OP2_LDA):
            return FORM_SCALED
        return form

    def __repr__(self):
        return (f"Instruction({self.word:#010x}: op1={self.op1:#x} "
                f"op2={self.op2:#x} d={self.d} s1={self.s1} s2={self.s2})")


def decode(word: int) -> Instruction:
    """Extract the fixed bit fields of *word*.  Total over all inputs."""
    return Instruction(word)

# ---------------------------------------------------------------------------
#  Memory
# ---------------------------------------------------------------------------

class Memory:
    """Word-addressed flat store behind a byte-address interface.

    Data reads and writes are counted; instruction fetches and the
    loader's bulk placement are not.
    """

    def __init__(self, size_words: int = MEM_WORDS):
        self.size_words = size_words
        self.words: list[int] = [0] * size_words
        self.reads: int = 0
        self.writes: int = 0

    def _index(self, address: int) -> int:
        index = address >> 2
        if not (0 <= index < self.size_words):
            raise OutOfBoundsAccess(address)
        return index

    def read(self, address: int) -> int:
        value = self.words[self._index(address)]
        self.reads += 1
        return value

    def write(self, address: int, value: int):
        self.words[self._index(address)] = s32(value)
        self.writes += 1

    def fetch(self, address: int) -> int:
        """Instruction fetch: bounds-checked, not counted as a data read."""
        return self.words[self._index(address)]

    def load(self, words: list[int], base_index: int = 0):
        """Place *words* starting at word index *base_index*."""
        end = base_index + len(words)
        if base_index < 0 or end > self.size_words:
            raise OutOfBoundsAccess(end << 2,
                                    f"load of {len(words)} words at index "
                                    f"{base_index} exceeds memory")
        for i, w in enumerate(words):
            self.words[base_index + i] = s32(w)

    def peek(self, index: int) -> int:
        return self.words[index]

    def poke(self, index: int, value: int):
        self.words[index] = s32(value)

# ---------------------------------------------------------------------------
#  Trace events
# ---------------------------------------------------------------------------

class TraceEvent:
    """What one executed instruction did, for observers (see cli.py)."""

    __slots__ = ("cycle", "address", "inst", "mnemonic", "access_kind",
                 "access_address", "cache_result", "branch_taken", "halted",
                 "faulted", "regs")

    def __init__(self, cycle: int, address: int, inst: Instruction):
        self.cycle = cycle
        self.address = address
        self.inst = inst
        self.mnemonic = inst.mnemonic
        self.access_kind: Optional[int] = None     # READ / WRITE
        self.access_address: Optional[int] = None
        self.cache_result: Optional[str] = None
        self.branch_taken: Optional[bool] = None   # None = not a branch
        self.halted = False
        self.faulted = False
        self.regs: tuple[int, ...] = ()

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class MC88100:
    """MC88100 subset execution engine."""

    def __init__(self, memory: Optional[Memory] = None,
                 cache: Optional[CacheDirectory] = None):
        self.mem = memory if memory is not None else Memory()
        self.cache = cache

        # 32 x 32-bit general registers, r0 is always 0
        self.regs: list[int] = [0] * NUM_REGS

        # Instruction pointers
        self.fip: int = 0   # fetch instruction pointer
        self.xip: int = 0   # execute instruction pointer

        # State
        self.state: str = RUNNING
        self._halt_flag: bool = False
        self._event: Optional[TraceEvent] = None

        # Dynamic execution statistics
        self.inst_fetches: int = 0
        self.branches: int = 0
        self.taken_branches: int = 0

        # Callbacks
        self.on_trace: Optional[Callable[[TraceEvent], None]] = None
        self.on_halt: Optional[Callable[[], None]] = None

        self._handlers: dict[tuple[int, Optional[int]], Callable[[Instruction], None]] = {
            (OP_HALT, None):          self._exec_halt,
            (OP_LD_IMM, None):        self._exec_ld,
            (OP_ST_IMM, None):        self._exec_st,
            (OP_LDA_IMM, None):       self._exec_lda,
            (OP_ADD_IMM, None):       self._exec_add,
            (OP_SUB_IMM, None):       self._exec_sub,
            (OP_BR, None):            self._exec_br,
            (OP_BCND, None):          self._exec_bcnd,
            (OP_BITFIELD, OP2_EXT):   self._exec_ext,
            (OP_BITFIELD, OP2_EXTU):  self._exec_extu,
            (OP_BITFIELD, OP2_MAK):   self._exec_mak,
            (OP_BITFIELD, OP2_ROT):   self._exec_rot,
            (OP_TRIADIC, OP2_LD):     self._exec_ld,
            (OP_TRIADIC, OP2_ST):     self._exec_st,
            (OP_TRIADIC, OP2_LDA):    self._exec_lda,
            (OP_TRIADIC, OP2_ADD):    self._exec_add,
            (OP_TRIADIC, OP2_SUB):    self._exec_sub,
        }

    # -- Property shortcuts --

    @property
    def pc(self) -> int:
        return self.fip

    @pc.setter
    def pc(self, value: int):
        self.fip = s32(value)

    @property
    def halted(self) -> bool:
        return self.state == HALTED

    @property
    def faulted(self) -> bool:
        return self.state == FAULTED

    # -- Operand helpers --

    def _operand(self, inst: Instruction) -> int:
        """Second source operand: imm16 (zero-extended) or reg[s2]."""
        if inst.op1 == OP_TRIADIC:
            return self.regs[inst.s2]
        return inst.imm16

    def _eff_addr(self, inst: Instruction) -> int:
        """Effective address for the three addressing modes."""
        if inst.op1 != OP_TRIADIC:
            return s32(self.regs[inst.s1] + inst.imm16)
        if inst.scaled:
            return s32(self.regs[inst.s1] + (self.regs[inst.s2] << 2))
        return s32(self.regs[inst.s1] + self.regs[inst.s2])

    def _note_access(self, address: int, kind: int):
        self._event.access_kind = kind
        self._event.access_address = address

    def _cache_access(self, address: int, kind: int):
        if self.cache is not None:
            self._event.cache_result = self.cache.access(u32(address), kind)

    def _take_branch(self, disp: int):
        self.fip = s32(self.xip + (disp << 2))

    # =====================================================================
    #  STEP: the fetch/decode/execute loop
    # =====================================================================

    def step(self) -> TraceEvent:
        """Execute one instruction and return its trace event."""
        if self.state != RUNNING:
            raise HaltError(f"CPU is {self.state}")

        event = None
        try:
            word = self.mem.fetch(self.fip)
            self.xip = self.fip
            self.fip = s32(self.xip + 4)
            self.inst_fetches += 1

            inst = decode(word)
            self._event = event = TraceEvent(self.inst_fetches, self.xip, inst)

            handler = self._handlers.get(inst.key)
            if handler is None:
                raise UnknownInstruction(inst, self.xip)
            handler(inst)
        except M88kError:
            self.state = FAULTED
            # partial event: shows where the run died
            if event is not None and self.on_trace:
                event.faulted = True
                event.regs = tuple(self.regs)
                self.on_trace(event)
            raise
        finally:
            self._event = None

        self.regs[0] = 0  # r0 stays 0

        if self._halt_flag:
            self.state = HALTED
            event.halted = True
            if self.on_halt:
                self.on_halt()

        if self.on_trace:
            event.regs = tuple(self.regs)
            self.on_trace(event)
        return event

    # =====================================================================
    #  Handlers
    # =====================================================================

    def _exec_halt(self, inst: Instruction):
        self._halt_flag = True

    def _exec_ld(self, inst: Instruction):
        address = self._eff_addr(inst)
        self._note_access(address, READ)
        self.regs[inst.d] = self.mem.read(address)
        self._cache_access(address, READ)

    def _exec_st(self, inst: Instruction):
        address = self._eff_addr(inst)
        self._note_access(address, WRITE)
        self.mem.write(address, self.regs[inst.d])
        self._cache_access(address, WRITE)

    def _exec_lda(self, inst: Instruction):
        self.regs[inst.d] = self._eff_addr(inst)

    def _exec_add(self, inst: Instruction):
        # no carry in or out
        self.regs[inst.d] = s32(self.regs[inst.s1] + self._operand(inst))

    def _exec_sub(self, inst: Instruction):
        # no borrow in or out
        self.regs[inst.d] = s32(self.regs[inst.s1] - self._operand(inst))

    def _exec_br(self, inst: Instruction):
        if inst.disp26 == 0:
            raise InvalidBranchEncoding(f"br with zero displacement at {u32(self.xip):#x}")
        self._take_branch(sign_extend(inst.disp26, 26))
        self.branches += 1
        self.taken_branches += 1
        self._event.branch_taken = True

    def _exec_bcnd(self, inst: Instruction):
        if inst.disp16 == 0:
            raise InvalidBranchEncoding(f"bcnd with zero displacement at {u32(self.xip):#x}")
        self.branches += 1
        taken = self.eval_cond(inst.d, self.regs[inst.s1])
        if taken:
            self._take_branch(sign_extend(inst.disp16, 16))
            self.taken_branches += 1
        self._event.branch_taken = taken

    @staticmethod
    def eval_cond(mask: int, value: int) -> bool:
        """bcnd test: bit (sign<<1 | zero) of *mask*.

        The zero test ignores the sign bit, so 0x80000000 selects bit 3.
        """
        v = u32(value)
        sign = v >> 31
        zero = 1 if (v << 1) & MASK32 == 0 else 0
        flag = (sign << 1) | zero
        return (mask >> flag) & 1 == 1

    def _exec_ext(self, inst: Instruction):
        self.regs[inst.d] = s32(self.regs[inst.s1]) >> inst.s2

    def _exec_extu(self, inst: Instruction):
        self.regs[inst.d] = s32(u32(self.regs[inst.s1]) >> inst.s2)

    def _exec_mak(self, inst: Instruction):
        self.regs[inst.d] = s32(self.regs[inst.s1] << inst.s2)

    def _exec_rot(self, inst: Instruction):
        self.regs[inst.d] = rotate_right(self.regs[inst.s1], inst.s2)

    # -- Run loop --

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until halt or fault (or *max_steps*). Returns steps executed."""
        steps = 0
        while self.state == RUNNING:
            if max_steps is not None and steps >= max_steps:
                break
            self.step()
            steps += 1
        return steps

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        return format_regs(self.regs)


def format_regs(regs) -> str:
    """Four-column register table: r0 r8 r16 r24 on the first row, etc."""
    lines = []
    for i in range(8):
        lines.append("".join(
            f"  r{j:x}: {u32(regs[j]):08x}"
            for j in (i, i + 8, i + 16, i + 24)))
    return "\n".join(lines)


def rotate_right(value: int, amount: int) -> int:
    """Rotate the 32-bit *value* right by *amount* (mod 32); 0 is identity."""
    amount &= 0x1F
    v = u32(value)
    if amount == 0:
        return s32(v)
    return s32((v << (32 - amount)) | (v >> amount))
