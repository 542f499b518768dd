"""
MC88100 Subset Assembler
=========================
Translates assembly text into 32-bit instruction words for the simulator.

Supports:
  - Labels (terminated with ':')
  - halt, ld/st/lda (imm, register, scaled), add/sub (imm, register),
    ext/extu/mak/rot, br, bcnd
  - Immediate literals (decimal, hex with 0x prefix)
  - Comments (';' to end of line)
  - .org and .word directives

Operand syntax follows the simulator's trace output:

    ld   r1, r2, 0x10     ; r1 <- M[r2 + 0x10]
    st   r1, r2, r3       ; M[r2 + r3] <- r1
    lda  r1, r2[r3]       ; r1 <- r2 + (r3 << 2)
    bcnd eq0, r4, done    ; branch if r4 == 0

Branch targets given as labels become word displacements from the branch
instruction itself; plain numbers are taken as word displacements.

Usage:
  from asm import assemble
  words = assemble(source_text)
"""

from __future__ import annotations

from mc88100 import (
    OP_HALT, OP_LD_IMM, OP_ST_IMM, OP_LDA_IMM, OP_ADD_IMM, OP_SUB_IMM,
    OP_BR, OP_BCND, OP_BITFIELD, OP_TRIADIC,
    OP2_EXT, OP2_EXTU, OP2_MAK, OP2_ROT,
    OP2_LD, OP2_ST, OP2_LDA, OP2_ADD, OP2_SUB,
    COND_NAMES,
)

# ---------------------------------------------------------------------------
#  Mnemonic tables
# ---------------------------------------------------------------------------

COND_MAP = {name: mask for mask, name in COND_NAMES.items()}

# mnemonic -> (immediate-form op1, triadic op2)
MEMALU_OPS = {
    "ld":  (OP_LD_IMM,  OP2_LD),
    "st":  (OP_ST_IMM,  OP2_ST),
    "lda": (OP_LDA_IMM, OP2_LDA),
    "add": (OP_ADD_IMM, OP2_ADD),
    "sub": (OP_SUB_IMM, OP2_SUB),
}

# Scaled index only exists for the address-forming instructions
SCALABLE = ("ld", "st", "lda")

BITFIELD_OPS = {
    "ext":  OP2_EXT,
    "extu": OP2_EXTU,
    "mak":  OP2_MAK,
    "rot":  OP2_ROT,
}

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _parse_reg(tok: str) -> int:
    """Parse 'r0'-'r31'. Returns register index."""
    tok = tok.strip().lower()
    if tok.startswith("r") and tok[1:].isdigit():
        n = int(tok[1:])
        if 0 <= n <= 31:
            return n
    raise ValueError(f"Invalid register: {tok!r}")

def _parse_imm(tok: str) -> int:
    """Parse an immediate value (decimal or 0x hex)."""
    tok = tok.strip()
    if tok.startswith("-"):
        return -_parse_imm(tok[1:])
    return int(tok, 0)

def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace."""
    return [s.strip() for s in rest.split(",") if s.strip()]

def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' -> (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]

def _is_reg(tok: str) -> bool:
    tok = tok.strip().lower()
    return tok.startswith("r") and tok[1:].isdigit()

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def assemble(source: str, base_addr: int = 0, listing: bool = False) -> list[int]:
    """
    Two-pass assembler.
    Pass 1: collect labels and word addresses.
    Pass 2: emit instruction words with resolved displacements.
    The result is the memory image from *base_addr* up; gaps left by .org
    are zero-filled.  If listing=True, print an address/hex/source listing.
    """
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = raw.split(";", 1)[0].strip()
        if stripped:
            cleaned.append((i, stripped))

    # ---- Pass 1: labels ----
    labels: dict[str, int] = {}
    items: list[tuple[int, str, int]] = []  # (line_no, text, address)
    pc = base_addr

    for lineno, text in cleaned:
        # Allow "label: instruction" on one line
        while ":" in text:
            lbl, text = text.split(":", 1)
            lbl = lbl.strip()
            if not lbl.isidentifier():
                raise AsmError(lineno, f"Bad label: {lbl!r}")
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = pc
            text = text.strip()
        if not text:
            continue

        head, rest = _split_mnemonic(text)
        head = head.lower()
        if head == ".org":
            try:
                target = _parse_imm(rest)
            except ValueError:
                raise AsmError(lineno, f"Bad .org address: {rest.strip()!r}") from None
            if target < pc or target % 4:
                raise AsmError(lineno, f".org {target:#x} must be word-aligned "
                                       f"and not below {pc:#x}")
            pc = target
            continue
        if head == ".word":
            count = len(_split_ops(rest))
            items.append((lineno, text, pc))
            pc += 4 * count
            continue

        items.append((lineno, text, pc))
        pc += 4

    # ---- Pass 2: emit ----
    image: list[int] = [0] * ((pc - base_addr) // 4)
    for lineno, text, addr in items:
        try:
            head, rest = _split_mnemonic(text)
            if head.lower() == ".word":
                words = [_parse_imm(v) & 0xFFFF_FFFF for v in _split_ops(rest)]
            else:
                words = [_emit_instruction(lineno, text, addr, labels)]
        except ValueError as e:
            raise AsmError(lineno, str(e)) from None
        for i, w in enumerate(words):
            image[(addr - base_addr) // 4 + i] = w
            if listing:
                print(f"  {addr + 4 * i:08x}  {w:08x}  {text if i == 0 else ''}")

    return image


def _branch_disp(tok: str, labels: dict[str, int], pc: int, bits: int,
                 lineno: int) -> int:
    """Word displacement for a label or literal branch operand."""
    tok = tok.strip()
    if tok in labels:
        disp = (labels[tok] - pc) >> 2
    elif tok.isidentifier():
        raise AsmError(lineno, f"Undefined label: {tok}")
    else:
        disp = _parse_imm(tok)
    lo = -(1 << (bits - 1))
    hi = (1 << (bits - 1)) - 1
    if disp == 0:
        raise AsmError(lineno, "Branch displacement must be non-zero")
    if disp < lo or disp > hi:
        raise AsmError(lineno, f"Branch displacement {disp} out of range [{lo}, {hi}]")
    return disp & ((1 << bits) - 1)


def _emit_instruction(lineno: int, text: str, pc: int,
                      labels: dict[str, int]) -> int:
    """Emit the word for one instruction."""
    mnem, rest = _split_mnemonic(text)
    mnem = mnem.lower()
    ops = _split_ops(rest)

    def need(n: int):
        if len(ops) != n:
            raise AsmError(lineno, f"{mnem} expects {n} operands, got {len(ops)}")

    if mnem == "halt":
        need(0)
        return OP_HALT << 26

    # ---- ld / st / lda / add / sub ----
    if mnem in MEMALU_OPS:
        op1, op2 = MEMALU_OPS[mnem]
        # Scaled form: rD, rS1[rS2]
        if len(ops) == 2 and "[" in ops[1]:
            if mnem not in SCALABLE:
                raise AsmError(lineno, f"{mnem} has no scaled form")
            base, _, idx = ops[1].partition("[")
            if not idx.endswith("]"):
                raise AsmError(lineno, f"Bad scaled operand: {ops[1]!r}")
            d, s1, s2 = _parse_reg(ops[0]), _parse_reg(base), _parse_reg(idx[:-1])
            return ((OP_TRIADIC << 26) | (d << 21) | (s1 << 16) | (op2 << 10)
                    | (1 << 9) | s2)
        need(3)
        d, s1 = _parse_reg(ops[0]), _parse_reg(ops[1])
        if _is_reg(ops[2]):
            s2 = _parse_reg(ops[2])
            return (OP_TRIADIC << 26) | (d << 21) | (s1 << 16) | (op2 << 10) | s2
        imm = _parse_imm(ops[2])
        if not 0 <= imm <= 0xFFFF:
            raise AsmError(lineno, f"Immediate {imm} out of range [0, 0xffff]")
        return (op1 << 26) | (d << 21) | (s1 << 16) | imm

    # ---- ext / extu / mak / rot ----
    if mnem in BITFIELD_OPS:
        need(3)
        d, s1 = _parse_reg(ops[0]), _parse_reg(ops[1])
        amount = _parse_imm(ops[2])
        if not 0 <= amount <= 31:
            raise AsmError(lineno, f"Shift amount {amount} out of range [0, 31]")
        return ((OP_BITFIELD << 26) | (d << 21) | (s1 << 16)
                | (BITFIELD_OPS[mnem] << 10) | amount)

    # ---- br ----
    if mnem == "br":
        need(1)
        return (OP_BR << 26) | _branch_disp(ops[0], labels, pc, 26, lineno)

    # ---- bcnd ----
    if mnem == "bcnd":
        need(3)
        cond = ops[0].lower()
        if cond in COND_MAP:
            mask = COND_MAP[cond]
        else:
            mask = _parse_imm(cond)
            if not 0 <= mask <= 31:
                raise AsmError(lineno, f"Condition mask {mask} out of range [0, 31]")
        s1 = _parse_reg(ops[1])
        disp = _branch_disp(ops[2], labels, pc, 16, lineno)
        return (OP_BCND << 26) | (mask << 21) | (s1 << 16) | disp

    raise AsmError(lineno, f"Unknown mnemonic: {mnem!r}")
