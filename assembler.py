"""Module: assemble source text into an object image.

This module contains:
- tokenize(line) -> list of tokens
- parse(source) -> list of Line records
- Assembler class that turns parsed lines into (origin, words)
"""

from __future__ import annotations

import argparse
import re
from pathlib import Path
from typing import NamedTuple

from isa import (
    GP_REGISTERS,
    MEM_CELLS,
    WORD_MASK,
    Add,
    And,
    Argument,
    Br,
    Immediate,
    Instruction,
    Jmp,
    Jsr,
    Jsrr,
    Ld,
    Ldi,
    Ldr,
    Lea,
    Not,
    Register,
    Rti,
    St,
    Sti,
    Str,
    Trap,
    TrapVector,
    encode,
    listing,
    to_signed,
    write_image,
)

TOKEN_RE = re.compile(
    r"""
    \s*                             # skip leading whitespace
    (;.*|                           # comment until end-of-line
     "([^"\\]|\\.)*"|               # double-quoted string (with escapes)
     ,|                             # operand separator
     [^\s,;"]+)                     # opcode, register, label or literal
    """,
    re.VERBOSE,
)

OPCODES = {
    "ADD",
    "AND",
    "NOT",
    "LD",
    "LDI",
    "LDR",
    "LEA",
    "ST",
    "STI",
    "STR",
    "JMP",
    "RET",
    "JSR",
    "JSRR",
    "RTI",
    "TRAP",
    "NOP",
}
TRAP_ALIASES = {
    "GETC": TrapVector.GETC,
    "OUT": TrapVector.OUT,
    "PUTS": TrapVector.PUTS,
    "HALT": TrapVector.HALT,
}
DIRECTIVES = {".ORIG", ".FILL", ".BLKW", ".STRINGZ", ".END"}

_BR_RE = re.compile(r"^BR[NZP]*$")
_REG_RE = re.compile(r"^[rR]([0-7])$")
_LABEL_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NUM_RE = re.compile(r"^(#-?\d+|-?\d+|[xX]-?[0-9a-fA-F]+|0[xX][0-9a-fA-F]+|[bB]-?[01]+)$")

_PC_RELATIVE = {"LD": Ld, "LDI": Ldi, "LEA": Lea, "ST": St, "STI": Sti}
_BASE_OFFSET = {"LDR": Ldr, "STR": Str}


class AsmError(SyntaxError):
    """Raised on malformed assembly source; carries the 1-based line number."""

    def __init__(self, lineno: int, msg: str) -> None:
        super().__init__(f"line {lineno}: {msg}")
        self.lineno = lineno


class Line(NamedTuple):
    lineno: int
    label: str | None
    op: str | None
    operands: list[str]


def tokenize(s: str) -> list[str]:
    """Split one source line into tokens, dropping comments and commas."""
    tokens: list[str] = []
    for m in TOKEN_RE.finditer(s):
        tok = m.group(1)
        if tok is None or tok == ",":
            continue
        if tok.startswith(";"):
            break
        tokens.append(tok)
    return tokens


def _decode_string_token(tok: str) -> str:
    """Decode a double-quoted token into a Python string."""
    s = tok[1:-1]
    return s.encode("latin-1", "backslashreplace").decode("unicode_escape")


def _is_op(tok: str) -> bool:
    up = tok.upper()
    return up in OPCODES or up in TRAP_ALIASES or up in DIRECTIVES or bool(_BR_RE.match(up))


def parse(source: str) -> list[Line]:
    """Parse source text into Line records.

    Blank and comment-only lines are skipped; nothing after .END is read.
    """
    lines: list[Line] = []
    for lineno, text in enumerate(source.splitlines(), start=1):
        toks = tokenize(text)
        if not toks:
            continue
        label = None
        if not _is_op(toks[0]):
            label = toks.pop(0)
            if not _LABEL_RE.match(label) or _REG_RE.match(label):
                raise AsmError(lineno, f"unknown opcode or bad label {label!r}")
            if _NUM_RE.match(label):
                raise AsmError(lineno, f"label {label!r} reads as a number")
        op = None
        if toks:
            op = toks.pop(0).upper()
            if not _is_op(op):
                raise AsmError(lineno, f"unknown opcode {op!r}")
        lines.append(Line(lineno, label, op, toks))
        if op == ".END":
            break
    return lines


class Assembler:
    """Assembler: two passes over parsed lines, producing origin and words."""

    def __init__(self, lines: list[Line]) -> None:
        """Create an Assembler for already parsed lines."""
        self.lines = lines
        self.origin = 0
        self.labels: dict[str, int] = {}
        self.words: list[int] = []

    def assemble(self) -> tuple[int, list[int]]:
        """Resolve labels, then emit words. Returns (origin, words)."""
        body = self._program_lines()
        self._first_pass(body)
        for line in body:
            self._emit_line(line)
        return self.origin, self.words

    # --- operand helpers ---
    def _arity(self, line: Line, n: int) -> list[str]:
        if len(line.operands) != n:
            msg = f"{line.op} expects {n} operand(s), got {len(line.operands)}"
            raise AsmError(line.lineno, msg)
        return line.operands

    def _number(self, line: Line, tok: str) -> int:
        if not _NUM_RE.match(tok):
            raise AsmError(line.lineno, f"bad number {tok!r}")
        if tok[0] == "#":
            return int(tok[1:], 10)
        if tok[:2].lower() == "0x":
            return int(tok[2:], 16)
        if tok[0] in "xX":
            return int(tok[1:], 16)
        if tok[0] in "bB":
            return int(tok[1:], 2)
        return int(tok, 10)

    def _reg(self, line: Line, tok: str) -> Register:
        m = _REG_RE.match(tok)
        if not m:
            raise AsmError(line.lineno, f"expected register, got {tok!r}")
        return GP_REGISTERS[int(m.group(1))]

    def _reg_or_imm(self, line: Line, tok: str) -> Argument:
        if _REG_RE.match(tok):
            return self._reg(line, tok)
        return Immediate(self._number(line, tok))

    def _address(self, line: Line, tok: str) -> int:
        if _NUM_RE.match(tok):
            return self._number(line, tok)
        if tok not in self.labels:
            raise AsmError(line.lineno, f"undefined label {tok!r}")
        return self.labels[tok]

    def _pc_offset(self, line: Line, tok: str) -> int:
        """Literal offsets are taken as-is; labels become target - (address + 1)."""
        if _NUM_RE.match(tok):
            return self._number(line, tok)
        here = self.origin + len(self.words)
        return to_signed((self._address(line, tok) - here - 1) & WORD_MASK)

    def _stringz(self, line: Line) -> str:
        (tok,) = self._arity(line, 1)
        if len(tok) < 2 or not (tok.startswith('"') and tok.endswith('"')):
            raise AsmError(line.lineno, f"expected quoted string, got {tok!r}")
        return _decode_string_token(tok)

    # --- passes ---
    def _program_lines(self) -> list[Line]:
        """Return lines between .ORIG and .END, setting the origin."""
        body: list[Line] = []
        started = False
        for line in self.lines:
            if not started:
                if line.op != ".ORIG":
                    raise AsmError(line.lineno, "program must start with .ORIG")
                (tok,) = self._arity(line, 1)
                origin = self._number(line, tok)
                if not 0 <= origin <= WORD_MASK:
                    raise AsmError(line.lineno, f".ORIG address {origin} out of range")
                self.origin = origin
                started = True
                continue
            if line.op == ".ORIG":
                raise AsmError(line.lineno, "only one .ORIG block is supported")
            if line.op == ".END":
                if line.label is not None:
                    body.append(Line(line.lineno, line.label, None, []))
                break
            body.append(line)
        if not started:
            raise AsmError(0, "missing .ORIG")
        return body

    def _size(self, line: Line) -> int:
        if line.op is None:
            return 0
        if line.op == ".BLKW":
            (tok,) = self._arity(line, 1)
            count = self._number(line, tok)
            if count < 0:
                raise AsmError(line.lineno, ".BLKW count must be non-negative")
            return count
        if line.op == ".STRINGZ":
            return len(self._stringz(line)) + 1
        return 1

    def _first_pass(self, body: list[Line]) -> None:
        addr = self.origin
        for line in body:
            if line.label is not None:
                if line.label in self.labels:
                    raise AsmError(line.lineno, f"duplicate label {line.label!r}")
                self.labels[line.label] = addr & WORD_MASK
            addr += self._size(line)
        if addr - self.origin > MEM_CELLS:
            raise AsmError(body[-1].lineno, "program doesn't fit into memory")

    def _emit_line(self, line: Line) -> None:
        if line.op is None:
            return
        if line.op == ".FILL":
            (tok,) = self._arity(line, 1)
            value = self._address(line, tok)
            if not -0x8000 <= value <= WORD_MASK:
                raise AsmError(line.lineno, f".FILL value {value} does not fit in a word")
            self.words.append(value & WORD_MASK)
            return
        if line.op == ".BLKW":
            self.words.extend([0] * self._size(line))
            return
        if line.op == ".STRINGZ":
            for ch in self._stringz(line):
                self.words.append(ord(ch) & WORD_MASK)
            self.words.append(0)
            return

        instr = self._instruction(line)
        try:
            self.words.append(encode(instr))
        except ValueError as e:
            raise AsmError(line.lineno, str(e)) from e

    def _instruction(self, line: Line) -> Instruction:  # noqa: C901
        op = line.op or ""
        if op in ("ADD", "AND"):
            dr, sr1, arg = self._arity(line, 3)
            cls = Add if op == "ADD" else And
            return cls(self._reg(line, dr), self._reg(line, sr1), self._reg_or_imm(line, arg))
        if op == "NOT":
            dr, sr = self._arity(line, 2)
            return Not(self._reg(line, dr), self._reg(line, sr))
        if _BR_RE.match(op):
            (target,) = self._arity(line, 1)
            cond = op[2:] or "NZP"
            return Br("N" in cond, "Z" in cond, "P" in cond, self._pc_offset(line, target))
        if op == "NOP":
            self._arity(line, 0)
            return Br(False, False, False, 0)
        if op == "JMP":
            (base,) = self._arity(line, 1)
            return Jmp(self._reg(line, base))
        if op == "RET":
            self._arity(line, 0)
            return Jmp(Register.R7)
        if op == "JSR":
            (target,) = self._arity(line, 1)
            return Jsr(self._pc_offset(line, target))
        if op == "JSRR":
            (base,) = self._arity(line, 1)
            return Jsrr(self._reg(line, base))
        if op in _PC_RELATIVE:
            r, target = self._arity(line, 2)
            return _PC_RELATIVE[op](self._reg(line, r), self._pc_offset(line, target))
        if op in _BASE_OFFSET:
            r, base, offset = self._arity(line, 3)
            return _BASE_OFFSET[op](self._reg(line, r), self._reg(line, base), self._number(line, offset))
        if op == "RTI":
            self._arity(line, 0)
            return Rti()
        if op == "TRAP":
            (vector,) = self._arity(line, 1)
            return Trap(self._number(line, vector))
        self._arity(line, 0)
        return Trap(TRAP_ALIASES[op])


# --- helper entrypoints for using this module programmatically ---


def assemble_source(src: str) -> tuple[int, list[int]]:
    """Assemble source text and return (origin, words)."""
    return Assembler(parse(src)).assemble()


def assemble_file(
    input_path: str | Path,
    out: str | Path | None = None,
    with_listing: bool = False,
) -> str:
    """Assemble a source file and write the object image.

    Returns the image path. If `out` is not provided it is derived from
    input_path ("<stem>.obj"). With `with_listing` a "<out>.lst"
    disassembly listing is written next to it.
    """
    p = Path(input_path)
    if not p.exists():
        err = f"Source file not found: {input_path}"
        raise FileNotFoundError(err)

    origin, words = assemble_source(p.read_text(encoding="utf-8"))
    out_path = p.with_suffix(".obj") if out is None else Path(out)
    out_path.write_bytes(write_image(origin, words))

    if with_listing:
        Path(str(out_path) + ".lst").write_text(listing(origin, words) + "\n", encoding="utf-8")

    return str(out_path)


# --- CLI ---
if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Assemble source into an object image")
    ap.add_argument("input", help="source file (e.g. program.asm)")
    ap.add_argument("-o", "--out", help="output image (default: <input>.obj)")
    ap.add_argument("--listing", action="store_true", help="also write a disassembly listing (<out>.lst)")
    args = ap.parse_args()

    print(assemble_file(args.input, out=args.out, with_listing=args.listing))
