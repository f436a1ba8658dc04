"""ISA: register ids, instruction encodings and helpers.

Instructions are 16-bit words with the opcode in the top four bits. Each
opcode decodes into its own frozen dataclass carrying only the operand
fields that opcode defines; `decode` and `encode` convert between the two
forms. Program images use the usual object layout: big-endian words, the
first of which is the load origin.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Union

WORD_MASK = 0xFFFF
MEM_CELLS = 1 << 16
PC_START = 0x3000


class Register(Enum):
    """Addressable register slots: R0..R7, program counter and condition flags."""

    R0 = 0
    R1 = 1
    R2 = 2
    R3 = 3
    R4 = 4
    R5 = 5
    R6 = 6
    R7 = 7
    PC = 8
    COND = 9


GP_REGISTERS = (
    Register.R0,
    Register.R1,
    Register.R2,
    Register.R3,
    Register.R4,
    Register.R5,
    Register.R6,
    Register.R7,
)


class Flag(IntEnum):
    """Condition bits held in the COND register."""

    POS = 1 << 0
    ZERO = 1 << 1
    NEG = 1 << 2


class OpCode(IntEnum):
    """Keeps the 4-bit opcodes."""

    BR = 0
    ADD = 1
    LD = 2
    ST = 3
    JSR = 4  # JSR and JSRR, selected by bit 11
    AND = 5
    LDR = 6
    STR = 7
    RTI = 8
    NOT = 9
    LDI = 10
    STI = 11
    JMP = 12  # RET is JMP R7
    RES = 13  # reserved, never decodes
    LEA = 14
    TRAP = 15


class TrapVector(IntEnum):
    """Service routines reachable through TRAP."""

    GETC = 0x20
    OUT = 0x21
    PUTS = 0x22
    HALT = 0x25


class DecodeError(ValueError):
    """Raised when a word does not encode any instruction."""

    def __init__(self, word: int) -> None:
        self.word = word & WORD_MASK
        super().__init__(f"unrecognized instruction word x{self.word:04X}")


class ImageError(ValueError):
    """Raised when a program image cannot be read."""

    pass


@dataclass(frozen=True)
class Immediate:
    """Sign-extended 5-bit immediate operand of ADD/AND."""

    value: int


Argument = Union[Register, Immediate]


@dataclass(frozen=True)
class Add:
    dr: Register
    sr1: Register
    arg: Argument


@dataclass(frozen=True)
class And:
    dr: Register
    sr1: Register
    arg: Argument


@dataclass(frozen=True)
class Br:
    n: bool
    z: bool
    p: bool
    pc_offset: int


@dataclass(frozen=True)
class Jmp:
    base_r: Register


@dataclass(frozen=True)
class Jsr:
    pc_offset: int


@dataclass(frozen=True)
class Jsrr:
    base_r: Register


@dataclass(frozen=True)
class Ld:
    dr: Register
    pc_offset: int


@dataclass(frozen=True)
class Ldi:
    dr: Register
    pc_offset: int


@dataclass(frozen=True)
class Ldr:
    dr: Register
    base_r: Register
    offset: int


@dataclass(frozen=True)
class Lea:
    dr: Register
    pc_offset: int


@dataclass(frozen=True)
class Not:
    dr: Register
    sr: Register


@dataclass(frozen=True)
class Rti:
    pass


@dataclass(frozen=True)
class St:
    sr: Register
    pc_offset: int


@dataclass(frozen=True)
class Sti:
    sr: Register
    pc_offset: int


@dataclass(frozen=True)
class Str:
    sr: Register
    base_r: Register
    offset: int


@dataclass(frozen=True)
class Trap:
    vector: int


Instruction = Union[Add, And, Br, Jmp, Jsr, Jsrr, Ld, Ldi, Ldr, Lea, Not, Rti, St, Sti, Str, Trap]


def sign_extend(value: int, bits: int) -> int:
    """Interpret the low `bits` bits of value as a two's complement number."""
    value &= (1 << bits) - 1
    if value & (1 << (bits - 1)):
        return value - (1 << bits)
    return value


def to_signed(word: int) -> int:
    """Signed view of a 16-bit word."""
    return sign_extend(word, 16)


def _reg(word: int, shift: int) -> Register:
    return GP_REGISTERS[(word >> shift) & 0x7]


def decode(word: int) -> Instruction:  # noqa: C901
    """Decode a 16-bit word into an Instruction.

    Raises DecodeError for the reserved opcode. Bits an encoding leaves
    unused are ignored.
    """
    word &= WORD_MASK
    op = word >> 12
    if op == OpCode.RES:
        raise DecodeError(word)
    opcode = OpCode(op)

    if opcode in (OpCode.ADD, OpCode.AND):
        arg: Argument
        if word & 0x20:
            arg = Immediate(sign_extend(word, 5))
        else:
            arg = _reg(word, 0)
        if opcode == OpCode.ADD:
            return Add(_reg(word, 9), _reg(word, 6), arg)
        return And(_reg(word, 9), _reg(word, 6), arg)
    if opcode == OpCode.BR:
        return Br(bool(word & 0x800), bool(word & 0x400), bool(word & 0x200), sign_extend(word, 9))
    if opcode == OpCode.JMP:
        return Jmp(_reg(word, 6))
    if opcode == OpCode.JSR:
        if word & 0x800:
            return Jsr(sign_extend(word, 11))
        return Jsrr(_reg(word, 6))
    if opcode == OpCode.LD:
        return Ld(_reg(word, 9), sign_extend(word, 9))
    if opcode == OpCode.LDI:
        return Ldi(_reg(word, 9), sign_extend(word, 9))
    if opcode == OpCode.LDR:
        return Ldr(_reg(word, 9), _reg(word, 6), sign_extend(word, 6))
    if opcode == OpCode.LEA:
        return Lea(_reg(word, 9), sign_extend(word, 9))
    if opcode == OpCode.NOT:
        return Not(_reg(word, 9), _reg(word, 6))
    if opcode == OpCode.RTI:
        return Rti()
    if opcode == OpCode.ST:
        return St(_reg(word, 9), sign_extend(word, 9))
    if opcode == OpCode.STI:
        return Sti(_reg(word, 9), sign_extend(word, 9))
    if opcode == OpCode.STR:
        return Str(_reg(word, 9), _reg(word, 6), sign_extend(word, 6))
    return Trap(word & 0xFF)


# --- encoding ---
def _gp(reg: Register) -> int:
    if reg not in GP_REGISTERS:
        msg = f"{reg.name} is not a general-purpose register"
        raise ValueError(msg)
    return reg.value


def _signed_field(value: int, bits: int, what: str) -> int:
    lo = -(1 << (bits - 1))
    hi = (1 << (bits - 1)) - 1
    if not lo <= value <= hi:
        msg = f"{what} {value} out of range {lo}..{hi}"
        raise ValueError(msg)
    return value & ((1 << bits) - 1)


def _dr_base(opcode: OpCode, r: Register, base: Register) -> int:
    return (opcode << 12) | (_gp(r) << 9) | (_gp(base) << 6)


def _pc_relative(opcode: OpCode, r: Register, pc_offset: int) -> int:
    return (opcode << 12) | (_gp(r) << 9) | _signed_field(pc_offset, 9, "PC offset")


def _alu(opcode: OpCode, dr: Register, sr1: Register, arg: Argument) -> int:
    word = _dr_base(opcode, dr, sr1)
    if isinstance(arg, Immediate):
        return word | 0x20 | _signed_field(arg.value, 5, "immediate")
    return word | _gp(arg)


def encode(instr: Instruction) -> int:  # noqa: C901
    """Encode an Instruction into its 16-bit word.

    Raises ValueError when an operand does not fit its field.
    """
    if isinstance(instr, Add):
        return _alu(OpCode.ADD, instr.dr, instr.sr1, instr.arg)
    if isinstance(instr, And):
        return _alu(OpCode.AND, instr.dr, instr.sr1, instr.arg)
    if isinstance(instr, Br):
        flags = (instr.n << 11) | (instr.z << 10) | (instr.p << 9)
        return (OpCode.BR << 12) | flags | _signed_field(instr.pc_offset, 9, "PC offset")
    if isinstance(instr, Jmp):
        return (OpCode.JMP << 12) | (_gp(instr.base_r) << 6)
    if isinstance(instr, Jsr):
        return (OpCode.JSR << 12) | 0x800 | _signed_field(instr.pc_offset, 11, "PC offset")
    if isinstance(instr, Jsrr):
        return (OpCode.JSR << 12) | (_gp(instr.base_r) << 6)
    if isinstance(instr, Ld):
        return _pc_relative(OpCode.LD, instr.dr, instr.pc_offset)
    if isinstance(instr, Ldi):
        return _pc_relative(OpCode.LDI, instr.dr, instr.pc_offset)
    if isinstance(instr, Ldr):
        return _dr_base(OpCode.LDR, instr.dr, instr.base_r) | _signed_field(instr.offset, 6, "offset")
    if isinstance(instr, Lea):
        return _pc_relative(OpCode.LEA, instr.dr, instr.pc_offset)
    if isinstance(instr, Not):
        return _dr_base(OpCode.NOT, instr.dr, instr.sr) | 0x3F
    if isinstance(instr, Rti):
        return OpCode.RTI << 12
    if isinstance(instr, St):
        return _pc_relative(OpCode.ST, instr.sr, instr.pc_offset)
    if isinstance(instr, Sti):
        return _pc_relative(OpCode.STI, instr.sr, instr.pc_offset)
    if isinstance(instr, Str):
        return _dr_base(OpCode.STR, instr.sr, instr.base_r) | _signed_field(instr.offset, 6, "offset")
    if isinstance(instr, Trap):
        if not 0 <= instr.vector <= 0xFF:
            msg = f"trap vector {instr.vector} out of range 0..255"
            raise ValueError(msg)
        return (OpCode.TRAP << 12) | instr.vector
    msg = f"not an instruction: {instr!r}"
    raise TypeError(msg)


def _arg_text(arg: Argument) -> str:
    if isinstance(arg, Immediate):
        return f"#{arg.value}"
    return arg.name


def mnemonic(instr: Instruction) -> str:  # noqa: C901
    """Get assembler-style text for an instruction."""
    if isinstance(instr, Add):
        return f"ADD {instr.dr.name}, {instr.sr1.name}, {_arg_text(instr.arg)}"
    if isinstance(instr, And):
        return f"AND {instr.dr.name}, {instr.sr1.name}, {_arg_text(instr.arg)}"
    if isinstance(instr, Br):
        cond = ("n" if instr.n else "") + ("z" if instr.z else "") + ("p" if instr.p else "")
        if not cond:
            return "NOP"
        return f"BR{cond} #{instr.pc_offset}"
    if isinstance(instr, Jmp):
        if instr.base_r == Register.R7:
            return "RET"
        return f"JMP {instr.base_r.name}"
    if isinstance(instr, Jsr):
        return f"JSR #{instr.pc_offset}"
    if isinstance(instr, Jsrr):
        return f"JSRR {instr.base_r.name}"
    if isinstance(instr, (Ld, Ldi, Lea)):
        return f"{type(instr).__name__.upper()} {instr.dr.name}, #{instr.pc_offset}"
    if isinstance(instr, (St, Sti)):
        return f"{type(instr).__name__.upper()} {instr.sr.name}, #{instr.pc_offset}"
    if isinstance(instr, Ldr):
        return f"LDR {instr.dr.name}, {instr.base_r.name}, #{instr.offset}"
    if isinstance(instr, Str):
        return f"STR {instr.sr.name}, {instr.base_r.name}, #{instr.offset}"
    if isinstance(instr, Not):
        return f"NOT {instr.dr.name}, {instr.sr.name}"
    if isinstance(instr, Rti):
        return "RTI"
    return f"TRAP x{instr.vector:02X}"


def listing(origin: int, words: list[int]) -> str:
    """Disassembly listing, one `xADDR - WORD - MNEMONIC` line per word."""
    lines: list[str] = []
    for i, word in enumerate(words):
        addr = (origin + i) & WORD_MASK
        try:
            mnem = mnemonic(decode(word))
        except DecodeError:
            mnem = "<decode error>"
        lines.append(f"x{addr:04X} - {word & WORD_MASK:04X} - {mnem}")
    return "\n".join(lines)


# --- program images ---
def read_image(blob: bytes) -> tuple[int, list[int]]:
    """Split an object image into (origin, words).

    Raises ImageError on an empty image or an odd byte count.
    """
    if len(blob) < 2:
        err = "Image too short: no origin word"
        raise ImageError(err)
    if len(blob) % 2:
        err = f"Image has odd length ({len(blob)} bytes)"
        raise ImageError(err)
    words = list(struct.unpack(f">{len(blob) // 2}H", blob))
    origin = words.pop(0)
    if len(words) > MEM_CELLS:
        err = "Image doesn't fit into memory"
        raise ImageError(err)
    return origin, words


def write_image(origin: int, words: list[int]) -> bytes:
    """Build an object image from an origin and its words."""
    data = [origin & WORD_MASK] + [w & WORD_MASK for w in words]
    return struct.pack(f">{len(data)}H", *data)
