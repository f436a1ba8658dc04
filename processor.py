"""Processor (Datapath + ControlUnit) and CLI wrapper.

Provides the register/memory datapath of one VM instance, byte I/O
back-ends for the trap services, the control unit that fetches, decodes
and executes one instruction per step, the driver loop and a runner that
wires everything together from configuration.
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Protocol

from assembler import AsmError, assemble_source
from config import ConfigError, load_config
from isa import (
    GP_REGISTERS,
    MEM_CELLS,
    PC_START,
    WORD_MASK,
    Add,
    And,
    Argument,
    Br,
    DecodeError,
    Flag,
    ImageError,
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
    OpCode,
    Register,
    Rti,
    St,
    Sti,
    Str,
    Trap,
    TrapVector,
    decode,
    mnemonic,
    read_image,
)

LOGFILE = "processor.log"


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level. If console=True also echo logs to stderr,
    keeping stdout for the program's own output.
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.WARNING
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-5s %(message)s"

    fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter(file_fmt))
    root.addHandler(fh)

    if console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


# --- capabilities consumed by the control unit ---
class VmMemory(Protocol):
    """Register file and word-addressed memory."""

    def read_reg(self, reg: Register) -> int: ...

    def write_reg(self, reg: Register, value: int) -> None: ...

    def read_mem(self, addr: int) -> int: ...

    def write_mem(self, addr: int, value: int) -> None: ...

    def read_terminated_bytes(self, addr: int) -> bytes: ...


class VmIO(Protocol):
    """Blocking byte I/O used by the trap services."""

    def read_byte(self) -> int: ...

    def write_byte(self, value: int) -> None: ...

    def write_bytes(self, data: bytes) -> None: ...


class Datapath:
    """Datapath (registers + memory) for one VM instance.

    Every value is kept as an unsigned 16-bit word and every address wraps
    around the 64K-word space, so no access can fail.
    """

    registers: list[int]
    memory: list[int]

    def __init__(self) -> None:
        """Allocate zeroed registers and memory."""
        self.registers = [0] * len(Register)
        self.memory = [0] * MEM_CELLS

    def read_reg(self, reg: Register) -> int:
        """Return the word held in `reg`."""
        return self.registers[reg.value]

    def write_reg(self, reg: Register, value: int) -> None:
        """Store `value` in `reg`, truncated to 16 bits."""
        self.registers[reg.value] = int(value) & WORD_MASK

    def read_mem(self, addr: int) -> int:
        """Return the word at `addr` (wrapped to the 64K space)."""
        return self.memory[addr & WORD_MASK]

    def write_mem(self, addr: int, value: int) -> None:
        """Store `value` at `addr`, truncated to 16 bits."""
        self.memory[addr & WORD_MASK] = int(value) & WORD_MASK

    def read_terminated_bytes(self, addr: int) -> bytes:
        """Collect the low byte of each word from `addr` up to the first zero word.

        The terminator is not included. A scan that finds no zero stops after
        one full sweep of memory.
        """
        out = bytearray()
        for i in range(MEM_CELLS):
            word = self.memory[(addr + i) & WORD_MASK]
            if word == 0:
                break
            out.append(word & 0xFF)
        return bytes(out)

    def load_image(self, origin: int, words: list[int]) -> None:
        """Copy program words into memory starting at `origin`."""
        if len(words) > MEM_CELLS:
            err = "Image doesn't fit into memory"
            raise MemoryError(err)
        for i, word in enumerate(words):
            self.write_mem(origin + i, word)
        logging.debug("Datapath: loaded %d words at x%04X", len(words), origin & WORD_MASK)


class StreamIO:
    """Byte I/O over binary streams, stdin/stdout by default."""

    def __init__(self, instream: BinaryIO | None = None, outstream: BinaryIO | None = None) -> None:
        """Bind to the given streams, or to stdin/stdout when omitted."""
        self.instream = instream if instream is not None else sys.stdin.buffer
        self.outstream = outstream if outstream is not None else sys.stdout.buffer

    def read_byte(self) -> int:
        """Read one byte from the input stream; EOFError at end of input."""
        b = self.instream.read(1)
        if not b:
            err = "end of input"
            raise EOFError(err)
        return b[0]

    def write_byte(self, value: int) -> None:
        """Write the low byte of `value`."""
        self.write_bytes(bytes([value & 0xFF]))

    def write_bytes(self, data: bytes) -> None:
        """Write `data` and flush the output stream."""
        self.outstream.write(data)
        self.outstream.flush()


class BufferedIO:
    """In-memory byte I/O: scripted input queue and captured output."""

    input_buffer: deque[int]
    output_buffer: bytearray

    def __init__(self, input_bytes: bytes = b"") -> None:
        """Queue `input_bytes` as pending input."""
        self.input_buffer = deque(input_bytes)
        self.output_buffer = bytearray()

    def feed(self, data: bytes) -> None:
        """Append bytes to the pending input."""
        self.input_buffer.extend(data)

    def read_byte(self) -> int:
        """Pop the next scripted byte; EOFError when none are left."""
        if not self.input_buffer:
            err = "no more scripted input"
            raise EOFError(err)
        return self.input_buffer.popleft()

    def write_byte(self, value: int) -> None:
        """Capture the low byte of `value`."""
        self.output_buffer.append(value & 0xFF)

    def write_bytes(self, data: bytes) -> None:
        """Capture `data`."""
        self.output_buffer.extend(data)

    def output_text(self) -> str:
        """Captured output decoded as latin-1."""
        return self.output_buffer.decode("latin-1")


# --- step results and failures ---
class Outcome(Enum):
    """Result of one successful step."""

    CONTINUE = "continue"
    HALTED = "halted"


class TickError(Exception):
    """Base class for failures that stop the run loop."""

    pass


class DecodeFailure(TickError):
    """The word at PC does not encode an instruction."""

    def __init__(self, word: int, address: int) -> None:
        self.word = word
        self.address = address
        super().__init__(f"cannot decode word x{word:04X} at x{address:04X}")


class IoFailure(TickError):
    """A trap service failed to read or write a byte."""

    def __init__(self, vector: int, cause: BaseException) -> None:
        self.vector = vector
        self.cause = cause
        super().__init__(f"I/O failure in TRAP x{vector:02X}: {cause}")


class UnsupportedOperation(TickError):
    """An instruction or trap vector this user-mode machine does not provide."""

    def __init__(self, what: str, code: int) -> None:
        self.what = what
        self.code = code
        super().__init__(f"unsupported {what} (x{code:02X})")


class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC cycle over a datapath."""

    dp: VmMemory
    io: VmIO
    trace: bool
    ticks: int

    def __init__(self, dp: VmMemory, io: VmIO, trace: bool = False) -> None:
        """Create a ControlUnit bound to `dp` and `io`."""
        self.dp = dp
        self.io = io
        self.trace = trace
        self.ticks = 0

    def init(self) -> None:
        """Reset PC and condition flags. Run once before the first step."""
        self.dp.write_reg(Register.PC, PC_START)
        self.dp.write_reg(Register.COND, Flag.ZERO)
        self.ticks = 0

    def _log_step(self, pc: int, word: int, instr: Instruction) -> None:
        dp = self.dp
        regs = " ".join(f"{r.name}: {dp.read_reg(r):04X}" for r in GP_REGISTERS)
        logging.debug(
            "TICK: %5d PC: x%04X WORD: %04X COND: %d %s\tINSTR: %s",
            self.ticks,
            pc,
            word,
            dp.read_reg(Register.COND),
            regs,
            mnemonic(instr),
        )

    def step(self) -> Outcome:
        """Fetch, decode and execute one instruction.

        PC is advanced past the fetched word before the instruction takes
        effect, so PC-relative operands are based on the following address.
        A word that fails to decode leaves every register untouched.
        """
        dp = self.dp
        pc = dp.read_reg(Register.PC)
        word = dp.read_mem(pc)
        try:
            instr = decode(word)
        except DecodeError as e:
            logging.debug("Decode error at x%04X: word %04X", pc, word)
            raise DecodeFailure(word, pc) from e
        dp.write_reg(Register.PC, pc + 1)

        outcome = self.exec(instr)
        self.ticks += 1
        if self.trace:
            self._log_step(pc, word, instr)
        return outcome

    def set_cc(self, reg: Register) -> None:
        """Set exactly one of N/Z/P from the signed value held in `reg`."""
        value = self.dp.read_reg(reg)
        if value == 0:
            self.dp.write_reg(Register.COND, Flag.ZERO)
        elif value < 0x8000:
            self.dp.write_reg(Register.COND, Flag.POS)
        else:
            self.dp.write_reg(Register.COND, Flag.NEG)

    def _operand(self, arg: Argument) -> int:
        if isinstance(arg, Immediate):
            return arg.value & WORD_MASK
        return self.dp.read_reg(arg)

    def _pc_relative(self, offset: int) -> int:
        return (self.dp.read_reg(Register.PC) + offset) & WORD_MASK

    def exec(self, instr: Instruction) -> Outcome:  # noqa: C901
        """Apply the effect of a decoded instruction (PC already advanced)."""
        dp = self.dp

        if isinstance(instr, Add):
            dp.write_reg(instr.dr, dp.read_reg(instr.sr1) + self._operand(instr.arg))
            self.set_cc(instr.dr)
            return Outcome.CONTINUE
        if isinstance(instr, And):
            dp.write_reg(instr.dr, dp.read_reg(instr.sr1) & self._operand(instr.arg))
            self.set_cc(instr.dr)
            return Outcome.CONTINUE
        if isinstance(instr, Not):
            dp.write_reg(instr.dr, ~dp.read_reg(instr.sr))
            self.set_cc(instr.dr)
            return Outcome.CONTINUE

        if isinstance(instr, Br):
            cond = dp.read_reg(Register.COND)
            taken = (
                (instr.n and cond & Flag.NEG)
                or (instr.z and cond & Flag.ZERO)
                or (instr.p and cond & Flag.POS)
            )
            if taken:
                dp.write_reg(Register.PC, self._pc_relative(instr.pc_offset))
            return Outcome.CONTINUE
        if isinstance(instr, Jmp):
            dp.write_reg(Register.PC, dp.read_reg(instr.base_r))
            return Outcome.CONTINUE
        if isinstance(instr, Jsr):
            target = self._pc_relative(instr.pc_offset)
            dp.write_reg(Register.R7, dp.read_reg(Register.PC))
            dp.write_reg(Register.PC, target)
            return Outcome.CONTINUE
        if isinstance(instr, Jsrr):
            # read base first: JSRR R7 jumps to the old R7
            target = dp.read_reg(instr.base_r)
            dp.write_reg(Register.R7, dp.read_reg(Register.PC))
            dp.write_reg(Register.PC, target)
            return Outcome.CONTINUE

        if isinstance(instr, Ld):
            dp.write_reg(instr.dr, dp.read_mem(self._pc_relative(instr.pc_offset)))
            self.set_cc(instr.dr)
            return Outcome.CONTINUE
        if isinstance(instr, Ldi):
            addr = dp.read_mem(self._pc_relative(instr.pc_offset))
            dp.write_reg(instr.dr, dp.read_mem(addr))
            self.set_cc(instr.dr)
            return Outcome.CONTINUE
        if isinstance(instr, Ldr):
            dp.write_reg(instr.dr, dp.read_mem(dp.read_reg(instr.base_r) + instr.offset))
            self.set_cc(instr.dr)
            return Outcome.CONTINUE
        if isinstance(instr, Lea):
            dp.write_reg(instr.dr, self._pc_relative(instr.pc_offset))
            self.set_cc(instr.dr)
            return Outcome.CONTINUE

        if isinstance(instr, St):
            dp.write_mem(self._pc_relative(instr.pc_offset), dp.read_reg(instr.sr))
            return Outcome.CONTINUE
        if isinstance(instr, Sti):
            addr = dp.read_mem(self._pc_relative(instr.pc_offset))
            dp.write_mem(addr, dp.read_reg(instr.sr))
            return Outcome.CONTINUE
        if isinstance(instr, Str):
            dp.write_mem(dp.read_reg(instr.base_r) + instr.offset, dp.read_reg(instr.sr))
            return Outcome.CONTINUE

        if isinstance(instr, Trap):
            dp.write_reg(Register.R7, dp.read_reg(Register.PC))
            return self.trap(instr.vector)
        if isinstance(instr, Rti):
            logging.debug("RTI at x%04X: no supervisor mode", (dp.read_reg(Register.PC) - 1) & WORD_MASK)
            raise UnsupportedOperation("opcode RTI", OpCode.RTI)

        msg = f"not an instruction: {instr!r}"
        raise TypeError(msg)

    def trap(self, vector: int) -> Outcome:
        """Run the service routine selected by `vector`."""
        dp = self.dp
        try:
            if vector == TrapVector.GETC:
                ch = self.io.read_byte() & 0xFF
                dp.write_reg(Register.R0, ch)
                logging.debug("GETC -> %d", ch)
                return Outcome.CONTINUE
            if vector == TrapVector.OUT:
                self.io.write_byte(dp.read_reg(Register.R0) & 0xFF)
                return Outcome.CONTINUE
            if vector == TrapVector.PUTS:
                data = dp.read_terminated_bytes(dp.read_reg(Register.R0))
                self.io.write_bytes(data)
                logging.debug("PUTS -> %d bytes", len(data))
                return Outcome.CONTINUE
        except (OSError, EOFError) as e:
            logging.debug("TRAP x%02X: I/O failure: %s", vector, e)
            raise IoFailure(vector, e) from e

        if vector == TrapVector.HALT:
            logging.debug("HALT encountered after %d ticks", self.ticks)
            return Outcome.HALTED
        logging.debug("TRAP x%02X is not provided", vector)
        raise UnsupportedOperation("trap vector", vector)


def run(cu: ControlUnit) -> None:
    """Step `cu` until it halts. Any TickError propagates to the caller."""
    while True:
        if cu.step() is Outcome.HALTED:
            return


def run_bounded(cu: ControlUnit, tick_limit: int | None = None, on_unsupported: str = "fail") -> str:
    """Step `cu` until halt or until `tick_limit` instructions have executed.

    With on_unsupported="skip" an UnsupportedOperation is logged and the
    machine carries on with the next instruction. Returns the final state:
    "halted" or "limit".
    """
    while True:
        if tick_limit is not None and cu.ticks >= tick_limit:
            logging.debug("Tick limit %d reached", tick_limit)
            return "limit"
        try:
            if cu.step() is Outcome.HALTED:
                return "halted"
        except UnsupportedOperation as e:
            if on_unsupported != "skip":
                raise
            logging.warning("Skipping %s", e)
            cu.ticks += 1


# ---------- Public API ----------
def run_image(
    origin: int,
    words: list[int],
    config: dict[str, Any] | None = None,
    io: VmIO | None = None,
) -> tuple[str, int, str]:
    """Run a program image and return (captured output, ticks, state).

    Output is only captured when the VM talks to a BufferedIO, which is
    used by default when the config carries scripted `input`.
    """
    cfg = load_config(config)
    if io is None:
        if cfg["input"] is not None:
            io = BufferedIO(cfg["input"].encode("latin-1"))
        else:
            io = StreamIO()

    dp = Datapath()
    cu = ControlUnit(dp, io, trace=cfg["trace"])
    cu.init()
    dp.load_image(origin, words)
    if origin != PC_START:
        logging.warning("Image origin x%04X differs from reset address x%04X", origin, PC_START)

    state = run_bounded(cu, cfg["tick_limit"], cfg["on_unsupported"])
    out = io.output_text() if isinstance(io, BufferedIO) else ""
    return out, cu.ticks, state


def load_program(path: str | Path) -> tuple[int, list[int]]:
    """Load `.asm` source (assembled on the fly) or an object image."""
    p = Path(path)
    if p.suffix.lower() == ".asm":
        return assemble_source(p.read_text(encoding="utf-8"))
    return read_image(p.read_bytes())


# ---------- CLI ----------
def main(argv: list[str] | None = None) -> int:
    """Command-line entry point. Returns the process exit code."""
    ap = argparse.ArgumentParser(description="VM runner. Accepts assembly source (.asm) or an object image (.obj).")
    ap.add_argument("program", help="program.asm or program.obj")
    ap.add_argument("--input", help="read program input from this file instead of stdin", default=None)
    ap.add_argument("--config", help="path to yaml config", default=None)
    ap.add_argument("--trace", action="store_true", help="log every executed instruction (needs --debug)")
    ap.add_argument("--debug", action="store_true", help="enable debug logging to logfile")
    ap.add_argument("--logfile", default=LOGFILE, help="path to processor log")
    ap.add_argument("--console", action="store_true", help="also echo logs to stderr")
    args = ap.parse_args(argv)

    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print("Bad config:", e, file=sys.stderr)
        return 2
    if args.trace:
        cfg["trace"] = True

    try:
        origin, words = load_program(args.program)
    except FileNotFoundError:
        print("Program file not found:", args.program, file=sys.stderr)
        return 2
    except (ImageError, AsmError) as e:
        print("Bad program:", e, file=sys.stderr)
        return 2

    instream = None
    io: VmIO | None = None
    try:
        if args.input is not None:
            instream = open(args.input, "rb")  # noqa: SIM115
            io = StreamIO(instream=instream)
        elif cfg["input"] is not None:
            io = BufferedIO(cfg["input"].encode("latin-1"))
        else:
            io = StreamIO()
        _, ticks, state = run_image(origin, words, cfg, io)
    except OSError as e:
        print("Cannot open input:", e, file=sys.stderr)
        return 2
    except TickError as e:
        logging.error("VM stopped: %s", e)
        print("VM error:", e, file=sys.stderr)
        return 1
    finally:
        if instream is not None:
            instream.close()
        # captured output is emitted whether the run halted or failed
        if isinstance(io, BufferedIO) and io.output_buffer:
            sys.stdout.buffer.write(bytes(io.output_buffer))
            sys.stdout.buffer.flush()

    logging.debug("Finished: state=%s ticks=%d", state, ticks)
    return 0


if __name__ == "__main__":
    sys.exit(main())
