"""Assembler tests: tokenizer, parser, label resolution, directives, errors."""

from __future__ import annotations

from pathlib import Path

import pytest
from assembler import AsmError, assemble_file, assemble_source, parse, tokenize
from isa import read_image


def test_tokenize_drops_commas_and_comments() -> None:
    assert tokenize("LOOP ADD R1, R1, #-1 ; count down") == ["LOOP", "ADD", "R1", "R1", "#-1"]


def test_tokenize_keeps_strings_whole() -> None:
    assert tokenize('MSG .STRINGZ "a, b; c"') == ["MSG", ".STRINGZ", '"a, b; c"']


def test_parse_splits_label_op_operands() -> None:
    lines = parse("   .ORIG x3000\nDONE  halt\nALONE\n")
    assert [(ln.lineno, ln.label, ln.op, ln.operands) for ln in lines] == [
        (1, None, ".ORIG", ["x3000"]),
        (2, "DONE", "HALT", []),
        (3, "ALONE", None, []),
    ]


def test_parse_rejects_unknown_opcode() -> None:
    with pytest.raises(AsmError) as excinfo:
        parse(".ORIG x3000\nFOO BAR R1\n")
    assert excinfo.value.lineno == 2


def test_assemble_labels_are_pc_relative() -> None:
    origin, words = assemble_source(
        """
        .ORIG x3000
        LEA R0, MSG
        PUTS
        HALT
MSG     .STRINGZ "Hi"
        .END
        """
    )
    assert origin == 0x3000
    assert words == [0xE002, 0xF022, 0xF025, ord("H"), ord("i"), 0]


def test_backward_branch_and_literal_forms() -> None:
    _, words = assemble_source(
        """
        .ORIG x3000
TOP     ADD R0, R0, x1
        ADD R0, R0, b11
        AND R0, R0, 7
        BRzp TOP
        .FILL 0x1234
        .FILL #-1
        .FILL TOP
        .END
        """
    )
    assert words == [0x1021, 0x1023, 0x5027, 0x07FC, 0x1234, 0xFFFF, 0x3000]


def test_br_without_flags_means_always() -> None:
    _, words = assemble_source(".ORIG x3000\nL BR L\nNOP\n.END\n")
    assert words == [0x0FFF, 0x0000]


def test_subroutine_and_memory_ops() -> None:
    _, words = assemble_source(
        """
        .ORIG x3000
        JSR SUB
        JSRR R3
        LDR R1, R2, #-2
        STR R1, R2, #3
        LDI R4, PTR
        STI R4, PTR
        NOT R5, R4
        RTI
SUB     RET
PTR     .FILL x4000
        .END
        """
    )
    assert words == [0x4807, 0x40C0, 0x62BE, 0x7283, 0xA804, 0xB803, 0x9B3F, 0x8000, 0xC1C0, 0x4000]


def test_trap_aliases() -> None:
    _, words = assemble_source(".ORIG x3000\nGETC\nOUT\nPUTS\nHALT\nTRAP x25\n.END\n")
    assert words == [0xF020, 0xF021, 0xF022, 0xF025, 0xF025]


def test_blkw_and_stringz_escapes() -> None:
    _, words = assemble_source('.ORIG x3000\nBUF .BLKW 3\nS .STRINGZ "a\\n"\nEND_ .FILL BUF\n.END\n')
    assert words == [0, 0, 0, ord("a"), 10, 0, 0x3000]


def test_stringz_is_latin1() -> None:
    _, words = assemble_source('.ORIG x3000\n.STRINGZ "é\\xff"\n.END\n')
    assert words == [0xE9, 0xFF, 0]


def test_label_on_end_line_marks_next_address() -> None:
    _, words = assemble_source(".ORIG x3000\nLEA R0, LAST\nLAST .END\n")
    assert words == [0xE000]


def test_text_after_end_is_ignored() -> None:
    _, words = assemble_source(".ORIG x3000\nHALT\n.END\nthis is not assembled\n")
    assert words == [0xF025]


@pytest.mark.parametrize(
    ("source", "lineno"),
    [
        ("HALT\n", 1),
        (".ORIG x3000\nBR NOWHERE\n.END\n", 2),
        (".ORIG x3000\nA HALT\nA HALT\n.END\n", 3),
        (".ORIG x3000\nADD R0, R0, #16\n.END\n", 2),
        (".ORIG x3000\nADD R0, R9, #1\n.END\n", 2),
        (".ORIG x3000\nADD R0, R1\n.END\n", 2),
        (".ORIG x3000\nLDR R0, R1, #32\n.END\n", 2),
        (".ORIG x3000\nTRAP x100\n.END\n", 2),
        (".ORIG x3000\n.FILL x10000\n.END\n", 2),
        (".ORIG x3000\n.STRINGZ oops\n.END\n", 2),
        (".ORIG x3000\n.ORIG x4000\n.END\n", 2),
        (".ORIG x3000\n.BLKW #-1\n.END\n", 2),
        (".ORIG x3000\nLD R0, #zz\n.END\n", 2),
        (".ORIG x3000\nLD R0, xA\nHALT\nxA .FILL 5\n.END\n", 4),
        (".ORIG x3000\nb10 .FILL 1\n.END\n", 2),
    ],
)
def test_errors_carry_line_numbers(source: str, lineno: int) -> None:
    with pytest.raises(AsmError) as excinfo:
        assemble_source(source)
    assert excinfo.value.lineno == lineno


def test_far_label_is_out_of_range() -> None:
    src = ".ORIG x3000\nLD R0, FAR\n.BLKW 300\nFAR .FILL 1\n.END\n"
    with pytest.raises(AsmError, match="out of range"):
        assemble_source(src)


def test_missing_orig() -> None:
    with pytest.raises(AsmError, match="missing .ORIG"):
        assemble_source("; nothing here\n")


def test_assemble_file_writes_image_and_listing(tmp_path: Path) -> None:
    src = tmp_path / "prog.asm"
    src.write_text(".ORIG x3000\nHALT\n.END\n", encoding="utf-8")
    out = assemble_file(src, with_listing=True)
    assert out == str(tmp_path / "prog.obj")
    assert read_image(Path(out).read_bytes()) == (0x3000, [0xF025])
    assert Path(out + ".lst").read_text(encoding="utf-8") == "x3000 - F025 - TRAP x25\n"


def test_assemble_file_missing(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        assemble_file(tmp_path / "nope.asm")
