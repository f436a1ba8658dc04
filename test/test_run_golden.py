"""Golden-test runner for the assembler -> VM pipeline.

This test loads golden YAML records, assembles their source, runs the VM
with scripted input and compares produced outputs (object image, stdout, registers,
memory, ticks, state, listing, log) against the expectations in the
golden files.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import processor
import pytest
from assembler import assemble_source
from config import load_config
from isa import Register, listing, write_image
from processor import BufferedIO, ControlUnit, Datapath, run_bounded


def _mismatch(msg_title: str, got_text: str, expected_text: str) -> str:
    return f"{msg_title}\n--- got ---\n{got_text}\n--- expected ---\n{expected_text}"


def _close_log_handlers() -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        h.flush()
        h.close()
        root.removeHandler(h)


@pytest.mark.golden_test("golden/*.yaml")
def test_assembler_and_vm(golden: Any, tmp_path: Path) -> None:  # noqa: C901
    """Run one golden record: assemble, run and compare outputs."""
    assert "__yaml_load_error__" not in golden, golden.get("__yaml_load_error__")

    source = golden.get("source")
    if not source:
        pytest.skip("No source provided in golden record")

    cfg = load_config(golden.get("config") or {})
    origin, words = assemble_source(source)

    log_path = tmp_path / "processor.log"
    processor.init_logging(logfile=str(log_path), debug=True, console=False)

    bio = BufferedIO(str(golden.get("in_stdin", "")).encode("latin-1"))
    dp = Datapath()
    cu = ControlUnit(dp, bio, trace=cfg["trace"])
    cu.init()
    dp.load_image(origin, words)

    expect = golden.get("expect") or {}
    error_name = expect.get("error")
    state = None
    try:
        if error_name:
            with pytest.raises(processor.TickError) as excinfo:
                run_bounded(cu, cfg["tick_limit"], cfg["on_unsupported"])
            assert type(excinfo.value).__name__ == error_name, f"got {excinfo.value!r}"
        else:
            state = run_bounded(cu, cfg["tick_limit"], cfg["on_unsupported"])
    finally:
        _close_log_handlers()

    # 1) object image and listing
    if "out_code" in expect:
        got_code = write_image(origin, words)
        exp_code = bytes(expect["out_code"])
        if got_code != exp_code:
            raise AssertionError(_mismatch("out_code mismatch", got_code.hex(" "), exp_code.hex(" ")))
    if "out_code_hex" in expect:
        exp_hex = expect["out_code_hex"].strip()
        got_hex = listing(origin, words).strip()
        if got_hex != exp_hex:
            raise AssertionError(_mismatch("listing mismatch", got_hex, exp_hex))

    # 2) stdout
    if "out_stdout" in expect:
        out = bio.output_text()
        if out != expect["out_stdout"]:
            raise AssertionError(_mismatch("stdout mismatch", out, expect["out_stdout"]))

    # 3) ticks/state
    if "ticks" in expect:
        assert cu.ticks == int(expect["ticks"]), f"ticks mismatch: got {cu.ticks} expected {expect['ticks']}"
    if "state" in expect:
        assert state == expect["state"], f"state mismatch: got {state} expected {expect['state']}"

    # 4) registers, by name
    for name, value in (expect.get("registers") or {}).items():
        got = dp.read_reg(Register[name])
        assert got == int(value), f"{name} mismatch: got x{got:04X} expected x{int(value):04X}"

    # 5) memory, address -> word
    for addr, value in (expect.get("memory") or {}).items():
        got = dp.read_mem(int(addr))
        assert got == int(value), f"memory[x{int(addr):04X}] mismatch: got {got} expected {value}"

    # 6) processor log fragments
    log_text = log_path.read_text(encoding="utf-8")
    for fragment in expect.get("log_contains") or []:
        assert fragment in log_text, _mismatch("processor.log lacks fragment", log_text[:4000], fragment)
