#!/usr/bin/env python3
# tools/generate_golden_fields.py
"""
Generate out_code (!!binary object image) and out_code_hex (listing) for a golden YAML.
Usage: python generate_golden_fields.py path/to/golden.yaml [--no-binary]
"""

import os
import sys

import yaml

from assembler import AsmError, assemble_source
from isa import listing, write_image


def main(path, with_binary=True):
    if not os.path.exists(path):
        print("File not found:", path)
        sys.exit(2)

    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f) or {}

    src_code = doc.get("source")
    if not src_code:
        print("No 'source' found in YAML, nothing to assemble")
        sys.exit(2)

    try:
        origin, words = assemble_source(src_code)
    except AsmError as e:
        print("Assembly failed:", e)
        sys.exit(2)

    if "expect" not in doc or doc["expect"] is None:
        doc["expect"] = {}
    target = doc["expect"]

    if with_binary:
        target["out_code"] = write_image(origin, words)  # bytes -> yaml !!binary
    target["out_code_hex"] = listing(origin, words) + "\n"

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(doc, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    print(f"Updated {path} with out_code_hex ({len(words)} words at x{origin:04X}).")


if __name__ == "__main__":
    args = [a for a in sys.argv[1:] if a != "--no-binary"]
    if len(args) != 1:
        print("Usage: generate_golden_fields.py path/to/golden.yaml [--no-binary]")
        sys.exit(1)
    main(args[0], with_binary="--no-binary" not in sys.argv)
