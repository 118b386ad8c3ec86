#!/usr/bin/env python3
"""
Dump the OpenAPI schema of the PDF service to a JSON file.

Usage:
    python scripts/generate_openapi.py [--out <path>]

Without --out the schema is written to docs/openapi.json relative to the repo root.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pdf_service.pdf_controller import app  # noqa: E402

DEFAULT_OUT = ROOT / "docs" / "openapi.json"


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate OpenAPI JSON from the FastAPI app")
    parser.add_argument("--out", type=Path, default=DEFAULT_OUT, help="Output file path for openapi.json")
    args = parser.parse_args()

    out_path: Path = args.out
    out_path.parent.mkdir(parents=True, exist_ok=True)

    out_path.write_text(json.dumps(app.openapi(), ensure_ascii=False, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    print(f"OpenAPI schema written to {out_path}")


if __name__ == "__main__":
    main()
