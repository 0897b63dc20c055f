# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Text and JSON output."""

import json
import sys
from collections.abc import Sequence
from typing import Any, TextIO

from pydantic import BaseModel

PLACEHOLDER = "-"


def text_or_dash(value: Any) -> str:
    if value is None:
        return PLACEHOLDER
    text = str(value).strip()
    return text or PLACEHOLDER


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True, by_alias=True)
    return value


class Renderer:
    """Writes command output as aligned text or JSON.

    Streams are looked up at write time so redirected ``sys.stdout`` (as in
    tests) is honored.
    """

    def __init__(self, json_output: bool = False, stdout: TextIO | None = None, stderr: TextIO | None = None):
        self.json_output = json_output
        self._stdout = stdout
        self._stderr = stderr

    @property
    def stdout(self) -> TextIO:
        return self._stdout or sys.stdout

    @property
    def stderr(self) -> TextIO:
        return self._stderr or sys.stderr

    def json(self, value: Any, compact: bool = False) -> None:
        data = to_jsonable(value)
        if compact:
            self.stdout.write(json.dumps(data, ensure_ascii=False, separators=(",", ":")) + "\n")
        else:
            self.stdout.write(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
        self.stdout.flush()

    def line(self, text: str = "") -> None:
        self.stdout.write(text + "\n")
        self.stdout.flush()

    def warn(self, text: str) -> None:
        self.stderr.write(text + "\n")
        self.stderr.flush()

    def fields(self, pairs: Sequence[tuple[str, Any]]) -> None:
        """Prints ``Label: value`` lines, skipping nothing and dashing empty values."""
        for label, value in pairs:
            self.line(f"{label}: {text_or_dash(value)}")

    def table(self, headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> None:
        cells = [[text_or_dash(cell) for cell in row] for row in rows]
        widths = [len(h) for h in headers]
        for row in cells:
            for i, cell in enumerate(row):
                widths[i] = max(widths[i], len(cell))
        self.line("  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)).rstrip())
        for row in cells:
            self.line("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
