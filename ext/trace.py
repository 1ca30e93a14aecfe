"""falsy extension: instruction trace.

Writes one line per executed instruction to stderr:

    [step 3] Add '+' at 4..5  stack: 2 3

and a step count when the program finishes. Load with ``--ext ext/trace.py``.
"""

from __future__ import annotations

import sys
from typing import Any

from extensions import ExtensionAPI


FALSY_EXTENSION_NAME = "trace"
FALSY_EXTENSION_API_VERSION = 1


def falsy_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=FALSY_EXTENSION_NAME, version="1.0.0")
    state = {"steps": 0}

    @ext.on_event("before_instruction")
    def _trace(interpreter: Any, ctx: Any, instruction: Any) -> None:
        state["steps"] += 1
        stack = " ".join(entry.render() for entry in ctx.stack)
        span = instruction.span
        sys.stderr.write(
            f"[step {state['steps']}] {instruction.rule} {instruction.symbol!r} at {span.start}..{span.end}  stack: {stack}\n"
        )

    @ext.on_event("program_end")
    def _summary(interpreter: Any, ctx: Any) -> None:
        sys.stderr.write(f"[trace] {state['steps']} instructions executed\n")
