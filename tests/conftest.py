"""Shared fixtures: an in-memory console standing in for stdin/stdout."""

from typing import List, Optional, Tuple

import pytest

from interpreter import Interpreter


class Console:
    def __init__(self, data: bytes = b"") -> None:
        self.pending = list(data)
        self.chunks: List[str] = []

    def read(self) -> Optional[int]:
        if not self.pending:
            return None
        return self.pending.pop(0)

    def write(self, text: str) -> None:
        self.chunks.append(text)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


def make_interpreter(source: str, stdin: bytes = b"", **kwargs) -> Tuple[Interpreter, Console]:
    console = Console(stdin)
    interpreter = Interpreter(source=source, on_input=console.read, on_output=console.write, **kwargs)
    return interpreter, console


@pytest.fixture
def run():
    """Run source text and return everything it wrote."""

    def _run(source: str, stdin: bytes = b"") -> str:
        interpreter, console = make_interpreter(source, stdin)
        interpreter.run()
        return console.text

    return _run
