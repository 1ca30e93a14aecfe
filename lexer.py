from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple


class FalseError(Exception):
    """Base class for interpreter errors."""


class FalseParseError(FalseError):
    """Raised when a caller asks for a program that has parse diagnostics."""

    def __init__(self, diagnostics: List["ParseDiagnostic"]) -> None:
        self.diagnostics = list(diagnostics)
        if self.diagnostics:
            summary = str(self.diagnostics[0])
            if len(self.diagnostics) > 1:
                summary += f" (and {len(self.diagnostics) - 1} more)"
        else:
            summary = "parse failed"
        super().__init__(summary)


@dataclass(frozen=True)
class Span:
    """Half-open range of string offsets into the source."""

    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start

    def merge(self, other: "Span") -> "Span":
        return Span(min(self.start, other.start), max(self.end, other.end))


@dataclass
class Token:
    type: str
    value: str
    span: Span
    line: int
    column: int
    # Decoded payload for CHAR (byte value) and STRING (text) tokens.
    payload: object = None


@dataclass
class ParseDiagnostic:
    span: Span
    expected: Tuple[str, ...]
    found: Optional[str]
    line: int
    column: int
    message: str

    def __str__(self) -> str:
        return f"{self.line}:{self.column}: {self.message}"


def describe_found(found: Optional[str]) -> str:
    return "end of input" if found is None else repr(found)


def make_message(expected: Tuple[str, ...], found: Optional[str], detail: str = "") -> str:
    parts: List[str] = []
    if detail:
        parts.append(detail)
    parts.append(f"found {describe_found(found)}")
    if expected:
        if len(expected) == 1:
            parts.append(f"expected {expected[0]}")
        else:
            parts.append("expected one of " + ", ".join(expected))
    return ", ".join(parts)


def locate(source: str, offset: int) -> Tuple[int, int, str]:
    """Return the 1-indexed (line, column) for offset and the text of that line."""
    offset = max(0, min(offset, len(source)))
    line = source.count("\n", 0, offset) + 1
    line_start = source.rfind("\n", 0, offset) + 1
    line_end = source.find("\n", offset)
    if line_end == -1:
        line_end = len(source)
    return line, offset - line_start + 1, source[line_start:line_end]


OPERATORS = {
    "$": "DUP",
    "%": "DROP",
    "\\": "SWAP",
    "@": "ROT",
    "ø": "PICK",
    "+": "ADD",
    "-": "SUB",
    "*": "MUL",
    "/": "DIV",
    "_": "NEG",
    "&": "BITAND",
    "|": "BITOR",
    "~": "BITNOT",
    ">": "GT",
    "=": "EQ",
    "!": "EXECUTE",
    ":": "STORE",
    ";": "FETCH",
    "^": "READCHAR",
    ",": "WRITECHAR",
    ".": "WRITEINT",
    "ß": "FLUSH",
}

SYMBOLS = {
    "[": "LBRACKET",
    "]": "RBRACKET",
    "?": "QUESTION",
    "#": "HASH",
}

SIMPLE_ESCAPES = {
    "\\": "\\",
    "/": "/",
    '"': '"',
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}

HEX_DIGITS = "0123456789abcdefABCDEF"

INT32_MAX = 2 ** 31 - 1


class Lexer:
    def __init__(self, text: str) -> None:
        self.text = text
        self.index = 0
        self.line = 1
        self.column = 1
        self.diagnostics: List[ParseDiagnostic] = []

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        operators = OPERATORS
        symbols = SYMBOLS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch.isspace():
                _advance()
                continue
            if ch == "{":
                self._consume_comment()
                continue
            if ch in symbols:
                tokens_append(self._single(symbols[ch], ch))
                continue
            if ch in operators:
                tokens_append(self._single(operators[ch], ch))
                continue
            if "0" <= ch <= "9":
                token = self._consume_number()
                if token is not None:
                    tokens_append(token)
                continue
            if "a" <= ch <= "z":
                tokens_append(self._single("NAME", ch))
                continue
            if ch == "'":
                token = self._consume_char()
                if token is not None:
                    tokens_append(token)
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            line, col, start = self.line, self.column, self.index
            _advance()
            self._error(
                Span(start, self.index),
                line,
                col,
                expected=("an instruction",),
                found=ch,
                detail="unrecognized character",
            )
        tokens_append(Token("EOF", "", Span(n, n), self.line, self.column))
        return tokens

    def _single(self, token_type: str, ch: str) -> Token:
        line, col, start = self.line, self.column, self.index
        self._advance()
        return Token(token_type, ch, Span(start, self.index), line, col)

    def _consume_comment(self) -> None:
        line, col, start = self.line, self.column, self.index
        text = self.text
        closing = text.find("}", start + 1)
        if closing == -1:
            while self.index < len(text):
                self._advance()
            self._error(Span(start, self.index), line, col, expected=("'}'",), found=None, detail="unterminated comment")
            return
        while self.index <= closing:
            self._advance()

    def _consume_number(self) -> Optional[Token]:
        line, col, start = self.line, self.column, self.index
        text = self.text
        n = len(text)
        while self.index < n and "0" <= text[self.index] <= "9":
            self._advance()
        digits = text[start:self.index]
        span = Span(start, self.index)
        if int(digits) > INT32_MAX:
            self._error(span, line, col, expected=("an integer up to 2147483647",), found=digits, detail="integer literal out of range")
            return None
        return Token("INT", digits, span, line, col)

    def _consume_char(self) -> Optional[Token]:
        line, col, start = self.line, self.column, self.index
        self._advance()  # consume quote
        if self._eof:
            self._error(Span(start, self.index), line, col, expected=("a character",), found=None)
            return None
        ch = self._peek()
        self._advance()
        span = Span(start, self.index)
        try:
            encoded = ch.encode("latin-1")
        except UnicodeEncodeError:
            self._error(span, line, col, expected=("a single-byte character",), found=ch, detail="character literal has no single-byte encoding")
            return None
        return Token("CHAR", ch, span, line, col, payload=encoded[0])

    def _consume_string(self) -> Token:
        line, col, start = self.line, self.column, self.index
        self._advance()  # consume opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == '"':
                self._advance()
                return Token("STRING", self.text[start:self.index], Span(start, self.index), line, col, payload="".join(chars))
            if ch == "\\":
                chars.append(self._consume_escape())
                continue
            chars.append(ch)
            self._advance()
        span = Span(start, self.index)
        self._error(span, line, col, expected=("'\"'",), found=None, detail="unterminated string literal")
        return Token("STRING", self.text[start:self.index], span, line, col, payload="".join(chars))

    def _consume_escape(self) -> str:
        line, col, start = self.line, self.column, self.index
        self._advance()  # consume backslash
        if self._eof:
            self._error(Span(start, self.index), line, col, expected=("an escape sequence",), found=None)
            return ""
        ch = self._peek()
        self._advance()
        if ch in SIMPLE_ESCAPES:
            return SIMPLE_ESCAPES[ch]
        if ch != "u":
            self._error(
                Span(start, self.index),
                line,
                col,
                expected=("one of \\\\ \\/ \\\" \\b \\f \\n \\r \\t \\uXXXX",),
                found="\\" + ch,
                detail="invalid escape sequence",
            )
            return ch
        digits: List[str] = []
        while len(digits) < 4 and not self._eof and self._peek() in HEX_DIGITS:
            digits.append(self._peek())
            self._advance()
        span = Span(start, self.index)
        if len(digits) < 4:
            found = self._peek() if not self._eof else None
            self._error(span, line, col, expected=("4 hex digits",), found=found, detail="truncated unicode escape")
            return "\ufffd"
        code = int("".join(digits), 16)
        if 0xD800 <= code <= 0xDFFF:
            self._error(span, line, col, expected=("a unicode scalar value",), found="\\u" + "".join(digits), detail="invalid code point")
            return "\ufffd"
        return chr(code)

    def _error(
        self,
        span: Span,
        line: int,
        column: int,
        *,
        expected: Tuple[str, ...],
        found: Optional[str],
        detail: str = "",
    ) -> None:
        self.diagnostics.append(
            ParseDiagnostic(
                span=span,
                expected=expected,
                found=found,
                line=line,
                column=column,
                message=make_message(expected, found, detail),
            )
        )

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
