from __future__ import annotations
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple, Type

from lexer import FalseParseError, Lexer, ParseDiagnostic, Span, Token, make_message


@dataclass(frozen=True)
class Instruction:
    span: Span

    symbol: ClassVar[str] = ""

    @property
    def rule(self) -> str:
        return self.__class__.__name__


Body = Tuple[Instruction, ...]


@dataclass(frozen=True)
class Name(Instruction):
    letter: str

    symbol: ClassVar[str] = "name"


@dataclass(frozen=True)
class PushInt(Instruction):
    value: int

    symbol: ClassVar[str] = "integer"


@dataclass(frozen=True)
class PushChar(Instruction):
    value: int

    symbol: ClassVar[str] = "'"


@dataclass(frozen=True)
class Dup(Instruction):
    symbol: ClassVar[str] = "$"


@dataclass(frozen=True)
class Drop(Instruction):
    symbol: ClassVar[str] = "%"


@dataclass(frozen=True)
class Swap(Instruction):
    symbol: ClassVar[str] = "\\"


@dataclass(frozen=True)
class Rot(Instruction):
    symbol: ClassVar[str] = "@"


@dataclass(frozen=True)
class Pick(Instruction):
    symbol: ClassVar[str] = "ø"


@dataclass(frozen=True)
class Add(Instruction):
    symbol: ClassVar[str] = "+"


@dataclass(frozen=True)
class Sub(Instruction):
    symbol: ClassVar[str] = "-"


@dataclass(frozen=True)
class Mul(Instruction):
    symbol: ClassVar[str] = "*"


@dataclass(frozen=True)
class Div(Instruction):
    symbol: ClassVar[str] = "/"


@dataclass(frozen=True)
class Neg(Instruction):
    symbol: ClassVar[str] = "_"


@dataclass(frozen=True)
class BitAnd(Instruction):
    symbol: ClassVar[str] = "&"


@dataclass(frozen=True)
class BitOr(Instruction):
    symbol: ClassVar[str] = "|"


@dataclass(frozen=True)
class BitNot(Instruction):
    symbol: ClassVar[str] = "~"


@dataclass(frozen=True)
class Gt(Instruction):
    symbol: ClassVar[str] = ">"


@dataclass(frozen=True)
class Eq(Instruction):
    symbol: ClassVar[str] = "="


@dataclass(frozen=True)
class Lambda(Instruction):
    body: Body

    symbol: ClassVar[str] = "[]"


@dataclass(frozen=True)
class Execute(Instruction):
    symbol: ClassVar[str] = "!"


@dataclass(frozen=True)
class ConditionalExecute(Instruction):
    body: Body

    symbol: ClassVar[str] = "?"


@dataclass(frozen=True)
class WhileLoop(Instruction):
    condition: Body
    body: Body

    symbol: ClassVar[str] = "#"


@dataclass(frozen=True)
class Store(Instruction):
    symbol: ClassVar[str] = ":"


@dataclass(frozen=True)
class Fetch(Instruction):
    symbol: ClassVar[str] = ";"


@dataclass(frozen=True)
class ReadChar(Instruction):
    symbol: ClassVar[str] = "^"


@dataclass(frozen=True)
class WriteChar(Instruction):
    symbol: ClassVar[str] = ","


@dataclass(frozen=True)
class WriteStr(Instruction):
    text: str

    symbol: ClassVar[str] = "string"


@dataclass(frozen=True)
class WriteInt(Instruction):
    symbol: ClassVar[str] = "."


@dataclass(frozen=True)
class Flush(Instruction):
    symbol: ClassVar[str] = "ß"


OPERATOR_INSTRUCTIONS: Dict[str, Type[Instruction]] = {
    "DUP": Dup,
    "DROP": Drop,
    "SWAP": Swap,
    "ROT": Rot,
    "PICK": Pick,
    "ADD": Add,
    "SUB": Sub,
    "MUL": Mul,
    "DIV": Div,
    "NEG": Neg,
    "BITAND": BitAnd,
    "BITOR": BitOr,
    "BITNOT": BitNot,
    "GT": Gt,
    "EQ": Eq,
    "EXECUTE": Execute,
    "STORE": Store,
    "FETCH": Fetch,
    "READCHAR": ReadChar,
    "WRITECHAR": WriteChar,
    "WRITEINT": WriteInt,
    "FLUSH": Flush,
}


@dataclass
class ParseResult:
    output: Body
    errors: List[ParseDiagnostic] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


@dataclass
class _PendingBlock:
    body: Body
    span: Span


class Parser:
    def __init__(self, tokens: List[Token], diagnostics: Optional[List[ParseDiagnostic]] = None) -> None:
        self.tokens = tokens
        self.diagnostics: List[ParseDiagnostic] = diagnostics if diagnostics is not None else []
        self.index = 0

    def parse(self) -> Body:
        instructions = self._parse_sequence(opening=None)
        self.diagnostics.sort(key=lambda d: (d.span.start, d.span.end))
        return tuple(instructions)

    def _parse_sequence(self, *, opening: Optional[Token]) -> List[Instruction]:
        instructions: List[Instruction] = []
        append = instructions.append
        pending: Optional[_PendingBlock] = None

        while True:
            token = self._peek()
            kind = token.type
            if kind == "EOF":
                break
            if kind == "RBRACKET":
                if opening is not None:
                    break
                self._advance()
                self._error(token, expected=("an instruction",), detail="unmatched ']'")
                continue
            if kind == "LBRACKET":
                block = self._parse_block()
                if pending is None:
                    pending = block
                    continue
                if self._peek().type == "HASH":
                    hash_token = self._advance()
                    append(WhileLoop(pending.span.merge(hash_token.span), pending.body, block.body))
                    pending = None
                    continue
                # Only a '#' can consume both blocks; the first one is a plain lambda.
                append(Lambda(pending.span, pending.body))
                pending = block
                continue
            if kind == "QUESTION":
                self._advance()
                if pending is None:
                    self._error(token, expected=("a block before '?'",))
                    continue
                append(ConditionalExecute(pending.span.merge(token.span), pending.body))
                pending = None
                continue
            if kind == "HASH":
                self._advance()
                expected = ("a body block before '#'",) if pending is not None else ("two blocks before '#'",)
                self._error(token, expected=expected)
                continue

            if pending is not None:
                append(Lambda(pending.span, pending.body))
                pending = None
            append(self._parse_simple(self._advance()))

        if pending is not None:
            append(Lambda(pending.span, pending.body))
        return instructions

    def _parse_block(self) -> _PendingBlock:
        opening = self._advance()
        body = self._parse_sequence(opening=opening)
        closing = self._peek()
        if closing.type == "RBRACKET":
            self._advance()
            return _PendingBlock(tuple(body), Span(opening.span.start, closing.span.end))
        # End of input: close the block implicitly and keep what was parsed.
        span = Span(opening.span.start, closing.span.start)
        self.diagnostics.append(
            ParseDiagnostic(
                span=span,
                expected=("']'",),
                found=None,
                line=opening.line,
                column=opening.column,
                message=make_message(("']'",), None, "unclosed block"),
            )
        )
        return _PendingBlock(tuple(body), span)

    def _parse_simple(self, token: Token) -> Instruction:
        kind = token.type
        span = token.span
        if kind == "INT":
            return PushInt(span, int(token.value))
        if kind == "CHAR":
            assert isinstance(token.payload, int)
            return PushChar(span, token.payload)
        if kind == "STRING":
            assert isinstance(token.payload, str)
            return WriteStr(span, token.payload)
        if kind == "NAME":
            return Name(span, token.value)
        return OPERATOR_INSTRUCTIONS[kind](span)

    def _error(self, token: Token, *, expected: Tuple[str, ...], detail: str = "") -> None:
        found = token.value if token.type != "EOF" else None
        self.diagnostics.append(
            ParseDiagnostic(
                span=token.span,
                expected=expected,
                found=found,
                line=token.line,
                column=token.column,
                message=make_message(expected, found, detail),
            )
        )

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != "EOF":
            self.index += 1
        return token


def parse(source: str) -> ParseResult:
    """Parse source text into an instruction tree, collecting every diagnostic."""
    lexer = Lexer(source)
    tokens = lexer.tokenize()
    parser = Parser(tokens, lexer.diagnostics)
    output = parser.parse()
    return ParseResult(output=output, errors=parser.diagnostics)


def parse_or_raise(source: str) -> Body:
    result = parse(source)
    if result.has_errors:
        raise FalseParseError(result.errors)
    return result.output


# ---- Canonical rendering ----

_ESCAPES_OUT = {
    "\\": "\\\\",
    '"': '\\"',
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


def _escape_string(text: str) -> str:
    out: List[str] = []
    for ch in text:
        if ch in _ESCAPES_OUT:
            out.append(_ESCAPES_OUT[ch])
        elif ord(ch) < 0x20:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
    return '"' + "".join(out) + '"'


def format_instructions(instructions: Sequence[Instruction]) -> str:
    """Render instructions back to source text that parses to the same tree (spans aside)."""
    parts: List[str] = []
    previous: Optional[Instruction] = None
    for instruction in instructions:
        if isinstance(instruction, PushInt):
            text = str(instruction.value)
            if isinstance(previous, PushInt):
                text = " " + text
        elif isinstance(instruction, PushChar):
            text = "'" + chr(instruction.value)
        elif isinstance(instruction, WriteStr):
            text = _escape_string(instruction.text)
        elif isinstance(instruction, Name):
            text = instruction.letter
        elif isinstance(instruction, Lambda):
            text = "[" + format_instructions(instruction.body) + "]"
        elif isinstance(instruction, ConditionalExecute):
            text = "[" + format_instructions(instruction.body) + "]?"
        elif isinstance(instruction, WhileLoop):
            text = "[" + format_instructions(instruction.condition) + "][" + format_instructions(instruction.body) + "]#"
        else:
            text = instruction.symbol
        parts.append(text)
        previous = instruction
    return "".join(parts)
