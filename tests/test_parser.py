"""
Tests for the parser: source text → instruction tree, with recovery.
"""

import pytest

from lexer import FalseParseError, Span
from parser import (
    Add,
    BitAnd,
    BitNot,
    BitOr,
    ConditionalExecute,
    Div,
    Drop,
    Dup,
    Eq,
    Execute,
    Fetch,
    Flush,
    Gt,
    Lambda,
    Mul,
    Name,
    Neg,
    Pick,
    PushChar,
    PushInt,
    ReadChar,
    Rot,
    Store,
    Sub,
    Swap,
    WhileLoop,
    WriteChar,
    WriteInt,
    WriteStr,
    format_instructions,
    parse,
    parse_or_raise,
)


class TestParseSimple:

    def test_empty(self):
        result = parse("")
        assert result.output == ()
        assert not result.has_errors

    def test_arithmetic_program(self):
        result = parse("2 3+.")
        assert result.output == (
            PushInt(Span(0, 1), 2),
            PushInt(Span(2, 3), 3),
            Add(Span(3, 4)),
            WriteInt(Span(4, 5)),
        )

    @pytest.mark.parametrize(
        "source, kind",
        [
            ("$", Dup), ("%", Drop), ("\\", Swap), ("@", Rot), ("ø", Pick),
            ("+", Add), ("-", Sub), ("*", Mul), ("/", Div), ("_", Neg),
            ("&", BitAnd), ("|", BitOr), ("~", BitNot), (">", Gt), ("=", Eq),
            ("!", Execute), (":", Store), (";", Fetch),
            ("^", ReadChar), (",", WriteChar), (".", WriteInt), ("ß", Flush),
        ],
    )
    def test_single_character_operators(self, source, kind):
        result = parse(source)
        assert result.output == (kind(Span(0, 1)),)
        assert kind.symbol == source

    def test_name(self):
        assert parse("q").output == (Name(Span(0, 1), "q"),)

    def test_char_literal(self):
        assert parse("'A").output == (PushChar(Span(0, 2), 65),)

    def test_string_literal(self):
        result = parse(r'"hi\n"')
        assert result.output == (WriteStr(Span(0, 6), "hi\n"),)

    def test_comments_between_tokens(self):
        result = parse("1{comment}2")
        assert result.output == (PushInt(Span(0, 1), 1), PushInt(Span(10, 11), 2))

    def test_structural_equality_and_hashing(self):
        first = parse("[1 2+]").output
        second = parse("[1 2+]").output
        assert first == second
        assert hash(first) == hash(second)
        assert parse("$").output != parse("%").output


class TestParseBlocks:

    def test_bare_block_is_lambda(self):
        result = parse("[1]")
        assert result.output == (Lambda(Span(0, 3), (PushInt(Span(1, 2), 1),)),)

    def test_block_with_question_is_conditional(self):
        (node,) = parse("[1]?").output
        assert isinstance(node, ConditionalExecute)
        assert node.span == Span(0, 4)
        assert node.body == (PushInt(Span(1, 2), 1),)

    def test_two_blocks_with_hash_is_while_loop(self):
        (node,) = parse("[1][2]#").output
        assert isinstance(node, WhileLoop)
        assert node.span == Span(0, 7)
        assert node.condition == (PushInt(Span(1, 2), 1),)
        assert node.body == (PushInt(Span(4, 5), 2),)

    def test_while_loop_allows_whitespace_between_parts(self):
        (node,) = parse("[1] [2] #").output
        assert isinstance(node, WhileLoop)
        assert node.span == Span(0, 9)

    def test_two_bare_blocks_are_two_lambdas(self):
        output = parse("[1][2]").output
        assert [type(n) for n in output] == [Lambda, Lambda]

    def test_lambda_then_conditional(self):
        output = parse("[1][2]?").output
        assert [type(n) for n in output] == [Lambda, ConditionalExecute]
        assert output[1].body == (PushInt(Span(4, 5), 2),)

    def test_lambda_then_while_loop(self):
        output = parse("[1][2][3]#").output
        assert [type(n) for n in output] == [Lambda, WhileLoop]
        assert output[0].body == (PushInt(Span(1, 2), 1),)
        assert output[1].condition == (PushInt(Span(4, 5), 2),)

    def test_nested_blocks(self):
        (outer,) = parse("[[1]!]").output
        assert isinstance(outer, Lambda)
        inner, execute = outer.body
        assert isinstance(inner, Lambda)
        assert isinstance(execute, Execute)

    def test_block_followed_by_instruction(self):
        output = parse("[1]f:").output
        assert [type(n) for n in output] == [Lambda, Name, Store]


class TestParseRecovery:

    def test_missing_close_bracket(self):
        result = parse("1[2 3")
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.found is None
        assert error.expected == ("']'",)
        assert "unclosed block" in error.message
        assert result.output == (
            PushInt(Span(0, 1), 1),
            Lambda(Span(1, 5), (PushInt(Span(2, 3), 2), PushInt(Span(4, 5), 3))),
        )

    def test_nested_unclosed_block_reports_once(self):
        result = parse("[[1]")
        assert len(result.errors) == 1
        (outer,) = result.output
        assert outer.body == (Lambda(Span(1, 4), (PushInt(Span(2, 3), 1),)),)

    def test_stray_close_bracket(self):
        result = parse("1]2")
        assert len(result.errors) == 1
        assert result.errors[0].found == "]"
        assert [type(n) for n in result.output] == [PushInt, PushInt]

    def test_question_without_block(self):
        result = parse("1?")
        assert len(result.errors) == 1
        assert result.output == (PushInt(Span(0, 1), 1),)

    def test_hash_after_single_block(self):
        result = parse("[1]#")
        assert len(result.errors) == 1
        assert [type(n) for n in result.output] == [Lambda]

    def test_errors_from_lexer_and_parser_are_ordered(self):
        result = parse("X]Y")
        assert [e.found for e in result.errors] == ["X", "]", "Y"]

    def test_unrecognized_inside_block(self):
        result = parse("[1 A 2]!")
        assert len(result.errors) == 1
        lam, execute = result.output
        assert [n.value for n in lam.body] == [1, 2]
        assert isinstance(execute, Execute)

    def test_parse_or_raise(self):
        with pytest.raises(FalseParseError) as excinfo:
            parse_or_raise("1 X Y")
        assert len(excinfo.value.diagnostics) == 2
        assert "and 1 more" in str(excinfo.value)

    def test_parse_or_raise_returns_output(self):
        assert parse_or_raise("1") == (PushInt(Span(0, 1), 1),)


class TestFormat:

    def test_canonical_form(self):
        source = "1 2+ {comment} [$.]?  'a, \"x\\ny\" [1][2]#"
        assert format_instructions(parse(source).output) == '1 2+[$.]?\'a,"x\\ny"[1][2]#'

    @pytest.mark.parametrize(
        "source",
        [
            "[1][2][3]#",
            "[1][2]?",
            "3[$0>][$.1-]#",
            "[$1>[$1-f;!*]?]f:",
        ],
    )
    def test_canonical_form_reparses_to_same_shape(self, source):
        text = format_instructions(parse(source).output)
        again = parse(text)
        assert not again.has_errors
        assert format_instructions(again.output) == text
