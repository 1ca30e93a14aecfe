from __future__ import annotations
import json
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Deque, Dict, List, Optional, Sequence, Union

import numpy as np

from extensions import HookFailure, HookRegistry, RuntimeServices, StepContext, build_default_services
from lexer import FalseError, Span, locate
from parser import (
    Add,
    BitAnd,
    BitNot,
    BitOr,
    Body,
    ConditionalExecute,
    Div,
    Drop,
    Dup,
    Eq,
    Execute,
    Fetch,
    Flush,
    Gt,
    Instruction,
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
    parse_or_raise,
)


TYPE_INT = "Integer"
TYPE_LAMBDA = "Lambda"
TYPE_NAME = "VariableReference"

MAX_SCALAR = 0x10FFFF

# Each level of FALSE nesting (Execute, conditional, loop) costs a few host frames.
DEFAULT_RECURSION_LIMIT = 30000

InputCapability = Callable[[], Optional[int]]
OutputCapability = Callable[[str], None]


def wrap_int32(value: int) -> int:
    """Reduce an exact integer result to signed 32-bit two's complement."""
    return int(np.array(value, dtype=np.int64).astype(np.int32))


def truncated_div(b: int, a: int) -> int:
    quotient = abs(b) // abs(a)
    return quotient if (b < 0) == (a < 0) else -quotient


@dataclass(frozen=True)
class Value:
    type: str
    value: Any

    @property
    def type_name(self) -> str:
        return self.type

    def render(self) -> str:
        if self.type == TYPE_LAMBDA:
            return "[" + format_instructions(self.value) + "]"
        return str(self.value)


@dataclass(frozen=True)
class VariableReference:
    name: str

    type_name: ClassVar[str] = TYPE_NAME

    def render(self) -> str:
        return f"&{self.name}"


StackEntry = Union[Value, VariableReference]


class FalseRuntimeError(FalseError):
    """Raised for runtime faults."""

    kind = "RuntimeError"

    def __init__(
        self,
        message: str,
        *,
        span: Optional[Span] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.span = span
        self.rule = rule
        self.step_index: Optional[int] = None

    @property
    def reason(self) -> str:
        return self.message


class StackUnderflow(FalseRuntimeError):
    kind = "StackUnderflow"

    def __init__(self, instruction: Instruction, required: int, available: int) -> None:
        if available == 0:
            detail = "Stack is empty"
        else:
            detail = f"Stack only has {available} value{'s' if available != 1 else ''}"
        super().__init__(
            f"{detail}; {instruction.symbol} needs {required}",
            span=instruction.span,
            rule=instruction.rule,
        )
        self.required = required
        self.available = available


class TypeMismatch(FalseRuntimeError):
    kind = "TypeMismatch"

    def __init__(self, instruction: Instruction, expected: str, actual: str) -> None:
        super().__init__(
            f"Expected {expected} for {instruction.symbol}, got {actual}",
            span=instruction.span,
            rule=instruction.rule,
        )
        self.expected = expected
        self.actual = actual


class IndexOutOfRange(FalseRuntimeError):
    kind = "IndexOutOfRange"

    def __init__(self, instruction: Instruction, index: int, depth: int) -> None:
        super().__init__(
            f"Index out of range for {instruction.symbol} (PICK): {index} (stack depth {depth})",
            span=instruction.span,
            rule=instruction.rule,
        )
        self.index = index
        self.depth = depth


class UndefinedVariable(FalseRuntimeError):
    kind = "UndefinedVariable"

    def __init__(self, instruction: Instruction, name: str) -> None:
        super().__init__(f"Name {name} not found in global scope", span=instruction.span, rule=instruction.rule)
        self.name = name


class MisuseOfName(FalseRuntimeError):
    kind = "MisuseOfName"


class InvalidCharacterCode(FalseRuntimeError):
    kind = "InvalidCharacterCode"

    def __init__(self, instruction: Instruction, code: int) -> None:
        super().__init__(f"Can't output value {code} as char", span=instruction.span, rule=instruction.rule)
        self.code = code


class DivisionByZero(FalseRuntimeError):
    kind = "DivisionByZero"


class ExtensionFailure(FalseRuntimeError):
    kind = "ExtensionFailure"


@dataclass
class Frame:
    name: str
    frame_id: str
    span: Optional[Span]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    span: Optional[Span]
    rule: str
    snapshot: Optional[Dict[str, Any]]


class StateLogger:
    def __init__(self, verbose: bool, history: int = 1000) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        span: Optional[Span],
        rule: str,
        snapshot: Optional[Dict[str, Any]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            span=span,
            rule=rule,
            snapshot=snapshot,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.next_state_index += 1
        return entry

    def release(self, frame: Frame) -> None:
        self.frame_last_entry.pop(frame.frame_id, None)

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)


@dataclass
class ExecutionContext:
    """Mutable state of one run: operand stack, globals, I/O and bookkeeping."""

    on_input: InputCapability
    on_output: OutputCapability
    logger: StateLogger
    stack: List[StackEntry] = field(default_factory=list)
    global_scope: Dict[str, Value] = field(default_factory=dict)
    call_stack: List[Frame] = field(default_factory=list)
    io_log: Deque[Dict[str, Any]] = field(default_factory=deque)
    frame_counter: int = 0

    def new_frame(self, name: str, span: Optional[Span]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, span=span)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "stack": [entry.render() for entry in self.stack],
            "globals": {name: value.render() for name, value in sorted(self.global_scope.items())},
        }


Handler = Callable[[ExecutionContext, Instruction], None]


def default_read_input() -> Optional[int]:
    # Read 1 byte from stdin
    if sys.stdin.isatty():
        sys.stderr.write("Input character: ")
        sys.stderr.flush()
    data = sys.stdin.buffer.read(1)
    if not data:
        return None
    return data[0]


def default_output(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        on_input: Optional[InputCapability] = None,
        on_output: Optional[OutputCapability] = None,
        history: int = 1000,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
    ) -> None:
        self.source = source
        self.filename = filename
        self.verbose = verbose
        self.history = history
        self.recursion_limit = recursion_limit
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.on_input: InputCapability = on_input or default_read_input
        self.on_output: OutputCapability = on_output or default_output
        # The context of the most recent run, kept for traceback formatting.
        self.last_context: Optional[ExecutionContext] = None

        self._dispatch: Dict[type, Handler] = {}
        self._register(Name, self._exec_name)
        self._register(PushInt, self._exec_push_int)
        self._register(PushChar, self._exec_push_char)
        self._register(Dup, self._exec_dup)
        self._register(Drop, self._exec_drop)
        self._register(Swap, self._exec_swap)
        self._register(Rot, self._exec_rot)
        self._register(Pick, self._exec_pick)
        self._register_binary(Add, lambda b, a: b + a)
        self._register_binary(Sub, lambda b, a: b - a)
        self._register_binary(Mul, lambda b, a: b * a)
        self._register(Div, self._exec_div)
        self._register_unary(Neg, lambda a: -a)
        self._register_binary(BitAnd, lambda b, a: b & a)
        self._register_binary(BitOr, lambda b, a: b | a)
        self._register_unary(BitNot, lambda a: ~a)
        self._register_binary(Gt, lambda b, a: -1 if b > a else 0)
        self._register_binary(Eq, lambda b, a: -1 if b == a else 0)
        self._register(Lambda, self._exec_lambda)
        self._register(Execute, self._exec_execute)
        self._register(ConditionalExecute, self._exec_conditional)
        self._register(WhileLoop, self._exec_while)
        self._register(Store, self._exec_store)
        self._register(Fetch, self._exec_fetch)
        self._register(ReadChar, self._exec_read_char)
        self._register(WriteChar, self._exec_write_char)
        self._register(WriteStr, self._exec_write_str)
        self._register(WriteInt, self._exec_write_int)
        self._register(Flush, self._exec_flush)

    def _register(self, kind: type, handler: Handler) -> None:
        self._dispatch[kind] = handler

    def _register_binary(self, kind: type, func: Callable[[int, int], int]) -> None:
        def handler(ctx: ExecutionContext, instruction: Instruction) -> None:
            self._need(ctx, instruction, 2)
            a = self._pop_int(ctx, instruction)
            b = self._pop_int(ctx, instruction)
            ctx.stack.append(Value(TYPE_INT, wrap_int32(func(b, a))))

        self._dispatch[kind] = handler

    def _register_unary(self, kind: type, func: Callable[[int], int]) -> None:
        def handler(ctx: ExecutionContext, instruction: Instruction) -> None:
            a = self._pop_int(ctx, instruction)
            ctx.stack.append(Value(TYPE_INT, wrap_int32(func(a))))

        self._dispatch[kind] = handler

    def parse(self) -> Body:
        return parse_or_raise(self.source)

    def run(self, instructions: Optional[Sequence[Instruction]] = None) -> None:
        """Execute instructions (or the parsed source) to completion.

        The first runtime failure aborts the run and propagates as a
        FalseRuntimeError subclass carrying the failing span.
        """
        if instructions is None:
            instructions = self.parse()
        ctx = ExecutionContext(
            on_input=self.on_input,
            on_output=self.on_output,
            logger=StateLogger(verbose=self.verbose, history=self.history),
            io_log=deque(maxlen=self.history),
        )
        self.last_context = ctx
        sys_limit = sys.getrecursionlimit()
        if self.recursion_limit > sys_limit:
            sys.setrecursionlimit(self.recursion_limit)
        try:
            self._emit_event("program_start", self, ctx, instructions)
            self._execute_block(ctx, instructions, ctx.new_frame("<top-level>", None))
        except FalseRuntimeError as error:
            if ctx.logger.entries:
                error.step_index = ctx.logger.entries[-1].step_index
            try:
                self._emit_event("on_error", self, error)
            except ExtensionFailure as failure:
                # Keep the program's error; record the hook failure as a note.
                error.add_note(f"{failure.kind}: {failure.message}")
            raise
        finally:
            sys.setrecursionlimit(sys_limit)
        self._emit_event("program_end", self, ctx)

    def _execute_block(self, ctx: ExecutionContext, instructions: Sequence[Instruction], frame: Frame) -> None:
        dispatch = self._dispatch
        emit_event = self._emit_event
        log_step = self._log_step

        ctx.call_stack.append(frame)
        for instruction in instructions:
            emit_event("before_instruction", self, ctx, instruction)
            log_step(ctx, instruction)
            dispatch[type(instruction)](ctx, instruction)
            emit_event("after_instruction", self, ctx, instruction)
        # Frames stay on the call stack when an error propagates.
        ctx.call_stack.pop()
        ctx.logger.release(frame)

    # ---- Stack helpers ----

    def _need(self, ctx: ExecutionContext, instruction: Instruction, count: int) -> None:
        available = len(ctx.stack)
        if available < count:
            raise StackUnderflow(instruction, count, available)

    def _pop(self, ctx: ExecutionContext, instruction: Instruction) -> StackEntry:
        if not ctx.stack:
            raise StackUnderflow(instruction, 1, 0)
        return ctx.stack.pop()

    def _pop_int(self, ctx: ExecutionContext, instruction: Instruction) -> int:
        entry = self._pop(ctx, instruction)
        if isinstance(entry, Value) and entry.type == TYPE_INT:
            return entry.value
        raise TypeMismatch(instruction, TYPE_INT, entry.type_name)

    def _pop_name(self, ctx: ExecutionContext, instruction: Instruction, message: str) -> str:
        entry = self._pop(ctx, instruction)
        if isinstance(entry, VariableReference):
            return entry.name
        raise MisuseOfName(message, span=instruction.span, rule=instruction.rule)

    # ---- Instructions ----

    def _exec_name(self, ctx: ExecutionContext, instruction: Name) -> None:
        ctx.stack.append(VariableReference(instruction.letter))

    def _exec_push_int(self, ctx: ExecutionContext, instruction: PushInt) -> None:
        ctx.stack.append(Value(TYPE_INT, instruction.value))

    def _exec_push_char(self, ctx: ExecutionContext, instruction: PushChar) -> None:
        ctx.stack.append(Value(TYPE_INT, int(instruction.value)))

    def _exec_dup(self, ctx: ExecutionContext, instruction: Dup) -> None:
        self._need(ctx, instruction, 1)
        ctx.stack.append(ctx.stack[-1])

    def _exec_drop(self, ctx: ExecutionContext, instruction: Drop) -> None:
        self._pop(ctx, instruction)

    def _exec_swap(self, ctx: ExecutionContext, instruction: Swap) -> None:
        self._need(ctx, instruction, 2)
        stack = ctx.stack
        stack[-1], stack[-2] = stack[-2], stack[-1]

    def _exec_rot(self, ctx: ExecutionContext, instruction: Rot) -> None:
        self._need(ctx, instruction, 3)
        ctx.stack.append(ctx.stack.pop(-3))

    def _exec_pick(self, ctx: ExecutionContext, instruction: Pick) -> None:
        index = self._pop_int(ctx, instruction)
        depth = len(ctx.stack)
        if index < 0 or index >= depth:
            raise IndexOutOfRange(instruction, index, depth)
        ctx.stack.append(ctx.stack[depth - 1 - index])

    def _exec_div(self, ctx: ExecutionContext, instruction: Div) -> None:
        self._need(ctx, instruction, 2)
        a = self._pop_int(ctx, instruction)
        b = self._pop_int(ctx, instruction)
        if a == 0:
            raise DivisionByZero("Division by zero", span=instruction.span, rule=instruction.rule)
        ctx.stack.append(Value(TYPE_INT, wrap_int32(truncated_div(b, a))))

    def _exec_lambda(self, ctx: ExecutionContext, instruction: Lambda) -> None:
        ctx.stack.append(Value(TYPE_LAMBDA, instruction.body))

    def _exec_execute(self, ctx: ExecutionContext, instruction: Execute) -> None:
        entry = self._pop(ctx, instruction)
        if not (isinstance(entry, Value) and entry.type == TYPE_LAMBDA):
            raise TypeMismatch(instruction, TYPE_LAMBDA, entry.type_name)
        self._execute_block(ctx, entry.value, ctx.new_frame("<lambda>", instruction.span))

    def _exec_conditional(self, ctx: ExecutionContext, instruction: ConditionalExecute) -> None:
        if self._pop_int(ctx, instruction) != 0:
            self._execute_block(ctx, instruction.body, ctx.new_frame("<conditional>", instruction.span))

    def _exec_while(self, ctx: ExecutionContext, instruction: WhileLoop) -> None:
        condition = instruction.condition
        body = instruction.body
        span = instruction.span
        while True:
            self._execute_block(ctx, condition, ctx.new_frame("<while-condition>", span))
            if self._pop_int(ctx, instruction) == 0:
                break
            self._execute_block(ctx, body, ctx.new_frame("<while-body>", span))

    def _exec_store(self, ctx: ExecutionContext, instruction: Store) -> None:
        self._need(ctx, instruction, 2)
        name = self._pop_name(ctx, instruction, "Store (:) must be preceded by a name")
        entry = self._pop(ctx, instruction)
        if not isinstance(entry, Value):
            raise MisuseOfName("Names cannot be stored in names", span=instruction.span, rule=instruction.rule)
        ctx.global_scope[name] = entry

    def _exec_fetch(self, ctx: ExecutionContext, instruction: Fetch) -> None:
        name = self._pop_name(ctx, instruction, "Fetch (;) must be preceded by a name")
        value = ctx.global_scope.get(name)
        if value is None:
            raise UndefinedVariable(instruction, name)
        ctx.stack.append(value)

    def _exec_read_char(self, ctx: ExecutionContext, instruction: ReadChar) -> None:
        byte = ctx.on_input()
        value = -1 if byte is None else int(byte)
        ctx.io_log.append({"event": "READ", "value": value})
        ctx.stack.append(Value(TYPE_INT, value))

    def _exec_write_char(self, ctx: ExecutionContext, instruction: WriteChar) -> None:
        code = self._pop_int(ctx, instruction)
        if code < 0 or code > MAX_SCALAR or 0xD800 <= code <= 0xDFFF:
            raise InvalidCharacterCode(instruction, code)
        self._write(ctx, chr(code))

    def _exec_write_str(self, ctx: ExecutionContext, instruction: WriteStr) -> None:
        self._write(ctx, instruction.text)

    def _exec_write_int(self, ctx: ExecutionContext, instruction: WriteInt) -> None:
        self._write(ctx, str(self._pop_int(ctx, instruction)))

    def _exec_flush(self, ctx: ExecutionContext, instruction: Flush) -> None:
        # Output is unbuffered by contract.
        pass

    def _write(self, ctx: ExecutionContext, text: str) -> None:
        ctx.io_log.append({"event": "WRITE", "text": text})
        ctx.on_output(text)

    # ---- Hooks and step log ----

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except HookFailure as failure:
            span = None
            ctx = self.last_context
            if ctx is not None and ctx.logger.entries:
                span = ctx.logger.entries[-1].span
            raise ExtensionFailure(str(failure), span=span, rule="EXT") from failure.cause

    def _log_step(self, ctx: ExecutionContext, instruction: Instruction) -> None:
        frame = ctx.call_stack[-1] if ctx.call_stack else None
        snapshot = ctx.snapshot() if self.verbose else None
        entry = ctx.logger.record(frame=frame, span=instruction.span, rule=instruction.rule, snapshot=snapshot)

        if not self.hook_registry.has_step_rules:
            return
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, rule=entry.rule, span=instruction.span),
            )
        except HookFailure as failure:
            raise ExtensionFailure(str(failure), span=instruction.span, rule="EXT") from failure.cause


def run_program(
    instructions: Sequence[Instruction],
    on_input: Optional[InputCapability] = None,
    on_output: Optional[OutputCapability] = None,
) -> Optional[FalseRuntimeError]:
    """Run instructions and return the runtime error that aborted them, or None."""
    try:
        Interpreter(on_input=on_input, on_output=on_output).run(instructions)
    except FalseRuntimeError as error:
        return error
    return None


@dataclass
class TracebackFrame:
    name: str
    span: Optional[Span]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        ctx = self.interpreter.last_context
        if ctx is None:
            return frames
        for frame in ctx.call_stack:
            entry = ctx.logger.last_entry_for_frame(frame.frame_id)
            span = entry.span if entry else frame.span
            frames.append(TracebackFrame(name=frame.name, span=span, state_entry=entry))
        return frames

    def _position(self, span: Span) -> Dict[str, Any]:
        line, column, text = locate(self.interpreter.source, span.start)
        return {"line": line, "column": column, "text": text}

    def format_text(self, error: FalseRuntimeError, verbose: bool) -> str:
        filename = self.interpreter.filename
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.span is not None:
                pos = self._position(frame.span)
                lines.append(f"  File \"{filename}\", line {pos['line']}, column {pos['column']}, in {frame.name}")
                if pos["text"].strip():
                    lines.append(f"    {pos['text'].strip()}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.snapshot is not None:
                    snapshot = frame.state_entry.snapshot
                    stack = " ".join(snapshot["stack"])
                    scope = ", ".join(f"{k}={v}" for k, v in snapshot["globals"].items())
                    lines.append(f"    Stack before step: [{stack}]  Globals: {{{scope}}}")
        rule = error.rule or "runtime"
        lines.append(f"{error.kind}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: FalseRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.span is not None:
                pos = self._position(frame.span)
                entry["source_location"] = {
                    "file": self.interpreter.filename,
                    "start": frame.span.start,
                    "end": frame.span.end,
                    "line": pos["line"],
                    "column": pos["column"],
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                entry["rule"] = frame.state_entry.rule
                if frame.state_entry.snapshot is not None:
                    entry["snapshot"] = frame.state_entry.snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.kind,
                "message": error.message,
                "span": [error.span.start, error.span.end] if error.span else None,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
