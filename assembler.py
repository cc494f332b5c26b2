from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Iterable, Iterator, List, Optional, Tuple, Union


class BFError(Exception):
    """Base class for all bfvm errors."""


class BFParseError(BFError):
    """Raised when assembly fails."""

    def __init__(self, message: str, *, location: Optional["SourceLocation"] = None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location


class UnmatchedCloseBracket(BFParseError):
    """A ']' with no pending '['."""


class UnclosedLoop(BFParseError):
    """One or more '[' still open at end of input."""

    def __init__(self, message: str, *, locations: List["SourceLocation"]) -> None:
        super().__init__(message, location=locations[-1] if locations else None)
        self.locations = locations


MOVE_LEFT = "MoveLeft"
MOVE_RIGHT = "MoveRight"
INCREMENT = "Increment"
DECREMENT = "Decrement"
READ_BYTE = "ReadByte"
WRITE_BYTE = "WriteByte"
JUMP_IF_ZERO = "JumpIfZero"
JUMP_IF_NONZERO = "JumpIfNonZero"

OPERATORS = {
    ord("<"): MOVE_LEFT,
    ord(">"): MOVE_RIGHT,
    ord("+"): INCREMENT,
    ord("-"): DECREMENT,
    ord(","): READ_BYTE,
    ord("."): WRITE_BYTE,
    ord("["): JUMP_IF_ZERO,
    ord("]"): JUMP_IF_NONZERO,
}

SYMBOLS = {op: bytes([byte]) for byte, op in OPERATORS.items()}

# Runs of these collapse into one counted instruction.
COLLAPSIBLE = frozenset({MOVE_LEFT, MOVE_RIGHT, INCREMENT, DECREMENT})


@dataclass(frozen=True)
class SourceLocation:
    file: str
    offset: int
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass(frozen=True)
class Instruction:
    op: str
    arg: int = 0
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        if self.op in (READ_BYTE, WRITE_BYTE):
            return self.op
        return f"{self.op}({self.arg})"


@dataclass(frozen=True)
class Program:
    instructions: Tuple[Instruction, ...]
    filename: str = "<string>"

    def __len__(self) -> int:
        return len(self.instructions)

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self.instructions)

    def __getitem__(self, index: int) -> Instruction:
        return self.instructions[index]


class Assembler:
    def __init__(self, source: Union[bytes, bytearray, memoryview], filename: str) -> None:
        self.source = bytes(source)
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def assemble(self) -> Program:
        instructions: List[Instruction] = []
        instructions_append = instructions.append
        # Indices of '[' placeholders waiting for their ']'.
        pending: List[int] = []
        operators = OPERATORS
        source = self.source
        n = len(source)

        while self.index < n:
            op = operators.get(source[self.index])
            if op is None:
                self._advance()
                continue
            location = self._location()
            self._advance()
            if op in COLLAPSIBLE:
                instructions_append(Instruction(op, self._consume_run(source[location.offset]), location))
                continue
            if op == JUMP_IF_ZERO:
                pending.append(len(instructions))
                instructions_append(Instruction(JUMP_IF_ZERO, 0, location))
                continue
            if op == JUMP_IF_NONZERO:
                if not pending:
                    raise UnmatchedCloseBracket(f"Unmatched ']' at {location}", location=location)
                start = pending.pop()
                end = len(instructions)
                instructions_append(Instruction(JUMP_IF_NONZERO, start, location))
                instructions[start] = replace(instructions[start], arg=end)
                continue
            instructions_append(Instruction(op, 0, location))

        if pending:
            locations = [instructions[i].location for i in pending]
            raise UnclosedLoop(f"Unclosed loop '[' at {locations[-1]}", locations=locations)
        return Program(instructions=tuple(instructions), filename=self.filename)

    def _consume_run(self, byte: int) -> int:
        count = 1
        source = self.source
        n = len(source)
        while True:
            self._skip_comments()
            if self.index < n and source[self.index] == byte:
                count += 1
                self._advance()
                continue
            return count

    def _skip_comments(self) -> None:
        source = self.source
        n = len(source)
        while self.index < n and source[self.index] not in OPERATORS:
            self._advance()

    def _location(self) -> SourceLocation:
        return SourceLocation(self.filename, self.index, self.line, self.column)

    def _advance(self) -> None:
        if self.source[self.index] == 0x0A:
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def assemble(source: Union[bytes, bytearray, memoryview, str], filename: str = "<string>") -> Program:
    if isinstance(source, str):
        source = source.encode("utf-8")
    return Assembler(source, filename).assemble()


def disassemble(instructions: Iterable[Instruction]) -> bytes:
    """Render instructions back to canonical operator bytes, counts expanded."""
    out = bytearray()
    for instruction in instructions:
        symbol = SYMBOLS[instruction.op]
        out += symbol * instruction.arg if instruction.op in COLLAPSIBLE else symbol
    return bytes(out)


def format_listing(program: Program) -> str:
    width = len(str(max(len(program) - 1, 0)))
    lines = []
    for index, instruction in enumerate(program):
        where = f"  ; {instruction.location}" if instruction.location else ""
        lines.append(f"{index:>{width}}: {instruction}{where}")
    return "\n".join(lines)
