from __future__ import annotations
import json
import sys
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

import numpy as np
from numpy.typing import NDArray

from assembler import (
    BFError,
    DECREMENT,
    INCREMENT,
    JUMP_IF_NONZERO,
    JUMP_IF_ZERO,
    MOVE_LEFT,
    MOVE_RIGHT,
    READ_BYTE,
    WRITE_BYTE,
    Instruction,
    Program,
)
from extensions import HookRegistry, RuntimeServices, StepContext


TAPE_SIZE = 30000

EOF_ERROR = "error"
EOF_ZERO = "zero"
EOF_UNCHANGED = "unchanged"
EOF_POLICIES = (EOF_ERROR, EOF_ZERO, EOF_UNCHANGED)

# Cells shown either side of the cursor in verbose snapshots.
SNAPSHOT_RADIUS = 4


class BFRuntimeError(BFError):
    """Raised for runtime faults."""

    default_kind = "runtime"

    def __init__(
        self,
        message: str,
        *,
        pc: Optional[int] = None,
        instruction: Optional[Instruction] = None,
        kind: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.pc = pc
        self.instruction = instruction
        self.kind = kind or self.default_kind
        self.step_index: Optional[int] = None
        self.hook_error: Optional[BFRuntimeError] = None


class CellRangeError(BFRuntimeError):
    default_kind = "range"


class InputExhausted(BFRuntimeError):
    default_kind = "eof"


class ExecutionCancelled(BFRuntimeError):
    default_kind = "cancel"


class StepLimitExceeded(BFRuntimeError):
    default_kind = "limit"


def _new_tape() -> NDArray[np.uint8]:
    return np.zeros(TAPE_SIZE, dtype=np.uint8)


@dataclass
class MachineState:
    cells: NDArray[np.uint8] = field(default_factory=_new_tape)
    cursor: int = 0
    pc: int = 0
    steps: int = 0

    @property
    def cell(self) -> int:
        return int(self.cells[self.cursor])

    def snapshot(self, radius: int = SNAPSHOT_RADIUS) -> Dict[int, int]:
        start = max(0, self.cursor - radius)
        end = min(len(self.cells), self.cursor + radius + 1)
        return {index: int(self.cells[index]) for index in range(start, end)}


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    pc: Optional[int]
    instruction: Optional[Instruction]
    cursor: int
    cell: int
    tape_snapshot: Optional[Dict[int, int]]


class StateLogger:
    """Ring buffer of the most recent execution steps."""

    def __init__(self, verbose: bool, history: int) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0

    def record(
        self,
        *,
        pc: Optional[int],
        instruction: Optional[Instruction],
        cursor: int,
        cell: int,
        tape_snapshot: Optional[Dict[int, int]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            pc=pc,
            instruction=instruction,
            cursor=cursor,
            cell=cell,
            tape_snapshot=tape_snapshot,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    @property
    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


InputProvider = Callable[[], Optional[int]]
OutputSink = Callable[[int], None]


def stdin_provider() -> Optional[int]:
    data = sys.stdin.buffer.read(1)
    return data[0] if data else None


def stdout_sink(value: int) -> None:
    # Flushed per byte so prompts are visible before the next blocking read.
    stream = sys.stdout.buffer
    stream.write(bytes((value,)))
    stream.flush()


def bytes_input(data: Iterable[int]) -> InputProvider:
    """Input provider that yields each byte of ``data`` then end-of-input."""
    iterator = iter(bytes(data))
    return lambda: next(iterator, None)


class Machine:
    def __init__(
        self,
        *,
        input_provider: Optional[InputProvider] = None,
        output_sink: Optional[OutputSink] = None,
        eof_policy: str = EOF_ERROR,
        max_steps: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        verbose: bool = False,
        history: int = 64,
        services: Optional[RuntimeServices] = None,
    ) -> None:
        if eof_policy not in EOF_POLICIES:
            raise ValueError(f"eof_policy must be one of {', '.join(EOF_POLICIES)}, got {eof_policy!r}")
        if max_steps is not None and max_steps < 0:
            raise ValueError("max_steps must be non-negative")
        if history < 1:
            raise ValueError("history must be >= 1")
        self.input_provider = input_provider or stdin_provider
        self.output_sink = output_sink or stdout_sink
        self.eof_policy = eof_policy
        self.max_steps = max_steps
        self.cancel_event = cancel_event
        self.verbose = verbose
        self.history = history
        self.services = services or RuntimeServices()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.program: Optional[Program] = None
        self.state = MachineState()
        self.logger = StateLogger(verbose=verbose, history=history)

    def run(self, program: Program) -> MachineState:
        state = MachineState()
        self.state = state
        self.program = program
        self.logger = StateLogger(verbose=self.verbose, history=self.history)
        self.logger.record(pc=None, instruction=None, cursor=0, cell=0)

        instructions = program.instructions
        count = len(instructions)
        execute = self._execute
        log_step = self._log_step
        check_interrupts = self._check_interrupts
        step_rules = self.hook_registry.has_step_rules

        self._emit_event("program_start", self, program)
        try:
            while state.pc < count:
                check_interrupts(state)
                instruction = instructions[state.pc]
                entry = log_step(instruction, state)
                execute(instruction, state)
                state.steps += 1
                if step_rules:
                    self._after_step(entry, instruction, state)
                state.pc += 1
        except BFRuntimeError as error:
            self._report_error(error, error)
            raise
        except Exception as exc:
            # Surface Python-level faults through the same traceback path.
            wrapped = BFRuntimeError(f"Internal machine error: {exc}", pc=state.pc, kind="internal")
            self._report_error(wrapped, exc)
            raise wrapped from exc
        self._emit_event("program_end", self, state)
        return state

    def _report_error(self, error: BFRuntimeError, cause: Exception) -> None:
        if error.step_index is None and self.logger.last_entry:
            error.step_index = self.logger.last_entry.step_index
        try:
            self._emit_event("on_error", self, cause)
        except BFRuntimeError as hook_error:
            # The runtime fault stays the raised error; the hook failure rides along.
            error.hook_error = hook_error

    def _check_interrupts(self, state: MachineState) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ExecutionCancelled(f"Execution cancelled at instruction {state.pc}", pc=state.pc)
        if self.max_steps is not None and state.steps >= self.max_steps:
            raise StepLimitExceeded(f"Step limit of {self.max_steps} reached at instruction {state.pc}", pc=state.pc)

    def _execute(self, instruction: Instruction, state: MachineState) -> None:
        op = instruction.op
        cells = state.cells
        if op == INCREMENT:
            cells[state.cursor] = (int(cells[state.cursor]) + instruction.arg) & 0xFF
        elif op == DECREMENT:
            cells[state.cursor] = (int(cells[state.cursor]) - instruction.arg) & 0xFF
        elif op == MOVE_RIGHT:
            self._move(instruction, state, instruction.arg)
        elif op == MOVE_LEFT:
            self._move(instruction, state, -instruction.arg)
        elif op == JUMP_IF_ZERO:
            if cells[state.cursor] == 0:
                state.pc = instruction.arg
        elif op == JUMP_IF_NONZERO:
            if cells[state.cursor] != 0:
                state.pc = instruction.arg
        elif op == WRITE_BYTE:
            self.output_sink(int(cells[state.cursor]))
        elif op == READ_BYTE:
            self._read(instruction, state)
        else:
            raise BFRuntimeError(f"Unknown instruction {instruction}", pc=state.pc, instruction=instruction)

    def _move(self, instruction: Instruction, state: MachineState, delta: int) -> None:
        target = state.cursor + delta
        if not 0 <= target < TAPE_SIZE:
            raise CellRangeError(
                f"{instruction} moved the cursor from {state.cursor} to {target}, outside [0, {TAPE_SIZE})",
                pc=state.pc,
                instruction=instruction,
            )
        state.cursor = target

    def _read(self, instruction: Instruction, state: MachineState) -> None:
        value = self.input_provider()
        if value is None:
            if self.eof_policy == EOF_ZERO:
                state.cells[state.cursor] = 0
            elif self.eof_policy == EOF_ERROR:
                raise InputExhausted(
                    f"{instruction} at instruction {state.pc} found no input remaining",
                    pc=state.pc,
                    instruction=instruction,
                )
            return
        state.cells[state.cursor] = value & 0xFF

    def _log_step(self, instruction: Instruction, state: MachineState) -> StateEntry:
        return self.logger.record(
            pc=state.pc,
            instruction=instruction,
            cursor=state.cursor,
            cell=int(state.cells[state.cursor]),
            tape_snapshot=state.snapshot() if self.logger.verbose else None,
        )

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except BFRuntimeError:
            raise
        except Exception as exc:
            raise BFRuntimeError(f"Extension hook '{event}' failed: {exc}", pc=self.state.pc, kind="EXT") from exc

    def _after_step(self, entry: StateEntry, instruction: Instruction, state: MachineState) -> None:
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, pc=state.pc, instruction=instruction, cursor=state.cursor),
            )
        except BFRuntimeError:
            raise
        except Exception as exc:
            raise BFRuntimeError(
                f"Extension step rule failed: {exc}", pc=state.pc, instruction=instruction, kind="EXT"
            ) from exc


def interpret(program: Program, **options: Any) -> MachineState:
    return Machine(**options).run(program)


class TracebackFormatter:
    def __init__(self, machine: Machine, *, limit: int = 5) -> None:
        self.machine = machine
        self.limit = limit

    def recent_steps(self) -> List[StateEntry]:
        steps = [entry for entry in self.machine.logger.entries if entry.instruction is not None]
        return steps[-self.limit:]

    def format_text(self, error: BFRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent step last):"]
        for entry in self.recent_steps():
            location = entry.instruction.location if entry.instruction else None
            if location:
                lines.append(
                    f"  File \"{location.file}\", line {location.line}, column {location.column}, at instruction {entry.pc}"
                )
            else:
                lines.append(f"  <unknown location> at instruction {entry.pc}")
            lines.append(f"    {entry.instruction}")
            lines.append(
                f"    State log index: {entry.step_index}  State id: {entry.state_id}  Cursor: {entry.cursor}  Cell: {entry.cell}"
            )
            if verbose and entry.tape_snapshot is not None:
                snapshot = ", ".join(f"[{k}]={v}" for k, v in entry.tape_snapshot.items())
                lines.append(f"    Tape snapshot: {snapshot}")
        lines.append(f"{error.__class__.__name__}: {error.message} (kind: {error.kind})")
        if error.hook_error is not None:
            lines.append(f"  while reporting: {error.hook_error.message}")
        return "\n".join(lines)

    def to_json(self, error: BFRuntimeError) -> str:
        steps_json: List[Dict[str, Any]] = []
        for entry in self.recent_steps():
            item: Dict[str, Any] = {
                "step_index": entry.step_index,
                "state_id": entry.state_id,
                "pc": entry.pc,
                "instruction": str(entry.instruction),
                "cursor": entry.cursor,
                "cell": entry.cell,
            }
            location = entry.instruction.location if entry.instruction else None
            if location:
                item["source_location"] = {"file": location.file, "line": location.line, "column": location.column}
            if entry.tape_snapshot is not None:
                item["tape_snapshot"] = {str(k): v for k, v in entry.tape_snapshot.items()}
            steps_json.append(item)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "kind": error.kind,
                "message": error.message,
                "pc": error.pc,
                "failing_step_index": error.step_index,
                "hook_error": error.hook_error.message if error.hook_error is not None else None,
            },
            "traceback": steps_json,
        }
        return json.dumps(data, indent=2)
