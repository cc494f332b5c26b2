"""bfvm Extension: instruction profile.

Counts executed instructions per operation and prints a summary table to
stderr when the program finishes.
"""

from __future__ import annotations

import sys
from collections import Counter
from typing import Any

from extensions import ExtensionAPI, StepContext


BFVM_EXTENSION_NAME = "profile"
BFVM_EXTENSION_API_VERSION = 1


class _Profile:
    def __init__(self) -> None:
        self.counts: Counter = Counter()

    def reset(self, machine: Any, program: Any) -> None:
        self.counts.clear()

    def count(self, machine: Any, ctx: StepContext) -> None:
        self.counts[ctx.instruction.op] += 1

    def report(self, machine: Any, state: Any) -> None:
        total = sum(self.counts.values())
        print(f"profile: {total} instructions executed", file=sys.stderr)
        for op, hits in self.counts.most_common():
            print(f"  {op:<14}{hits:>10}", file=sys.stderr)


def bfvm_register(ext: ExtensionAPI) -> None:
    profile = _Profile()
    ext.metadata(name=BFVM_EXTENSION_NAME, version="1.0.0")
    ext.on_event("program_start", profile.reset)
    ext.every_n_steps(1, profile.count, name="count")
    ext.on_event("program_end", profile.report)
