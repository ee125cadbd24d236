"""Stepwise Extension: binding watcher.

Behavior:
- Prints every write to a binding whose name is listed in the
  STEPWISE_WATCH environment variable (comma separated); all writes when unset.
- Prints a one-line progress report every 1000 events.
- Raises on a write of NaN when STEPWISE_WATCH_STRICT is set, which faults
  the run with code "hook-failed".
"""

from __future__ import annotations

import math
import os
import sys
from typing import Any, FrozenSet

from extensions import ExtensionAPI, StepContext


STEPWISE_EXTENSION_NAME = "watch"
STEPWISE_EXTENSION_API_VERSION = 1


def _watched_names() -> FrozenSet[str]:
    raw = os.environ.get("STEPWISE_WATCH", "")
    return frozenset(name.strip() for name in raw.split(",") if name.strip())


def stepwise_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=STEPWISE_EXTENSION_NAME, version="0.1.0")
    watched = _watched_names()
    strict = bool(os.environ.get("STEPWISE_WATCH_STRICT"))

    @ext.on_event("assign")
    def _on_assign(state: Any, event: Any) -> None:
        if watched and event.name not in watched:
            return
        new_value = event.new_value
        if strict and isinstance(new_value, float) and math.isnan(new_value):
            raise ValueError(f"{event.name} became NaN")
        print(f"[watch] step {event.step}: {event.name} {event.old_value!r} -> {new_value!r}", file=sys.stderr)

    @ext.every_n_steps(1000)
    def _progress(state: Any, ctx: StepContext) -> None:
        print(f"[watch] {ctx.step_index} events, scope depth {len(state.scope_stack)}", file=sys.stderr)
