from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger("packageha.turn_runner")


@dataclass
class TurnStep:
    """Named stage of the per-request engine pipeline; finalizers run on every turn."""
    name: str
    fn: Callable[[object], None]
    finalizer: bool = False


class TurnRunner:
    """Runs turn stages in order until the turn is finished, then only the finalizers."""

    def __init__(self, steps: List[TurnStep], is_finished: Callable[[object], bool]) -> None:
        self._steps = steps
        self._is_finished = is_finished

    def run(self, context: object) -> List[str]:
        """Purpose: Execute stages in order, short-circuiting once the turn is finished.
        Inputs/Outputs: Input is a mutable turn context; output is the names of the
            stages that ran, in order.
        Side Effects / State: Stage functions mutate the context.
        Dependencies: TurnStep callables and the is_finished predicate.
        Failure Modes: Stage exceptions propagate to the engine boundary; finalizers
            after the failing stage do not run.
        If Removed: The engine cannot sequence a request.
        Testing Notes: A stage that finishes the turn must stop later regular stages
            while finalizers still run.
        """
        # The finished check happens before each regular stage, not once up front.
        ran: List[str] = []
        finished_at: Optional[str] = None
        for step in self._steps:
            if not step.finalizer:
                if finished_at is not None:
                    continue
                if self._is_finished(context):
                    finished_at = ran[-1] if ran else step.name
                    logger.debug("turn finished early after=%s", finished_at)
                    continue
            step.fn(context)
            ran.append(step.name)
        return ran
