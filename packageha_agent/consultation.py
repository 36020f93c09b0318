from __future__ import annotations

import logging
from typing import Callable

from .charter import ConsultationPhase, ConsultationStep
from .errors import ValidationFailure
from .memory import Memory
from .results import FlowResult

logger = logging.getLogger("packageha.consultation")

DEFAULT_VALIDATION_REPLY = "Please provide a valid answer."

Advance = Callable[[Memory, str], FlowResult]


def validate_answer(step: ConsultationStep, answer: str) -> None:
    """Run the step's validator; raise ValidationFailure with its message on rejection."""
    if step.validator is None:
        return
    result = step.validator(answer)
    if result is not True:
        message = result if isinstance(result, str) and result else DEFAULT_VALIDATION_REPLY
        raise ValidationFailure(step.id, message)


class ConsultationRunner:
    """Steps a user through a phase's ordered questions, recording answers in the clipboard."""

    def run(
        self,
        message: str,
        memory: Memory,
        phase: ConsultationPhase,
        next_step: str,
        advance: Advance,
    ) -> FlowResult:
        """Purpose: Consume one answer for the current question of a consultation phase.
        Inputs/Outputs: Inputs are the user message, Memory, the phase, the step that
            follows it, and the callback that enters that step; output is a FlowResult.
        Side Effects / State: Writes clipboard[step.id] and advances question_index on a
            valid answer; moves memory.step to next_step when the phase is exhausted.
        Dependencies: validate_answer and the advance callback.
        Failure Modes: Validator rejections are returned as the corrective reply with the
            index unchanged; validator bugs propagate to the engine.
        If Removed: No flow can collect structured answers.
        Testing Notes: Blank input re-asks without consuming the index; N valid answers
            add N clipboard keys.
        """
        # An exhausted phase transitions regardless of the message.
        steps = phase.steps
        index = memory.question_index
        if index >= len(steps):
            return self._finish(memory, phase, next_step, advance)

        current = steps[index]
        answer = (message or "").strip()
        if not answer:
            return FlowResult(reply=current.question)

        try:
            validate_answer(current, answer)
        except ValidationFailure as failure:
            logger.info("answer rejected phase=%s question=%s", phase.key, failure.step_id)
            return FlowResult(reply=failure.message)

        memory.clipboard[current.id] = answer
        memory.question_index = index + 1
        if memory.question_index < len(steps):
            return FlowResult(reply=steps[memory.question_index].question)
        return self._finish(memory, phase, next_step, advance)

    def _finish(self, memory: Memory, phase: ConsultationPhase, next_step: str, advance: Advance) -> FlowResult:
        logger.info("phase complete phase=%s next=%s", phase.key, next_step)
        memory.step = next_step
        memory.question_index = 0
        return advance(memory, next_step)
