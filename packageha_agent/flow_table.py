"""Declared finite-state machine for every flow.

Each flow is a table of steps keyed by name. A step has a kind (entry,
consultation, discovery, variant, terminal), an optional consultation phase,
its successor, and the data it requires. Invalid-state repair is a short list
of (detected inconsistency -> corrective step) rules evaluated against this
table before every dispatch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Callable, List, Mapping, Optional, Tuple

from .charter import (
    LAUNCH_KIT_CHARTER,
    PACKAGE_ORDER_CHARTER,
    PACKAGING_ASSISTANT_CHARTER,
    SALES_CHARTER,
    Charter,
    ConsultationPhase,
)
from .errors import InvalidStateError
from .memory import START_STEP, Flow, Memory

logger = logging.getLogger("packageha.flow_table")

PRODUCT_CONTEXT_KEYS = ("product_description", "product_dimensions", "product_weight")
TERMINAL_STEP = "draft_order"


class StepKind(str, Enum):
    ENTRY = "entry"
    CONSULTATION = "consultation"
    DISCOVERY = "discovery"
    VARIANT = "variant"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class StepSpec:
    name: str
    kind: StepKind
    next_step: Optional[str] = None
    phase: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    requires_package: bool = False
    requires_product_context: bool = False


@dataclass(frozen=True)
class FlowSpec:
    """Transition table for one flow."""
    flow: Flow
    charter: Charter
    steps: Tuple[StepSpec, ...]
    detail_step: Optional[str] = None

    def spec_for(self, step: str) -> Optional[StepSpec]:
        for spec in self.steps:
            if step == spec.name or step in spec.aliases:
                return spec
        return None

    def _first_of_kind(self, kind: StepKind) -> Optional[StepSpec]:
        for spec in self.steps:
            if spec.kind == kind:
                return spec
        return None

    @property
    def discovery_step(self) -> str:
        spec = self._first_of_kind(StepKind.DISCOVERY)
        return spec.name if spec else START_STEP

    @property
    def variant_step(self) -> Optional[str]:
        spec = self._first_of_kind(StepKind.VARIANT)
        return spec.name if spec else None

    @property
    def after_variant_step(self) -> Optional[str]:
        """Step that follows variant selection (also used when it is skipped)."""
        spec = self._first_of_kind(StepKind.VARIANT)
        return spec.next_step if spec else None

    def phase_for(self, step: str) -> Optional[ConsultationPhase]:
        spec = self.spec_for(step)
        if spec is None or spec.kind != StepKind.CONSULTATION or not spec.phase:
            return None
        return self.charter.phase(spec.phase)


FLOW_TABLE: Mapping[Flow, FlowSpec] = MappingProxyType(
    {
        Flow.DIRECT_SALES: FlowSpec(
            flow=Flow.DIRECT_SALES,
            charter=SALES_CHARTER,
            detail_step="product_details",
            steps=(
                StepSpec(START_STEP, StepKind.ENTRY, next_step="product_details"),
                StepSpec("product_details", StepKind.CONSULTATION, next_step="select_package", phase="product_details"),
                StepSpec(
                    "select_package",
                    StepKind.DISCOVERY,
                    next_step="select_package_variant",
                    aliases=("select_package_discovery",),
                    requires_product_context=True,
                ),
                StepSpec(
                    "select_package_variant",
                    StepKind.VARIANT,
                    next_step="select_package_specs",
                    requires_package=True,
                ),
                StepSpec(
                    "select_package_specs",
                    StepKind.CONSULTATION,
                    next_step="fulfillment_specs",
                    phase="package_specs",
                    requires_package=True,
                ),
                StepSpec(
                    "fulfillment_specs",
                    StepKind.CONSULTATION,
                    next_step="launch_kit",
                    phase="fulfillment_specs",
                    requires_package=True,
                ),
                StepSpec(
                    "launch_kit",
                    StepKind.CONSULTATION,
                    next_step=TERMINAL_STEP,
                    phase="launch_kit",
                    requires_package=True,
                ),
                StepSpec(TERMINAL_STEP, StepKind.TERMINAL),
            ),
        ),
        Flow.PACKAGE_ORDER: FlowSpec(
            flow=Flow.PACKAGE_ORDER,
            charter=PACKAGE_ORDER_CHARTER,
            steps=(
                StepSpec(START_STEP, StepKind.DISCOVERY, next_step="ask_variant", aliases=("select_product",)),
                StepSpec("ask_variant", StepKind.VARIANT, next_step="consultation", requires_package=True),
                StepSpec(
                    "consultation",
                    StepKind.CONSULTATION,
                    next_step=TERMINAL_STEP,
                    phase="consultation",
                    requires_package=True,
                ),
                StepSpec(TERMINAL_STEP, StepKind.TERMINAL, requires_package=True),
            ),
        ),
        Flow.LAUNCH_KIT: FlowSpec(
            flow=Flow.LAUNCH_KIT,
            charter=LAUNCH_KIT_CHARTER,
            steps=(
                StepSpec(START_STEP, StepKind.ENTRY, next_step="consultation"),
                StepSpec("consultation", StepKind.CONSULTATION, next_step=TERMINAL_STEP, phase="consultation"),
                StepSpec(TERMINAL_STEP, StepKind.TERMINAL),
            ),
        ),
        Flow.PACKAGING_ASSISTANT: FlowSpec(
            flow=Flow.PACKAGING_ASSISTANT,
            charter=PACKAGING_ASSISTANT_CHARTER,
            detail_step="consultation",
            steps=(
                StepSpec(START_STEP, StepKind.ENTRY, next_step="consultation"),
                StepSpec(
                    "consultation", StepKind.CONSULTATION, next_step="show_recommendations", phase="consultation"
                ),
                StepSpec(
                    "show_recommendations",
                    StepKind.DISCOVERY,
                    next_step="ask_variant",
                    requires_product_context=True,
                ),
                StepSpec("ask_variant", StepKind.VARIANT, next_step=TERMINAL_STEP, requires_package=True),
                StepSpec(TERMINAL_STEP, StepKind.TERMINAL, requires_package=True),
            ),
        ),
    }
)


def has_product_context(memory: Memory) -> bool:
    return any(memory.clipboard.get(key) for key in PRODUCT_CONTEXT_KEYS)


@dataclass(frozen=True)
class RepairRule:
    """A declared (detected inconsistency -> corrective step) pair."""
    name: str
    detect: Callable[[FlowSpec, StepSpec, Memory], bool]
    correct: Callable[[FlowSpec], Optional[str]]


REPAIR_RULES: Tuple[RepairRule, ...] = (
    RepairRule(
        name="package_required",
        detect=lambda flow_spec, spec, memory: spec.requires_package and not memory.has_package,
        correct=lambda flow_spec: flow_spec.discovery_step,
    ),
    RepairRule(
        name="product_context_required",
        detect=lambda flow_spec, spec, memory: spec.requires_product_context and not has_product_context(memory),
        correct=lambda flow_spec: flow_spec.detail_step,
    ),
)


def _move_to(memory: Memory, flow_spec: FlowSpec, step: str) -> None:
    memory.step = step
    memory.question_index = 0
    target = flow_spec.spec_for(step)
    if target is not None and target.kind in (StepKind.DISCOVERY, StepKind.ENTRY):
        memory.clear_selection()


def repair_memory(memory: Memory, flow_spec: FlowSpec) -> List[InvalidStateError]:
    """Purpose: Bring memory back to a state consistent with the flow table.
    Inputs/Outputs: Inputs are Memory and its FlowSpec; output lists the repairs applied.
    Side Effects / State: Mutates memory.step/question_index and may clear the selection.
    Dependencies: Uses REPAIR_RULES and FlowSpec lookups.
    Failure Modes: None; repairs are silent and only logged.
    If Removed: Resumed or corrupted sessions dispatch into steps missing their data.
    Testing Notes: Put a session in select_package_specs without a package and verify
        it lands on package selection, or product details when no answers exist.
    """
    # Apply rules until the state is stable; each corrective step is earlier in the flow.
    repairs: List[InvalidStateError] = []
    for _ in range(len(flow_spec.steps) + 1):
        spec = flow_spec.spec_for(memory.step)
        if spec is None:
            repairs.append(InvalidStateError("unknown_step", memory.step, START_STEP))
            _move_to(memory, flow_spec, START_STEP)
            continue
        fired = False
        for rule in REPAIR_RULES:
            if not rule.detect(flow_spec, spec, memory):
                continue
            corrective = rule.correct(flow_spec) or START_STEP
            if corrective == memory.step:
                continue
            repairs.append(InvalidStateError(rule.name, memory.step, corrective))
            _move_to(memory, flow_spec, corrective)
            fired = True
            break
        if not fired:
            break

    phase = flow_spec.phase_for(memory.step)
    limit = len(phase.steps) if phase else 0
    if memory.question_index < 0 or memory.question_index > limit:
        repairs.append(InvalidStateError("question_index_out_of_range", memory.step, memory.step))
        memory.question_index = 0

    for repair in repairs:
        logger.info(
            "invalid state repaired rule=%s from=%s to=%s", repair.rule, repair.detected_step, repair.corrective_step
        )
    return repairs
