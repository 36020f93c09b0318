from __future__ import annotations

"""Flow handlers: one state machine per flow, interpreted from FLOW_TABLE.

The base handler dispatches on the kind of the current step and knows how to
"enter" a step (ask its first question, prompt a search, list variants, or
create the order). Subclasses adjust the wording or behaviour of a flow's
entry points only; transitions always come from the table.
"""

import logging
from types import MappingProxyType
from typing import Callable, Dict, Mapping

from .consultation import ConsultationRunner
from .flow_table import FLOW_TABLE, FlowSpec, StepKind
from .matcher import SEARCH_PROMPT, DiscoveryMatcher, VariantMatcher, option_names
from .memory import Flow, Memory
from .quote import QuoteDesk
from .results import FlowResult

logger = logging.getLogger("packageha.flows")

UNKNOWN_STEP_REPLY = "I'm not sure what to do. Type 'reset' to start over."


class FlowHandler:
    """Table-driven dispatcher for one flow."""

    discovery_intro = (
        "Great! Now let's find the perfect package for your product. What type of packaging are you looking for?"
    )
    welcome = ""

    def __init__(
        self,
        flow_spec: FlowSpec,
        runner: ConsultationRunner,
        discovery: DiscoveryMatcher,
        variants: VariantMatcher,
        quotes: QuoteDesk,
    ) -> None:
        self.flow_spec = flow_spec
        self._runner = runner
        self._discovery = discovery
        self._variants = variants
        self._quotes = quotes

    @property
    def flow(self) -> Flow:
        return self.flow_spec.flow

    def handle(self, message: str, memory: Memory, session_id: str) -> FlowResult:
        """Purpose: Process one user message at the session's current step.
        Inputs/Outputs: Inputs are the message, Memory, and session id; output is FlowResult.
        Side Effects / State: Mutates Memory through the step's primitive.
        Dependencies: ConsultationRunner, DiscoveryMatcher, VariantMatcher, QuoteDesk.
        Failure Modes: Steps missing from the table reply with the reset hint; the
            engine repairs memory before dispatch so this is rare.
        If Removed: The engine has nothing to dispatch to.
        Testing Notes: Drive each flow end to end with fake oracle and storefront.
        """
        # Dispatch on the step kind declared in the flow table.
        spec = self.flow_spec.spec_for(memory.step)
        if spec is None:
            logger.warning("unknown step flow=%s step=%s", self.flow.value, memory.step)
            return FlowResult(reply=UNKNOWN_STEP_REPLY)

        enter = self._enter_for(session_id)
        if spec.kind == StepKind.ENTRY:
            memory.step = spec.next_step
            memory.question_index = 0
            return enter(memory, spec.next_step).prefixed(self.welcome)
        if spec.kind == StepKind.CONSULTATION:
            phase = self.flow_spec.charter.phase(spec.phase)
            return self._runner.run(message, memory, phase, spec.next_step, enter)
        if spec.kind == StepKind.DISCOVERY:
            return self._discovery.handle(message, memory, session_id, self.flow_spec, enter)
        if spec.kind == StepKind.VARIANT:
            return self._variants.handle(message, memory, self.flow_spec, enter)
        return self._quotes.create(memory, self.flow_spec)

    def enter(self, memory: Memory, step: str, session_id: str) -> FlowResult:
        """Produce the opening reply of ``step`` after a transition into it."""
        spec = self.flow_spec.spec_for(step)
        if spec is None:
            return FlowResult(reply=UNKNOWN_STEP_REPLY)
        logger.info("step entered flow=%s step=%s", self.flow.value, spec.name)
        if spec.kind == StepKind.CONSULTATION:
            phase = self.flow_spec.charter.phase(spec.phase)
            return FlowResult(reply=phase.steps[0].question)
        if spec.kind == StepKind.DISCOVERY:
            return self.enter_discovery(memory, session_id)
        if spec.kind == StepKind.VARIANT:
            return FlowResult(reply=f"Which type are you interested in?\n\nOptions: {option_names(memory.variants)}")
        if spec.kind == StepKind.TERMINAL:
            return self._quotes.create(memory, self.flow_spec)
        return FlowResult(reply=SEARCH_PROMPT)

    def enter_discovery(self, memory: Memory, session_id: str) -> FlowResult:
        return FlowResult(reply=self.discovery_intro)

    def _enter_for(self, session_id: str) -> Callable[[Memory, str], FlowResult]:
        def enter(target_memory: Memory, step: str) -> FlowResult:
            return self.enter(target_memory, step, session_id)

        return enter


class DirectSalesFlow(FlowHandler):
    """Full consultation: product details, package, specs, fulfillment, launch services."""


class PackageOrderFlow(FlowHandler):
    """Pick a package, a variant, and a quantity."""

    discovery_intro = "Which package would you like to order?"


class LaunchKitFlow(FlowHandler):
    """Studio services only; the order carries custom line items and no package."""

    welcome = "Welcome to the Launch Kit! Let's plan the studio services for your product.\n\n"


class PackagingAssistantFlow(FlowHandler):
    """Collect product details, then recommend packages from them without asking again."""

    welcome = "I'll ask a few questions about your product so I can recommend the right packaging.\n\n"

    def enter_discovery(self, memory: Memory, session_id: str) -> FlowResult:
        # The collected description is the search request.
        request = memory.clipboard.get("product_description") or "packaging for my product"
        return self._discovery.search(request, memory, session_id, self.flow_spec, self._enter_for(session_id))


HANDLER_CLASSES: Mapping[Flow, type] = MappingProxyType(
    {
        Flow.DIRECT_SALES: DirectSalesFlow,
        Flow.PACKAGE_ORDER: PackageOrderFlow,
        Flow.LAUNCH_KIT: LaunchKitFlow,
        Flow.PACKAGING_ASSISTANT: PackagingAssistantFlow,
    }
)


def build_flow_handlers(
    runner: ConsultationRunner,
    discovery: DiscoveryMatcher,
    variants: VariantMatcher,
    quotes: QuoteDesk,
) -> Dict[Flow, FlowHandler]:
    """Instantiate one handler per flow in FLOW_TABLE."""
    return {
        flow: HANDLER_CLASSES[flow](flow_spec, runner, discovery, variants, quotes)
        for flow, flow_spec in FLOW_TABLE.items()
    }
