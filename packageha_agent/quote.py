from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .charter import NONE_SERVICE_OPTION
from .commerce import CustomLineItem, Storefront
from .errors import UpstreamCatalogOrOrderError
from .flow_table import FlowSpec, StepKind
from .memory import Memory
from .results import FlowResult
from .utils import parse_quantity

logger = logging.getLogger("packageha.quote")

SERVICE_PRICING: Dict[str, str] = {
    "Hero shot photography": "500.00",
    "Stop-motion unboxing video": "800.00",
    "E-commerce product photos": "400.00",
    "3D render with packaging for website": "600.00",
    "Package design consultation": "300.00",
    "Brand styling consultation": "350.00",
}
UNKNOWN_SERVICE_PRICE = "500.00"

# Section headings per consultation phase; empty means answers are listed under the package line.
PHASE_LABELS: Dict[str, str] = {
    "product_details": "PRODUCT DETAILS",
    "package_specs": "PACKAGE SPECS",
    "fulfillment_specs": "FULFILLMENT",
    "launch_kit": "LAUNCH KIT",
    "consultation": "",
}

ORDER_CREATED_REPLY = (
    "✅ **Project Brief Created!**\n\nI've attached all your specifications to the order. "
    "Please review and complete your purchase.\n\nType 'reset' to start a new project."
)
ORDER_FAILED_REPLY = (
    "⚠️ I encountered an error while creating your quote. Please try again or contact support."
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_brief_note(memory: Memory, flow_spec: FlowSpec, timestamp: Optional[str] = None) -> str:
    """Purpose: Render the merchant-facing project brief attached to the draft order.
    Inputs/Outputs: Inputs are Memory, the FlowSpec, and an optional ISO timestamp;
        output is the note text.
    Side Effects / State: None.
    Dependencies: Walks the flow's consultation steps in table order.
    Failure Modes: Unanswered questions are skipped; never raises.
    If Removed: Orders arrive without the consultation answers.
    Testing Notes: Every answered question id appears upper-cased exactly once.
    """
    # Package line first, then one section per consultation phase in flow order.
    package = memory.package_name or "Not selected"
    if memory.selected_variant_name and memory.package_name:
        package = f"{memory.package_name} ({memory.selected_variant_name})"
    elif memory.selected_variant_name:
        package = memory.selected_variant_name
    lines: List[str] = ["--- PROJECT BRIEF ---", f"Package: {package}"]

    for spec in flow_spec.steps:
        if spec.kind != StepKind.CONSULTATION or not spec.phase:
            continue
        phase = flow_spec.charter.phase(spec.phase)
        answers = [
            f"- {step.id.upper()}: {memory.clipboard[step.id]}" for step in phase.steps if memory.clipboard.get(step.id)
        ]
        if not answers:
            continue
        label = PHASE_LABELS.get(phase.key, phase.key.replace("_", " ").upper())
        if label:
            lines.append("")
            lines.append(f"[{label}]")
        lines.extend(answers)

    lines.append("---------------------")
    lines.append(f"Generated by Studium AI Agent ({flow_spec.charter.meta.name})")
    lines.append(f"Timestamp: {timestamp or _utc_now_iso()}")
    return "\n".join(lines)


def build_service_line_items(selection: Optional[str]) -> List[CustomLineItem]:
    """Turn a comma-separated service selection into priced custom line items."""
    items: List[CustomLineItem] = []
    if not selection:
        return items
    for name in (part.strip() for part in selection.split(",")):
        if not name or name == NONE_SERVICE_OPTION:
            continue
        items.append(CustomLineItem(title=name, price=SERVICE_PRICING.get(name, UNKNOWN_SERVICE_PRICE)))
    return items


class QuoteDesk:
    """Terminal step: turns a finished consultation into a draft order."""

    def __init__(self, storefront: Storefront, clock: Callable[[], str] = _utc_now_iso) -> None:
        self._storefront = storefront
        self._clock = clock

    def create(self, memory: Memory, flow_spec: FlowSpec) -> FlowResult:
        """Purpose: Create the draft order for the session's collected answers.
        Inputs/Outputs: Inputs are Memory and FlowSpec; output is a FlowResult that
            carries the draft order and the memory-reset signal on success.
        Side Effects / State: One order creation call through the Storefront.
        Dependencies: build_brief_note, parse_quantity, build_service_line_items.
        Failure Modes: UpstreamCatalogOrOrderError becomes an apology with memory kept
            so the user can retry.
        If Removed: No flow ever reaches a quote.
        Testing Notes: Launch kit orders carry only custom line items.
        """
        # Memory is cleared by the engine when memory_reset is set.
        note = build_brief_note(memory, flow_spec, self._clock())
        quantity = parse_quantity(memory.clipboard.get("quantity"))
        line_items = build_service_line_items(memory.clipboard.get("service_selection"))
        try:
            order = self._storefront.create_order(memory.selected_variant_id, quantity, note, line_items or None)
        except UpstreamCatalogOrOrderError as exc:
            logger.error(
                "draft order failed flow=%s package=%s status=%s error=%s",
                flow_spec.flow.value,
                memory.package_id,
                exc.status_code,
                exc,
            )
            return FlowResult(reply=ORDER_FAILED_REPLY)
        logger.info("draft order created flow=%s order=%s", flow_spec.flow.value, order.order_id)
        return FlowResult(reply=ORDER_CREATED_REPLY, memory_reset=True, draft_order=order)
