from __future__ import annotations

"""Package discovery and variant matching.

Both matchers turn a user message plus catalog data into an oracle prompt, ask
the DecisionGate for a typed decision, and apply that decision to Memory. The
numbered shortlist left by a "multiple" decision is resolved here without the
oracle so a reply like "2" never costs a model call.
"""

import logging
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .charter import build_charter_prompt
from .commerce import CatalogItem, Storefront
from .decisions import (
    ChatDecision,
    DecisionGate,
    FoundDecision,
    MultipleDecision,
    NoneDecision,
    VariantMatch,
    decision_to_log,
)
from .errors import UpstreamCatalogOrOrderError
from .flow_table import FlowSpec
from .memory import MAX_PENDING_MATCHES, Memory, PendingMatch, VariantOption
from .prompt_loader import render_prompt
from .results import FlowResult
from .utils import clean_catalog_title, contains_keyword, normalize_text

logger = logging.getLogger("packageha.matcher")

GREETINGS = ("hi", "hello", "hey", "hola", "مرحبا", "هلا", "أهلا")
RESTART_SEARCH_KEYWORDS = ("search", "change", "different")
DEFAULT_VARIANT_TITLE = "Default Title"

GREETING_REPLY = (
    "Hello! I'm your packaging consultant. What are you looking for? "
    "(e.g., 'Custom Boxes', 'Bags', 'Printing Services')"
)
CHAT_FALLBACK_REPLY = "I focus on packaging solutions. What are you looking for?"
SEARCH_PROMPT = "What type of packaging are you looking for?"
NO_MATCH_REPLY = (
    "I couldn't find an exact match for that. Let me suggest some options:\n\n"
    "• Try a simpler search like 'box', 'bag', or 'packaging'\n"
    "• Or describe what you're looking for in different words\n"
    "• You can also browse our catalog by searching for 'show all packages'\n\n"
    "What type of packaging are you looking for?"
)
CATALOG_ERROR_REPLY = "I'm having trouble accessing the package catalog. Please try again later."
UNSURE_REPLY = "I'm not sure how to help with that. What packaging solution are you looking for?"
MATCH_REASON_FALLBACK = "Matches your search"
VARIANT_REPROMPT = "Please select one of the options listed above."
LOST_VARIANTS_REPLY = (
    "I lost track of the package options. Let's search again. What type of packaging are you looking for?"
)
RESTART_REPLY = "No problem, let's look for a different package. What type of packaging are you looking for?"

CONTEXT_LABELS = (
    ("product_description", "Product"),
    ("product_dimensions", "Dimensions"),
    ("product_weight", "Weight"),
    ("fragility", "Fragility"),
    ("brand_requirements", "Branding"),
    ("budget", "Budget"),
    ("quantity", "Quantity"),
)

Enter = Callable[[Memory, str], FlowResult]


def is_greeting(text: str) -> bool:
    """True when the whole message is a bare greeting such as "hi!" or "مرحبا"."""
    cleaned = re.sub(r"[^\w\s]", "", normalize_text(text)).strip()
    return cleaned in GREETINGS


def wants_new_search(text: str) -> bool:
    return contains_keyword(text, RESTART_SEARCH_KEYWORDS)


def display_variant_title(title: str) -> str:
    return "Default" if title == DEFAULT_VARIANT_TITLE else title


def format_inventory(catalog: Sequence[CatalogItem]) -> str:
    return "\n".join(f"ID {index}: {clean_catalog_title(item.title)}" for index, item in enumerate(catalog))


def format_variant_options(variants: Sequence[VariantOption]) -> str:
    return "\n".join(
        f"ID {index}: {display_variant_title(variant.title)}" for index, variant in enumerate(variants)
    )


def format_matches(matches: Sequence[PendingMatch]) -> str:
    return "\n".join(f"{index}. **{match.name}** - {match.reason}" for index, match in enumerate(matches, start=1))


def option_names(variants: Sequence[VariantOption]) -> str:
    return ", ".join(display_variant_title(variant.title) for variant in variants)


def product_details(clipboard: Dict[str, str]) -> List[str]:
    return [f"{label}: {clipboard[key]}" for key, label in CONTEXT_LABELS if clipboard.get(key)]


class DiscoveryMatcher:
    """Maps a free-text request onto one catalog package, or a numbered shortlist."""

    def __init__(self, gate: DecisionGate, storefront: Storefront, prompts_dir: Path) -> None:
        self._gate = gate
        self._storefront = storefront
        self._prompts_dir = prompts_dir

    def handle(
        self,
        message: str,
        memory: Memory,
        session_id: str,
        flow_spec: FlowSpec,
        enter: Enter,
    ) -> FlowResult:
        """Purpose: Run one discovery turn for the current flow.
        Inputs/Outputs: Inputs are the message, Memory, session id, FlowSpec, and the
            callback used to enter the step after a package is chosen; output is FlowResult.
        Side Effects / State: May set the package selection, pending matches, or step;
            may refresh the session catalog cache.
        Dependencies: Storefront catalog, DecisionGate, discovery prompt template.
        Failure Modes: Catalog errors return an apology with memory unchanged; oracle
            failures arrive here as chat fallbacks from the gate.
        If Removed: No flow can pick a package.
        Testing Notes: A pending shortlist answered with an out-of-range number must be
            re-presented unchanged without any oracle call.
        """
        # Shortlist answers are resolved before anything reaches the oracle.
        text = (message or "").strip()
        if memory.pending_matches:
            return self._resolve_pending(text, memory, session_id, flow_spec, enter)
        if not text:
            return FlowResult(reply=SEARCH_PROMPT)
        if is_greeting(text):
            return FlowResult(reply=GREETING_REPLY)
        return self.search(text, memory, session_id, flow_spec, enter)

    def search(
        self,
        text: str,
        memory: Memory,
        session_id: str,
        flow_spec: FlowSpec,
        enter: Enter,
    ) -> FlowResult:
        """Ask the oracle to match ``text`` against the catalog and apply its decision."""
        try:
            catalog = self._storefront.get_catalog(session_id)
        except UpstreamCatalogOrOrderError as exc:
            logger.error("catalog fetch failed session=%s error=%s", session_id, exc)
            return FlowResult(reply=CATALOG_ERROR_REPLY)
        if not catalog:
            logger.warning("catalog empty session=%s", session_id)
            return FlowResult(reply=CATALOG_ERROR_REPLY)

        prompt = render_prompt(
            self._prompts_dir / "discovery.txt",
            {
                "inventory": format_inventory(catalog),
                "message": text,
                "context": self._product_context(memory),
            },
        )
        decision = self._gate.discovery(prompt, build_charter_prompt("discovery", flow_spec.charter))
        logger.info("discovery decision session=%s decision=%s", session_id, decision_to_log(decision))

        if isinstance(decision, FoundDecision):
            if 0 <= decision.id < len(catalog):
                return self.select(catalog[decision.id], memory, flow_spec, enter)
            logger.warning("discovery id out of range session=%s id=%s", session_id, decision.id)
            return FlowResult(reply=UNSURE_REPLY)
        if isinstance(decision, MultipleDecision):
            return self._shortlist(decision, catalog, memory, flow_spec)
        if isinstance(decision, NoneDecision):
            return FlowResult(reply=NO_MATCH_REPLY)
        if isinstance(decision, ChatDecision):
            return FlowResult(reply=decision.reply or CHAT_FALLBACK_REPLY)
        return FlowResult(reply=UNSURE_REPLY)

    def select(self, item: CatalogItem, memory: Memory, flow_spec: FlowSpec, enter: Enter) -> FlowResult:
        """Purpose: Record a chosen package and move to variant selection.
        Inputs/Outputs: Inputs are the catalog item, Memory, FlowSpec, and enter
            callback; output is the reply naming the package.
        Side Effects / State: Overwrites package fields, clears pending matches and any
            prior variant, and sets memory.step.
        Dependencies: FlowSpec.variant_step/after_variant_step.
        Failure Modes: Items without variants are refused and selection is not stored.
        If Removed: Discovery results never become a selection.
        Testing Notes: A single-variant package must land on the step after variants
            with the variant named "Default".
        """
        # A single variant is auto-selected and the variant step skipped.
        if not item.variants:
            logger.warning("package has no variants package=%s", item.id)
            return FlowResult(reply=UNSURE_REPLY)
        title = clean_catalog_title(item.title)
        memory.clear_selection()
        memory.package_id = item.id
        memory.package_name = title
        memory.variants = [VariantOption(id=variant.id, title=variant.title, price=variant.price) for variant in item.variants]
        memory.question_index = 0
        logger.info("package selected package=%s variants=%s", item.id, len(item.variants))

        if len(memory.variants) == 1:
            memory.selected_variant_id = memory.variants[0].id
            memory.selected_variant_name = "Default"
            memory.step = flow_spec.after_variant_step
            return enter(memory, memory.step).prefixed(f"Found **{title}**.\n\n")

        memory.step = flow_spec.variant_step
        return FlowResult(
            reply=f"Found **{title}**.\n\nWhich type are you interested in?\n\nOptions: {option_names(memory.variants)}"
        )

    def _shortlist(
        self,
        decision: MultipleDecision,
        catalog: Sequence[CatalogItem],
        memory: Memory,
        flow_spec: FlowSpec,
    ) -> FlowResult:
        matches: List[PendingMatch] = []
        for candidate in decision.matches:
            if not 0 <= candidate.id < len(catalog):
                continue
            item = catalog[candidate.id]
            matches.append(
                PendingMatch(
                    id=candidate.id,
                    catalog_id=item.id,
                    name=clean_catalog_title(item.title),
                    reason=candidate.reason or MATCH_REASON_FALLBACK,
                )
            )
        matches = matches[:MAX_PENDING_MATCHES]
        if not matches:
            return FlowResult(reply=NO_MATCH_REPLY)

        memory.pending_matches = matches
        spec = flow_spec.spec_for(flow_spec.discovery_step)
        memory.step = spec.aliases[0] if spec is not None and spec.aliases else flow_spec.discovery_step
        count = len(matches)
        return FlowResult(
            reply=(
                f"I found {count} matching packages:\n\n{format_matches(matches)}\n\n"
                f"Please select a package by number (1-{count}) or describe what you need more specifically."
            ),
            product_matches=list(matches),
        )

    def _resolve_pending(
        self,
        text: str,
        memory: Memory,
        session_id: str,
        flow_spec: FlowSpec,
        enter: Enter,
    ) -> FlowResult:
        pending = memory.pending_matches
        if re.fullmatch(r"\d+", text):
            choice = int(text)
            if 1 <= choice <= len(pending):
                chosen = pending[choice - 1]
                try:
                    catalog = self._storefront.get_catalog(session_id)
                except UpstreamCatalogOrOrderError as exc:
                    logger.error("catalog fetch failed session=%s error=%s", session_id, exc)
                    return FlowResult(reply=CATALOG_ERROR_REPLY)
                item = _find_item(catalog, chosen.catalog_id)
                if item is None:
                    logger.warning("shortlisted package vanished session=%s package=%s", session_id, chosen.catalog_id)
                    memory.pending_matches = []
                    return FlowResult(reply=NO_MATCH_REPLY)
                logger.info("shortlist choice session=%s choice=%s package=%s", session_id, choice, item.id)
                return self.select(item, memory, flow_spec, enter)
        elif wants_new_search(text):
            memory.pending_matches = []
            memory.step = flow_spec.discovery_step
            return FlowResult(reply=SEARCH_PROMPT)

        return FlowResult(
            reply=f"Please select a number between 1 and {len(pending)}:\n\n{format_matches(pending)}",
            product_matches=list(pending),
        )

    def _product_context(self, memory: Memory) -> str:
        details = product_details(memory.clipboard)
        if not details:
            return ""
        return "\n\n" + render_prompt(self._prompts_dir / "product_context.txt", {"details": "\n".join(details)})


def _find_item(catalog: Sequence[CatalogItem], catalog_id: int) -> Optional[CatalogItem]:
    for item in catalog:
        if item.id == catalog_id:
            return item
    return None


class VariantMatcher:
    """Resolves the user's reply to one of the selected package's variants."""

    def __init__(self, gate: DecisionGate, prompts_dir: Path) -> None:
        self._gate = gate
        self._prompts_dir = prompts_dir

    def handle(self, message: str, memory: Memory, flow_spec: FlowSpec, enter: Enter) -> FlowResult:
        """Purpose: Run one variant-selection turn.
        Inputs/Outputs: Inputs are the message, Memory, FlowSpec, and the callback that
            enters the following step; output is FlowResult.
        Side Effects / State: Sets the selected variant and advances memory.step on a
            match; returns to discovery on a restart request.
        Dependencies: DecisionGate and the variant prompt template.
        Failure Modes: Oracle failures arrive as no-match fallbacks; out-of-range ids
            are treated as no-match.
        If Removed: Multi-variant packages can never be ordered.
        Testing Notes: "different" must clear the selection and not call the oracle.
        """
        # Restart words and missing variants never reach the oracle.
        text = (message or "").strip()
        if wants_new_search(text):
            memory.clear_selection()
            memory.step = flow_spec.discovery_step
            memory.question_index = 0
            return FlowResult(reply=RESTART_REPLY)
        if not memory.variants:
            memory.clear_selection()
            memory.step = flow_spec.discovery_step
            return FlowResult(reply=LOST_VARIANTS_REPLY)
        if not text:
            return FlowResult(
                reply=f"Which type are you interested in?\n\nOptions: {option_names(memory.variants)}"
            )

        prompt = render_prompt(
            self._prompts_dir / "variant.txt",
            {"options": format_variant_options(memory.variants), "message": text},
        )
        decision = self._gate.variant(prompt, build_charter_prompt("variant", flow_spec.charter))
        logger.info("variant decision package=%s decision=%s", memory.package_id, decision_to_log(decision))

        if isinstance(decision, VariantMatch) and 0 <= decision.id < len(memory.variants):
            chosen = memory.variants[decision.id]
            memory.selected_variant_id = chosen.id
            memory.selected_variant_name = display_variant_title(chosen.title)
            memory.step = flow_spec.after_variant_step
            memory.question_index = 0
            return enter(memory, memory.step).prefixed(f"Selected **{memory.selected_variant_name}**.\n\n")
        reply = getattr(decision, "reply", "") or VARIANT_REPROMPT
        return FlowResult(reply=reply)
