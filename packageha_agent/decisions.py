from __future__ import annotations

"""Typed oracle decisions and the single gate that produces them.

Raw oracle text never travels past this module: it is fence-stripped, parsed,
and checked against the closed set of decision kinds. Anything else collapses
to a safe chat / no-match decision asking the user to rephrase.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .errors import DecisionOracleError
from .oracle import DecisionOracle
from .utils import safe_json_loads

logger = logging.getLogger("packageha.decisions")

DISCOVERY_FALLBACK_REPLY = "I'm having trouble processing that. Could you rephrase your request?"
VARIANT_FALLBACK_REPLY = "I'm having trouble understanding. Please select an option from the list."


@dataclass(frozen=True)
class FoundDecision:
    id: int
    reason: str = ""
    kind: str = "found"


@dataclass(frozen=True)
class MatchCandidate:
    id: int
    name: str = ""
    reason: str = ""


@dataclass(frozen=True)
class MultipleDecision:
    matches: List[MatchCandidate] = field(default_factory=list)
    kind: str = "multiple"


@dataclass(frozen=True)
class ChatDecision:
    reply: str = ""
    kind: str = "chat"


@dataclass(frozen=True)
class NoneDecision:
    reason: str = ""
    kind: str = "none"


@dataclass(frozen=True)
class VariantMatch:
    id: int
    kind: str = "match"


@dataclass(frozen=True)
class VariantNoMatch:
    reply: str = ""
    kind: str = "no-match"


DiscoveryDecision = Union[FoundDecision, MultipleDecision, ChatDecision, NoneDecision]
VariantDecision = Union[VariantMatch, VariantNoMatch]


def _as_index(value: Any) -> Optional[int]:
    """Accept ints and digit strings; reject bools, floats with fractions, and the rest."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdecimal():
        return int(value.strip())
    return None


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_discovery_decision(raw: str) -> DiscoveryDecision:
    """Purpose: Convert raw oracle text into a discovery decision.
    Inputs/Outputs: Input is raw model text; output is Found/Multiple/Chat/None.
    Side Effects / State: Logs rejected payloads at warning level.
    Dependencies: safe_json_loads for fence stripping and JSON parsing.
    Failure Modes: Never raises; malformed JSON, unknown "type" values, or missing
        fields yield ChatDecision with the rephrase reply.
    If Removed: Untrusted model JSON would drive state transitions directly.
    Testing Notes: Fenced JSON parses; {"type": "maybe"} falls back to chat.
    """
    # Parse, then validate the discriminant and its required fields.
    data = safe_json_loads(raw)
    if data is None:
        logger.warning("discovery decision rejected reason=unparseable")
        return ChatDecision(reply=DISCOVERY_FALLBACK_REPLY)
    kind = data.get("type")
    if kind == "found":
        index = _as_index(data.get("id"))
        if index is not None:
            return FoundDecision(id=index, reason=_text(data.get("reason")))
    elif kind == "multiple":
        raw_matches = data.get("matches")
        if not isinstance(raw_matches, list):
            logger.warning("discovery decision rejected reason=matches_not_list")
            return ChatDecision(reply=DISCOVERY_FALLBACK_REPLY)
        matches: List[MatchCandidate] = []
        for item in raw_matches:
            if not isinstance(item, dict):
                continue
            index = _as_index(item.get("id"))
            if index is None:
                continue
            matches.append(MatchCandidate(id=index, name=_text(item.get("name")), reason=_text(item.get("reason"))))
        if matches:
            return MultipleDecision(matches=matches)
    elif kind == "chat":
        return ChatDecision(reply=_text(data.get("reply")))
    elif kind == "none":
        return NoneDecision(reason=_text(data.get("reason")))
    logger.warning("discovery decision rejected type=%s", kind)
    return ChatDecision(reply=DISCOVERY_FALLBACK_REPLY)


def parse_variant_decision(raw: str) -> VariantDecision:
    """Convert raw oracle text into a variant decision; anything unexpected is a no-match."""
    data = safe_json_loads(raw)
    if data is None:
        logger.warning("variant decision rejected reason=unparseable")
        return VariantNoMatch(reply=VARIANT_FALLBACK_REPLY)
    if data.get("match") is True:
        index = _as_index(data.get("id"))
        if index is not None:
            return VariantMatch(id=index)
        return VariantNoMatch(reply=_text(data.get("reply")))
    if data.get("match") is False:
        return VariantNoMatch(reply=_text(data.get("reply")))
    logger.warning("variant decision rejected match=%r", data.get("match"))
    return VariantNoMatch(reply=VARIANT_FALLBACK_REPLY)


class DecisionGate:
    """Asks the oracle and returns typed decisions; oracle failures become fallbacks."""

    def __init__(self, oracle: DecisionOracle) -> None:
        self._oracle = oracle

    def discovery(self, prompt: str, system_prompt: str) -> DiscoveryDecision:
        try:
            raw = self._oracle.generate(prompt, system_prompt)
        except DecisionOracleError:
            return ChatDecision(reply=DISCOVERY_FALLBACK_REPLY)
        return parse_discovery_decision(raw)

    def variant(self, prompt: str, system_prompt: str) -> VariantDecision:
        try:
            raw = self._oracle.generate(prompt, system_prompt)
        except DecisionOracleError:
            return VariantNoMatch(reply=VARIANT_FALLBACK_REPLY)
        return parse_variant_decision(raw)


def decision_to_log(decision: Union[DiscoveryDecision, VariantDecision]) -> Dict[str, Any]:
    """Compact log view of a decision."""
    view: Dict[str, Any] = {"kind": decision.kind}
    if isinstance(decision, (FoundDecision, VariantMatch)):
        view["id"] = decision.id
    elif isinstance(decision, MultipleDecision):
        view["ids"] = [match.id for match in decision.matches]
    return view
