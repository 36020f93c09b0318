import json
import re
import time
from typing import Any, Dict, Iterable, Optional

CODE_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
TITLE_PREFIX_RE = re.compile(r"TEST\s?-\s?|rs-", re.IGNORECASE)
NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form text for keyword matching.
    Inputs/Outputs: Input is a raw string; output is a lowercase string with
        whitespace collapsed. Arabic and other scripts are preserved.
    Side Effects / State: None; pure function.
    Dependencies: Uses regex; called by reset, greeting, and restart checks.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Keyword checks become case and whitespace sensitive.
    Testing Notes: Validate "  Start   OVER " becomes "start over".
    """
    # Lowercase and collapse whitespace without touching non-Latin letters.
    if not text:
        return ""
    return re.sub(r"\s+", " ", text.lower()).strip()


def contains_keyword(text: str, keywords: Iterable[str]) -> bool:
    """Purpose: Check whether any keyword appears as a whole word in the text.
    Inputs/Outputs: Inputs are raw text and keywords; output is a boolean.
    Side Effects / State: None.
    Dependencies: Uses normalize_text and Unicode-aware regex word boundaries.
    Failure Modes: Returns False for empty text.
    If Removed: Reset detection falls back to substring checks and misfires.
    Testing Notes: "reset please" matches "reset"; "preset" does not.
    """
    # Match each keyword on word boundaries so substrings do not trigger.
    normalized = normalize_text(text)
    if not normalized:
        return False
    for keyword in keywords:
        pattern = r"\b" + re.escape(normalize_text(keyword)) + r"\b"
        if re.search(pattern, normalized):
            return True
    return False


def strip_code_fence(text: str) -> str:
    """Remove Markdown code-fence markers (``` and ```json) from model output."""
    if not text:
        return ""
    return CODE_FENCE_RE.sub("", text).strip()


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Extract the first JSON object block from an arbitrary string.
    Inputs/Outputs: Input is a raw string; output is JSON substring or None.
    Side Effects / State: None; pure function.
    Dependencies: None beyond built-ins; used by safe_json_loads.
    Failure Modes: Returns None if braces are missing or inverted.
    If Removed: Decisions wrapped in chatter cannot be recovered.
    Testing Notes: Provide strings with extra text before/after JSON and ensure extraction.
    """
    # Locate the outermost JSON braces to extract a parseable block.
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def safe_json_loads(text: str) -> Optional[Dict[str, Any]]:
    """Purpose: Parse a JSON object from oracle output safely.
    Inputs/Outputs: Input is raw text; output is a dict or None if parsing fails.
    Side Effects / State: None; pure function.
    Dependencies: Uses strip_code_fence, extract_json_block and json.loads.
    Failure Modes: Returns None on JSONDecodeError, missing block, or non-object JSON.
    If Removed: Decision parsing crashes on malformed model output.
    Testing Notes: Validate fenced JSON parses and malformed JSON returns None.
    """
    # Try the fence-stripped text first, then the outermost brace block.
    cleaned = strip_code_fence(text)
    candidates = [cleaned]
    block = extract_json_block(cleaned)
    if block and block != cleaned:
        candidates.append(block)
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(data, dict):
            return data
    return None


def clean_catalog_title(title: str) -> str:
    """Strip test/internal markers such as "TEST - " and "rs-" from a catalog title."""
    return TITLE_PREFIX_RE.sub("", title or "").strip()


def parse_quantity(raw: Optional[str], default: int = 1) -> int:
    """Purpose: Derive an order quantity from a free-text answer.
    Inputs/Outputs: Input is the raw answer; output is a positive integer.
    Side Effects / State: None.
    Dependencies: Uses NUMBER_RE; thousands separators are removed first.
    Failure Modes: Missing or non-positive numbers yield the default.
    If Removed: Draft orders cannot carry the requested quantity.
    Testing Notes: "1,000 units" -> 1000, "about 250.7" -> 250, "many" -> 1.
    """
    # Take the first number in the answer and floor it.
    if not raw:
        return default
    match = NUMBER_RE.search(raw.replace(",", ""))
    if not match:
        return default
    value = int(float(match.group(0)))
    return value if value >= 1 else default
