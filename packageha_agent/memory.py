from __future__ import annotations

"""Per-session memory model and its (de)serialisation to the session store."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

MAX_PENDING_MATCHES = 5


class Flow(str, Enum):
    DIRECT_SALES = "direct_sales"
    PACKAGE_ORDER = "package_order"
    LAUNCH_KIT = "launch_kit"
    PACKAGING_ASSISTANT = "packaging_assistant"

    @classmethod
    def parse(cls, value: object) -> Optional["Flow"]:
        """Return the matching Flow or None for unknown/corrupt values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


DEFAULT_FLOW = Flow.DIRECT_SALES
START_STEP = "start"


@dataclass
class VariantOption:
    id: int
    title: str
    price: str


@dataclass
class PendingMatch:
    """Shortlist entry awaiting numeric disambiguation.

    ``id`` is the index in the listing shown to the oracle; ``catalog_id`` is the
    package's id in the commerce backend.
    """
    id: int
    catalog_id: int
    name: str
    reason: str


@dataclass
class Memory:
    """Session memory; the only mutable entity in the engine."""
    flow: str = DEFAULT_FLOW.value
    step: str = START_STEP
    clipboard: Dict[str, str] = field(default_factory=dict)
    question_index: int = 0
    package_id: Optional[int] = None
    package_name: Optional[str] = None
    variants: List[VariantOption] = field(default_factory=list)
    selected_variant_id: Optional[int] = None
    selected_variant_name: Optional[str] = None
    pending_matches: List[PendingMatch] = field(default_factory=list)
    created_at: int = 0
    last_activity: int = 0

    @property
    def has_package(self) -> bool:
        return self.package_id is not None

    @property
    def has_variant(self) -> bool:
        return self.selected_variant_id is not None

    def clear_selection(self) -> None:
        """Forget the selected package, its variants, and any pending shortlist."""
        self.package_id = None
        self.package_name = None
        self.variants = []
        self.selected_variant_id = None
        self.selected_variant_name = None
        self.pending_matches = []

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def default_memory(now: int, flow: Flow = DEFAULT_FLOW) -> Memory:
    """Purpose: Build a fresh Memory for first contact or after a reset.
    Inputs/Outputs: Inputs are the current epoch-ms time and flow; returns Memory.
    Side Effects / State: None.
    Dependencies: None.
    Failure Modes: None; deterministic structure.
    If Removed: Engine cannot initialise new or expired sessions.
    Testing Notes: Validate step is "start" and clipboard is a fresh dict.
    """
    # Timestamps start equal so the first request is never stale.
    return Memory(flow=flow.value, step=START_STEP, created_at=now, last_activity=now)


def _dict_items(value: object) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def memory_from_dict(data: object, now: int) -> Memory:
    """Purpose: Rebuild Memory from a stored blob, tolerating partial or corrupt data.
    Inputs/Outputs: Input is the stored value and current time; output is Memory.
    Side Effects / State: None.
    Dependencies: Uses default_memory for missing blobs.
    Failure Modes: Malformed fields are replaced with defaults; flow strings are kept
        verbatim so the engine can detect corrupt flows.
    If Removed: Resumed sessions lose their position in the flow.
    Testing Notes: Feed blobs with missing keys and wrong types.
    """
    # Start from defaults and copy over each field that has the right shape.
    if not isinstance(data, dict):
        return default_memory(now)
    memory = default_memory(now)
    if data.get("flow"):
        memory.flow = str(data["flow"])
    if isinstance(data.get("step"), str) and data["step"]:
        memory.step = data["step"]
    clipboard = data.get("clipboard")
    if isinstance(clipboard, dict):
        memory.clipboard = {str(key): str(value) for key, value in clipboard.items() if value is not None}
    if isinstance(data.get("question_index"), int):
        memory.question_index = data["question_index"]
    if isinstance(data.get("package_id"), int):
        memory.package_id = data["package_id"]
    if isinstance(data.get("package_name"), str):
        memory.package_name = data["package_name"]
    memory.variants = [
        VariantOption(id=item["id"], title=str(item.get("title", "")), price=str(item.get("price", "")))
        for item in _dict_items(data.get("variants"))
        if isinstance(item.get("id"), int)
    ]
    if isinstance(data.get("selected_variant_id"), int):
        memory.selected_variant_id = data["selected_variant_id"]
    if isinstance(data.get("selected_variant_name"), str):
        memory.selected_variant_name = data["selected_variant_name"]
    memory.pending_matches = [
        PendingMatch(
            id=item["id"],
            catalog_id=item["catalog_id"],
            name=str(item.get("name", "")),
            reason=str(item.get("reason", "")),
        )
        for item in _dict_items(data.get("pending_matches"))
        if isinstance(item.get("id"), int) and isinstance(item.get("catalog_id"), int)
    ][:MAX_PENDING_MATCHES]
    for stamp in ("created_at", "last_activity"):
        if isinstance(data.get(stamp), (int, float)):
            setattr(memory, stamp, int(data[stamp]))
    return memory
