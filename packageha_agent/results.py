from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from .commerce import DraftOrder
from .memory import PendingMatch


@dataclass
class FlowResult:
    """What a flow handler hands back to the session engine for one turn."""
    reply: str
    memory_reset: bool = False
    draft_order: Optional[DraftOrder] = None
    product_matches: Optional[List[PendingMatch]] = None

    def prefixed(self, prefix: str) -> "FlowResult":
        """Same result with ``prefix`` placed before the reply."""
        return FlowResult(
            reply=f"{prefix}{self.reply}",
            memory_reset=self.memory_reset,
            draft_order=self.draft_order,
            product_matches=self.product_matches,
        )
