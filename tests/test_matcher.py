"""Tests for discovery and variant matching."""
import unittest
from unittest.mock import MagicMock

from packageha_agent.commerce import CatalogItem, CatalogVariant
from packageha_agent.decisions import DISCOVERY_FALLBACK_REPLY, DecisionGate
from packageha_agent.errors import UpstreamCatalogOrOrderError
from packageha_agent.flow_table import FLOW_TABLE
from packageha_agent.matcher import (
    CATALOG_ERROR_REPLY,
    CHAT_FALLBACK_REPLY,
    GREETING_REPLY,
    LOST_VARIANTS_REPLY,
    NO_MATCH_REPLY,
    RESTART_REPLY,
    SEARCH_PROMPT,
    UNSURE_REPLY,
    VARIANT_REPROMPT,
    DiscoveryMatcher,
    VariantMatcher,
    format_inventory,
    is_greeting,
)
from packageha_agent.memory import Flow, Memory, PendingMatch, VariantOption
from packageha_agent.results import FlowResult

from fakes import PROMPTS_DIR, FakeOracle, FakeStorefront, sample_catalog

DIRECT = FLOW_TABLE[Flow.DIRECT_SALES]


class TestHelpers(unittest.TestCase):
    def test_greetings(self):
        for text in ("hi", "Hello!", " hey ", "مرحبا", "أهلا"):
            self.assertTrue(is_greeting(text), text)
        self.assertFalse(is_greeting("hi, I need boxes"))

    def test_inventory_strips_prefixes(self):
        self.assertEqual(
            format_inventory(sample_catalog()),
            "ID 0: Mailer Box\nID 1: Gift Box\nID 2: Kraft Bag",
        )


class TestDiscoveryMatcher(unittest.TestCase):
    def setUp(self):
        self.oracle = FakeOracle()
        self.storefront = FakeStorefront()
        self.matcher = DiscoveryMatcher(DecisionGate(self.oracle), self.storefront, PROMPTS_DIR)
        self.enter = MagicMock(return_value=FlowResult(reply="Do you have a preference for Material?"))
        self.memory = Memory(step="select_package", clipboard={"product_description": "Scented candles"})

    def _handle(self, text):
        return self.matcher.handle(text, self.memory, "s1", DIRECT, self.enter)

    def test_greeting_skips_oracle(self):
        self.assertEqual(self._handle("hello").reply, GREETING_REPLY)
        self.assertEqual(self.oracle.calls, [])

    def test_blank_prompts_for_search(self):
        self.assertEqual(self._handle(" ").reply, SEARCH_PROMPT)

    def test_prompt_carries_inventory_and_context(self):
        self.oracle.queue({"type": "none", "reason": "nothing"})
        self.assertEqual(self._handle("tube").reply, NO_MATCH_REPLY)
        prompt, system_prompt = self.oracle.calls[0]
        self.assertIn("ID 1: Gift Box", prompt)
        self.assertIn('User Input: "tube"', prompt)
        self.assertIn("Product: Scented candles", prompt)
        self.assertIn("You are Packageha Sales Associate.", system_prompt)

    def test_found_multi_variant_moves_to_variant_step(self):
        self.oracle.queue({"type": "found", "id": 1, "reason": "gift"})
        result = self._handle("gift box")
        self.assertEqual(
            result.reply,
            "Found **Gift Box**.\n\nWhich type are you interested in?\n\nOptions: Small, Large",
        )
        self.assertEqual(self.memory.step, "select_package_variant")
        self.assertEqual(self.memory.package_id, 102)
        self.assertIsNone(self.memory.selected_variant_id)

    def test_single_variant_is_auto_selected(self):
        self.oracle.queue({"type": "found", "id": 0})
        result = self._handle("mailer")
        self.assertEqual(self.memory.selected_variant_id, 1001)
        self.assertEqual(self.memory.selected_variant_name, "Default")
        self.assertEqual(self.memory.step, "select_package_specs")
        self.enter.assert_called_once_with(self.memory, "select_package_specs")
        self.assertEqual(result.reply, "Found **Mailer Box**.\n\nDo you have a preference for Material?")

    def test_found_out_of_range(self):
        self.oracle.queue({"type": "found", "id": 9})
        self.assertEqual(self._handle("box").reply, UNSURE_REPLY)
        self.assertFalse(self.memory.has_package)

    def test_chat_reply_and_fallback(self):
        self.oracle.queue({"type": "chat", "reply": "We sell boxes and bags."}, {"type": "chat", "reply": ""})
        self.assertEqual(self._handle("what do you sell").reply, "We sell boxes and bags.")
        self.assertEqual(self._handle("anything else").reply, CHAT_FALLBACK_REPLY)
        self.assertEqual(self.memory.step, "select_package")

    def test_catalog_error_leaves_state(self):
        self.storefront.catalog_error = UpstreamCatalogOrOrderError("down", status_code=503)
        self.assertEqual(self._handle("box").reply, CATALOG_ERROR_REPLY)
        self.assertEqual(self.oracle.calls, [])
        self.assertEqual(self.memory.step, "select_package")

    def test_multiple_creates_numbered_shortlist(self):
        self.oracle.queue(
            {
                "type": "multiple",
                "matches": [
                    {"id": 0, "name": "x", "reason": "cheap"},
                    {"id": 1, "name": "y", "reason": ""},
                    {"id": 2, "name": "z", "reason": "eco"},
                    {"id": 42, "name": "ghost", "reason": "?"},
                ],
            }
        )
        result = self._handle("box")
        self.assertEqual(self.memory.step, "select_package_discovery")
        self.assertEqual([match.catalog_id for match in self.memory.pending_matches], [101, 102, 103])
        self.assertEqual(
            result.reply,
            "I found 3 matching packages:\n\n"
            "1. **Mailer Box** - cheap\n2. **Gift Box** - Matches your search\n3. **Kraft Bag** - eco\n\n"
            "Please select a package by number (1-3) or describe what you need more specifically.",
        )
        self.assertEqual(len(result.product_matches), 3)

    def test_shortlist_is_capped_at_five(self):
        catalog = [
            CatalogItem(
                id=900 + index,
                title=f"Box {index}",
                variants=[CatalogVariant(id=9000 + index, title="Default Title", price="1.00")],
            )
            for index in range(7)
        ]
        self.matcher = DiscoveryMatcher(DecisionGate(self.oracle), FakeStorefront(catalog), PROMPTS_DIR)
        self.oracle.queue({"type": "multiple", "matches": [{"id": index, "reason": "fits"} for index in range(7)]})
        result = self._handle("boxes")
        self.assertEqual([match.catalog_id for match in self.memory.pending_matches], [900, 901, 902, 903, 904])
        self.assertEqual(len(result.product_matches), 5)
        self.assertTrue(result.reply.startswith("I found 5 matching packages:"))
        self.assertIn("(1-5)", result.reply)

    def test_malformed_multiple_payload_keeps_state(self):
        self.oracle.queue({"type": "multiple", "matches": 3})
        result = self._handle("boxes")
        self.assertEqual(result.reply, DISCOVERY_FALLBACK_REPLY)
        self.assertEqual(self.memory.step, "select_package")
        self.assertEqual(self.memory.pending_matches, [])

    def _pending(self):
        self.memory.step = "select_package_discovery"
        self.memory.pending_matches = [
            PendingMatch(id=0, catalog_id=101, name="Mailer Box", reason="cheap"),
            PendingMatch(id=1, catalog_id=102, name="Gift Box", reason="nice"),
            PendingMatch(id=2, catalog_id=103, name="Kraft Bag", reason="eco"),
        ]
        return list(self.memory.pending_matches)

    def test_out_of_range_number_re_presents_same_list(self):
        before = self._pending()
        result = self._handle("7")
        self.assertTrue(result.reply.startswith("Please select a number between 1 and 3:\n\n1. **Mailer Box** - cheap"))
        self.assertEqual(self.memory.pending_matches, before)
        self.assertEqual(self.memory.step, "select_package_discovery")
        self.assertEqual(self.oracle.calls, [])

    def test_non_numeric_reply_re_presents_list(self):
        before = self._pending()
        self._handle("the nice one")
        self.assertEqual(self.memory.pending_matches, before)
        self.assertEqual(self.oracle.calls, [])

    def test_numeric_choice_selects_by_catalog_id(self):
        self._pending()
        result = self._handle("2")
        self.assertEqual(self.memory.package_id, 102)
        self.assertEqual(self.memory.pending_matches, [])
        self.assertEqual(self.memory.step, "select_package_variant")
        self.assertTrue(result.reply.startswith("Found **Gift Box**."))

    def test_restart_signal_clears_shortlist(self):
        self._pending()
        self.assertEqual(self._handle("let me search again").reply, SEARCH_PROMPT)
        self.assertEqual(self.memory.pending_matches, [])
        self.assertEqual(self.memory.step, "select_package")


class TestVariantMatcher(unittest.TestCase):
    def setUp(self):
        self.oracle = FakeOracle()
        self.matcher = VariantMatcher(DecisionGate(self.oracle), PROMPTS_DIR)
        self.enter = MagicMock(return_value=FlowResult(reply="Do you have a preference for Material?"))
        self.memory = Memory(
            step="select_package_variant",
            clipboard={"product_description": "candles"},
            package_id=102,
            package_name="Gift Box",
            variants=[VariantOption(2001, "Small", "3.00"), VariantOption(2002, "Large", "5.00")],
        )

    def _handle(self, text):
        return self.matcher.handle(text, self.memory, DIRECT, self.enter)

    def test_match_selects_and_advances(self):
        self.oracle.queue({"match": True, "id": 1})
        result = self._handle("the big one")
        self.assertEqual(self.memory.selected_variant_id, 2002)
        self.assertEqual(self.memory.step, "select_package_specs")
        self.assertEqual(result.reply, "Selected **Large**.\n\nDo you have a preference for Material?")
        prompt, _ = self.oracle.calls[0]
        self.assertIn("ID 0: Small\nID 1: Large", prompt)

    def test_no_match_uses_oracle_reply_or_default(self):
        self.oracle.queue({"match": False, "reply": "Small or Large?"}, {"match": True, "id": 5})
        self.assertEqual(self._handle("medium").reply, "Small or Large?")
        self.assertEqual(self._handle("the fifth").reply, VARIANT_REPROMPT)
        self.assertEqual(self.memory.step, "select_package_variant")
        self.assertIsNone(self.memory.selected_variant_id)

    def test_restart_signal_returns_to_discovery(self):
        self.assertEqual(self._handle("show me something different").reply, RESTART_REPLY)
        self.assertEqual(self.memory.step, "select_package")
        self.assertFalse(self.memory.has_package)
        self.assertEqual(self.oracle.calls, [])

    def test_lost_variants(self):
        self.memory.variants = []
        self.assertEqual(self._handle("large").reply, LOST_VARIANTS_REPLY)
        self.assertEqual(self.memory.step, "select_package")


if __name__ == "__main__":
    unittest.main()
