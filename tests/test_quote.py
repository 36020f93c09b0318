"""Tests for the project brief, service pricing and order creation step."""
import unittest

from packageha_agent.commerce import CustomLineItem
from packageha_agent.errors import UpstreamCatalogOrOrderError
from packageha_agent.flow_table import FLOW_TABLE
from packageha_agent.memory import Flow, Memory
from packageha_agent.quote import (
    ORDER_CREATED_REPLY,
    ORDER_FAILED_REPLY,
    QuoteDesk,
    build_brief_note,
    build_service_line_items,
)

from fakes import FakeStorefront

STAMP = "2026-01-01T00:00:00+00:00"


class TestBriefNote(unittest.TestCase):
    def test_direct_sales_brief(self):
        memory = Memory(
            package_name="Gift Box",
            selected_variant_name="Large",
            clipboard={
                "product_description": "Candles",
                "material": "Kraft",
                "quantity": "500",
                "service_selection": "Hero shot photography",
            },
        )
        note = build_brief_note(memory, FLOW_TABLE[Flow.DIRECT_SALES], STAMP)
        lines = note.splitlines()
        self.assertEqual(lines[0], "--- PROJECT BRIEF ---")
        self.assertEqual(lines[1], "Package: Gift Box (Large)")
        self.assertIn("[PACKAGE SPECS]", lines)
        self.assertIn("- MATERIAL: Kraft", lines)
        self.assertIn("- QUANTITY: 500", lines)
        self.assertIn("- SERVICE_SELECTION: Hero shot photography", lines)
        self.assertEqual(note.count("PRODUCT_DESCRIPTION"), 1)
        self.assertIn("Generated by Studium AI Agent (Packageha Sales Associate)", lines)
        self.assertEqual(lines[-1], f"Timestamp: {STAMP}")

    def test_single_phase_brief_has_no_heading(self):
        memory = Memory(flow="launch_kit", clipboard={"service_selection": "Brand styling consultation"})
        note = build_brief_note(memory, FLOW_TABLE[Flow.LAUNCH_KIT], STAMP)
        self.assertIn("Package: Not selected", note)
        self.assertNotIn("[", note)
        self.assertIn("- SERVICE_SELECTION: Brand styling consultation", note)


class TestServiceLineItems(unittest.TestCase):
    def test_prices_known_and_unknown_services(self):
        items = build_service_line_items(
            "Hero shot photography, Stop-motion unboxing video, Drone footage, None - skip launch services"
        )
        self.assertEqual(
            items,
            [
                CustomLineItem("Hero shot photography", "500.00"),
                CustomLineItem("Stop-motion unboxing video", "800.00"),
                CustomLineItem("Drone footage", "500.00"),
            ],
        )

    def test_empty_selection(self):
        self.assertEqual(build_service_line_items(None), [])
        self.assertEqual(build_service_line_items("None - skip launch services"), [])


class TestQuoteDesk(unittest.TestCase):
    def setUp(self):
        self.storefront = FakeStorefront()
        self.desk = QuoteDesk(self.storefront, clock=lambda: STAMP)

    def test_package_order(self):
        memory = Memory(
            flow="package_order",
            step="draft_order",
            package_id=102,
            package_name="Gift Box",
            selected_variant_id=2002,
            selected_variant_name="Large",
            clipboard={"quantity": "1,000 boxes", "notes": "none"},
        )
        result = self.desk.create(memory, FLOW_TABLE[Flow.PACKAGE_ORDER])
        self.assertEqual(result.reply, ORDER_CREATED_REPLY)
        self.assertTrue(result.memory_reset)
        self.assertEqual(result.draft_order.order_id, 555)
        order = self.storefront.orders[0]
        self.assertEqual((order["variant_id"], order["quantity"]), (2002, 1000))
        self.assertIsNone(order["custom_line_items"])

    def test_launch_kit_uses_custom_items_only(self):
        memory = Memory(flow="launch_kit", clipboard={"service_selection": "Package design consultation"})
        result = self.desk.create(memory, FLOW_TABLE[Flow.LAUNCH_KIT])
        self.assertTrue(result.memory_reset)
        order = self.storefront.orders[0]
        self.assertIsNone(order["variant_id"])
        self.assertEqual(order["quantity"], 1)
        self.assertEqual(order["custom_line_items"], [CustomLineItem("Package design consultation", "300.00")])

    def test_order_failure_keeps_memory(self):
        self.storefront.order_error = UpstreamCatalogOrOrderError("boom", status_code=422)
        result = self.desk.create(Memory(selected_variant_id=1), FLOW_TABLE[Flow.DIRECT_SALES])
        self.assertEqual(result.reply, ORDER_FAILED_REPLY)
        self.assertFalse(result.memory_reset)
        self.assertIsNone(result.draft_order)


if __name__ == "__main__":
    unittest.main()
