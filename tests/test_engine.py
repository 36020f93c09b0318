"""End-to-end tests for the session engine with fake oracle and storefront."""
import json
import unittest
from unittest.mock import patch

from packageha_agent.decisions import DISCOVERY_FALLBACK_REPLY
from packageha_agent.engine import ERROR_REPLY, RESET_REPLY, UNKNOWN_FLOW_REPLY, is_reset_request, memory_key
from packageha_agent.errors import UpstreamCatalogOrOrderError
from packageha_agent.memory import Flow
from packageha_agent.models import ChatRequest
from packageha_agent.quote import ORDER_CREATED_REPLY

from fakes import FakeClock, FakeOracle, FakeStorefront, build_engine

SESSION = "10.0.0.1"
PRODUCT_ANSWERS = ["Scented candles", "10x10x12 cm", "300g", "Very fragile", "1-5 SAR/unit"]


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self.oracle = FakeOracle()
        self.storefront = FakeStorefront()
        self.clock = FakeClock()
        self.engine, self.store = build_engine(self.oracle, self.storefront, self.clock)

    def send(self, body=None, raw=None):
        payload = raw if raw is not None else json.dumps(body or {})
        status, response = self.engine.handle(SESSION, payload)
        return status, response.to_json_dict()

    def say(self, message, **extra):
        status, data = self.send(dict(message=message, **extra))
        self.assertEqual(status, 200)
        return data

    def stored(self):
        return self.store.get(memory_key(SESSION))


class TestResetAndLifecycle(EngineTestCase):
    def test_reset_keywords(self):
        for message in ("reset", "Please START OVER", "إعادة", "جديد"):
            self.assertTrue(is_reset_request(ChatRequest(message=message)), message)
        self.assertTrue(is_reset_request(ChatRequest(reset=True)))
        self.assertFalse(is_reset_request(ChatRequest(message="a new box")))
        self.assertFalse(is_reset_request(ChatRequest(message="preset sizes")))

    def test_first_contact_asks_first_product_question(self):
        data = self.say("hi")
        self.assertEqual(data["reply"], "First, tell me about your product. What is it? What does it do?")
        self.assertEqual(
            data["flowState"],
            {"step": "product_details", "hasPackage": False, "hasVariant": False, "questionIndex": 0},
        )
        self.assertEqual(data["currentQuestion"]["id"], "product_description")
        self.assertIs(data["currentQuestion"]["multiple"], True)
        self.assertIsNone(data["currentQuestion"]["defaultValue"])

    def test_reset_mid_flow_clears_memory(self):
        self.say("hi")
        self.say("Scented candles")
        data = self.say("reset")
        self.assertEqual(data["reply"], RESET_REPLY)
        self.assertEqual(data["flowState"]["step"], "start")
        self.assertIsNone(self.stored())
        data = self.say("hello again")
        self.assertEqual(data["flowState"]["questionIndex"], 0)
        self.assertEqual(self.stored()["clipboard"], {})

    def test_reset_flag_with_flow(self):
        status, data = self.send({"reset": True, "flow": "launch_kit"})
        self.assertEqual(status, 200)
        self.assertEqual(data["reply"], RESET_REPLY)
        self.assertEqual(data["flowState"]["step"], "start")

    def test_reset_without_flow_restarts_stored_flow(self):
        self.say("hi", flow="launch_kit")
        with self.assertLogs("packageha.engine", level="INFO") as logs:
            data = self.say("start over")
        self.assertEqual(data["reply"], RESET_REPLY)
        self.assertEqual(data["flowState"]["step"], "start")
        self.assertTrue(any("memory reset" in line and "flow=launch_kit" in line for line in logs.output))

    def test_reset_drops_catalog_cache(self):
        self.say("hi")
        self.store.put(f"{SESSION}:products_cache", [])
        self.store.put(f"{SESSION}:products_cache_timestamp", self.clock.now)
        self.store.put("10.0.0.2:memory", {"flow": "direct_sales"})
        self.say("reset")
        self.assertIsNone(self.store.get(f"{SESSION}:products_cache"))
        self.assertIsNone(self.store.get(f"{SESSION}:products_cache_timestamp"))
        self.assertEqual(self.store.get("10.0.0.2:memory"), {"flow": "direct_sales"})

    def test_stale_session_drops_catalog_cache(self):
        self.say("hi")
        self.store.put(f"{SESSION}:products_cache", [])
        self.clock.advance(3_600_001)
        self.say("hello")
        self.assertIsNone(self.store.get(f"{SESSION}:products_cache"))
        self.assertEqual(self.stored()["step"], "product_details")

    def test_session_locks_are_released_after_each_request(self):
        for index in range(3):
            self.engine.handle(f"10.0.1.{index}", json.dumps({"message": "hi"}))
        self.assertEqual(len(self.engine._locks), 0)

    def test_stale_session_is_new_session(self):
        self.say("hi")
        self.say("Scented candles")
        self.say("10x10x12 cm")
        self.clock.advance(3_600_001)
        data = self.say("300g")
        self.assertEqual(data["reply"], "First, tell me about your product. What is it? What does it do?")
        self.assertEqual(data["flowState"]["questionIndex"], 0)
        self.assertEqual(self.stored()["clipboard"], {})

    def test_session_within_an_hour_resumes(self):
        self.say("hi")
        self.clock.advance(3_600_000)
        data = self.say("Scented candles")
        self.assertEqual(data["flowState"]["questionIndex"], 1)
        self.assertEqual(data["currentQuestion"]["defaultValue"], "")

    def test_malformed_body_is_empty_message(self):
        status, data = self.send(raw="{not json")
        self.assertEqual(status, 200)
        self.assertEqual(data["flowState"]["step"], "product_details")

    def test_unknown_flow(self):
        data = self.say("hi", flow="teleport")
        self.assertEqual(data["reply"], UNKNOWN_FLOW_REPLY)
        self.assertEqual(self.stored()["flow"], "direct_sales")
        self.assertEqual(self.stored()["step"], "start")

    def test_corrupt_stored_flow(self):
        self.store.put(memory_key(SESSION), {"flow": "ghost", "step": "start", "last_activity": self.clock.now})
        self.assertEqual(self.say("hi")["reply"], UNKNOWN_FLOW_REPLY)

    def test_flow_switch_drops_answers(self):
        self.say("hi")
        self.say("Scented candles")
        data = self.say("anything", flow="launch_kit")
        self.assertTrue(data["reply"].startswith("Welcome to the Launch Kit!"))
        self.assertEqual(data["flowState"]["step"], "consultation")
        self.assertEqual(data["currentQuestion"]["id"], "service_selection")
        self.assertEqual(self.stored()["clipboard"], {})
        self.assertEqual(self.stored()["flow"], "launch_kit")

    def test_invalid_state_is_repaired_before_dispatch(self):
        self.store.put(
            memory_key(SESSION),
            {
                "flow": "direct_sales",
                "step": "fulfillment_specs",
                "clipboard": {"product_description": "Candles"},
                "question_index": 1,
                "last_activity": self.clock.now,
            },
        )
        data = self.say("")
        self.assertEqual(data["reply"], "What type of packaging are you looking for?")
        self.assertEqual(data["flowState"]["step"], "select_package")

    def test_unhandled_error_returns_500(self):
        with patch.object(self.engine._handlers[Flow.DIRECT_SALES], "handle", side_effect=RuntimeError("bug")):
            status, data = self.send({"message": "hi"})
        self.assertEqual(status, 500)
        self.assertEqual(data["reply"], ERROR_REPLY)
        self.assertIn("flowState", data)
        self.assertIsNone(self.stored())


class TestDirectSalesFlow(EngineTestCase):
    def _through_product_details(self):
        self.say("hi")
        for answer in PRODUCT_ANSWERS:
            data = self.say(answer)
        return data

    def test_rejected_dimensions_keep_question(self):
        self.say("hi")
        self.say("Scented candles")
        data = self.say("medium size")
        self.assertEqual(data["reply"], "Please include dimensions with numbers (e.g., 20x15x10 cm).")
        self.assertEqual(data["currentQuestion"]["id"], "product_dimensions")
        self.assertEqual(data["flowState"]["questionIndex"], 1)

    def test_full_consultation_to_draft_order(self):
        data = self._through_product_details()
        self.assertEqual(data["flowState"]["step"], "select_package")
        self.assertNotIn("currentQuestion", data)

        self.oracle.queue({"type": "found", "id": 1, "reason": "gift"})
        data = self.say("a gift box")
        self.assertEqual(data["flowState"]["step"], "select_package_variant")
        self.assertEqual(
            data["variants"],
            [{"id": 2001, "title": "Small", "price": "3.00"}, {"id": 2002, "title": "Large", "price": "5.00"}],
        )

        self.oracle.queue({"match": True, "id": 1})
        data = self.say("large please")
        self.assertEqual(data["reply"], "Selected **Large**.\n\nDo you have a preference for Material?")
        self.assertNotIn("variants", data)
        self.assertEqual(data["flowState"]["variantName"], "Large")
        self.assertIs(data["currentQuestion"]["multiple"], False)
        self.assertEqual(data["currentQuestion"]["options"][0], "Corrugated")

        self.say("Kraft")
        data = self.say("20x15x10 cm")
        self.assertEqual(data["currentQuestion"]["multiple"], "grouped")
        self.assertEqual(len(data["currentQuestion"]["options"]), 2)
        data = self.say("Full color printing, Gold foil")
        self.assertEqual(data["currentQuestion"]["id"], "quantity")

        data = self.say("1,000")
        self.assertEqual(data["currentQuestion"]["id"], "timeline")
        self.say("2-4 weeks")
        self.say("Riyadh")
        data = self.say("none")
        self.assertEqual(data["flowState"]["step"], "launch_kit")

        self.say("Hero shot photography, Package design consultation")
        self.say("ASAP")
        data = self.say("none")

        self.assertEqual(data["reply"], ORDER_CREATED_REPLY)
        self.assertEqual(
            data["draftOrder"],
            {
                "id": 555,
                "adminUrl": "https://shop.example.com/admin/draft_orders/555",
                "invoiceUrl": "https://shop.example.com/invoices/555",
            },
        )
        self.assertEqual(data["flowState"]["step"], "start")
        self.assertIsNone(self.stored())

        order = self.storefront.orders[0]
        self.assertEqual(order["variant_id"], 2002)
        self.assertEqual(order["quantity"], 1000)
        self.assertEqual([item.title for item in order["custom_line_items"]], [
            "Hero shot photography",
            "Package design consultation",
        ])
        self.assertIn("- DIMENSIONS: 20x15x10 cm", order["note"])

    def test_single_variant_package_skips_variant_step(self):
        self._through_product_details()
        self.oracle.queue({"type": "found", "id": 0})
        data = self.say("mailer")
        self.assertEqual(data["flowState"]["variantName"], "Default")
        self.assertEqual(data["flowState"]["step"], "select_package_specs")
        self.assertNotIn("variants", data)

    def test_shortlist_round_trip(self):
        self._through_product_details()
        self.oracle.queue({"type": "multiple", "matches": [{"id": 0}, {"id": 1}, {"id": 2}]})
        data = self.say("box")
        self.assertEqual([match["catalogId"] for match in data["productMatches"]], [101, 102, 103])
        self.assertEqual(data["flowState"]["step"], "select_package_discovery")

        data = self.say("7")
        self.assertTrue(data["reply"].startswith("Please select a number between 1 and 3:"))
        self.assertEqual(len(data["productMatches"]), 3)
        self.assertEqual(self.stored()["step"], "select_package_discovery")
        self.assertEqual(len(self.stored()["pending_matches"]), 3)

        data = self.say("3")
        self.assertEqual(data["flowState"]["packageName"], "Kraft Bag")
        self.assertEqual(self.stored()["pending_matches"], [])
        self.assertEqual(len(self.oracle.calls), 1)

    def test_order_failure_keeps_session(self):
        self._through_product_details()
        self.oracle.queue({"type": "found", "id": 0})
        self.say("mailer")
        specs = ["Kraft", "20x15x10 cm", "Logo only"]
        fulfillment = ["500", "Flexible", "Jeddah", "none"]
        for answer in specs + fulfillment + ["Hero shot photography", "ASAP"]:
            self.say(answer)
        self.storefront.order_error = UpstreamCatalogOrOrderError("down", status_code=500)
        data = self.say("none")
        self.assertIn("error while creating your quote", data["reply"])
        self.assertEqual(self.stored()["step"], "draft_order")


class TestOtherFlows(EngineTestCase):
    def test_package_order_flow(self):
        data = self.say("", flow="package_order")
        self.assertEqual(data["reply"], "What type of packaging are you looking for?")
        self.oracle.queue({"type": "found", "id": 2})
        data = self.say("kraft bag", flow="package_order")
        self.assertEqual(data["flowState"]["step"], "ask_variant")
        self.oracle.queue({"match": True, "id": 0})
        data = self.say("brown", flow="package_order")
        self.assertEqual(data["reply"], "Selected **Brown**.\n\nWhat quantity would you like to order?")
        self.assertIsNone(data["currentQuestion"]["defaultValue"])
        self.say("250", flow="package_order")
        data = self.say("none", flow="package_order")
        self.assertEqual(data["reply"], ORDER_CREATED_REPLY)
        order = self.storefront.orders[0]
        self.assertEqual((order["variant_id"], order["quantity"]), (3001, 250))

    def test_malformed_shortlist_decision_is_not_a_server_error(self):
        self.say("", flow="package_order")
        self.oracle.queue({"type": "multiple", "matches": 3})
        status, data = self.send({"message": "boxes", "flow": "package_order"})
        self.assertEqual(status, 200)
        self.assertEqual(data["reply"], DISCOVERY_FALLBACK_REPLY)
        self.assertNotIn("productMatches", data)

    def test_launch_kit_flow(self):
        data = self.say("hi", flow="launch_kit")
        self.assertEqual(data["currentQuestion"]["id"], "service_selection")
        data = self.say("None - skip launch services", flow="launch_kit")
        self.assertIn("at least one launch service", data["reply"])
        for answer in ("Hero shot photography", "A new perfume", "ASAP", "5000 SAR"):
            self.say(answer, flow="launch_kit")
        data = self.say("none", flow="launch_kit")
        self.assertEqual(data["reply"], ORDER_CREATED_REPLY)
        order = self.storefront.orders[0]
        self.assertIsNone(order["variant_id"])
        self.assertEqual(order["custom_line_items"][0].price, "500.00")

    def test_packaging_assistant_recommends_from_answers(self):
        self.say("hi", flow="packaging_assistant")
        answers = ["Handmade soap", "8x5x3 cm", "120g", "Not fragile", "Logo in gold", "1-5 SAR/unit"]
        for answer in answers:
            self.say(answer, flow="packaging_assistant")
        self.oracle.queue({"type": "multiple", "matches": [{"id": 0, "reason": "fits"}, {"id": 2, "reason": "eco"}]})
        data = self.say("300", flow="packaging_assistant")
        self.assertEqual(data["flowState"]["step"], "show_recommendations")
        self.assertEqual(len(data["productMatches"]), 2)
        prompt, _ = self.oracle.calls[0]
        self.assertIn('User Input: "Handmade soap"', prompt)
        self.assertIn("Quantity: 300", prompt)

        data = self.say("1", flow="packaging_assistant")
        self.assertEqual(data["reply"].splitlines()[0], "Found **Mailer Box**.")
        self.assertEqual(data["draftOrder"]["id"], 555)
        self.assertEqual(self.storefront.orders[0]["quantity"], 300)


if __name__ == "__main__":
    unittest.main()
