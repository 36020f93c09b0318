"""Tests for the engine's stage runner."""
import unittest

from packageha_agent.turn_runner import TurnRunner, TurnStep


def _finished(ctx):
    return ctx["finished"]


class TestTurnRunner(unittest.TestCase):
    def test_finishing_stage_stops_regular_stages_but_not_finalizers(self):
        calls = []
        context = {"finished": False}

        def finish(ctx):
            calls.append("finish")
            ctx["finished"] = True

        runner = TurnRunner(
            is_finished=_finished,
            steps=[
                TurnStep("first", lambda ctx: calls.append("first")),
                TurnStep("finish", finish),
                TurnStep("skipped", lambda ctx: calls.append("skipped")),
                TurnStep("persist", lambda ctx: calls.append("persist"), finalizer=True),
                TurnStep("also_skipped", lambda ctx: calls.append("also_skipped")),
                TurnStep("envelope", lambda ctx: calls.append("envelope"), finalizer=True),
            ],
        )
        ran = runner.run(context)
        self.assertEqual(calls, ["first", "finish", "persist", "envelope"])
        self.assertEqual(ran, calls)

    def test_unfinished_turn_runs_every_stage(self):
        runner = TurnRunner(
            is_finished=_finished,
            steps=[TurnStep("a", lambda ctx: None), TurnStep("b", lambda ctx: None, finalizer=True)],
        )
        self.assertEqual(runner.run({"finished": False}), ["a", "b"])

    def test_already_finished_context_runs_only_finalizers(self):
        runner = TurnRunner(
            is_finished=_finished,
            steps=[TurnStep("a", lambda ctx: None), TurnStep("b", lambda ctx: None, finalizer=True)],
        )
        self.assertEqual(runner.run({"finished": True}), ["b"])

    def test_exceptions_propagate_and_skip_finalizers(self):
        calls = []

        def boom(ctx):
            raise ValueError("stage failed")

        runner = TurnRunner(
            is_finished=_finished,
            steps=[TurnStep("boom", boom), TurnStep("persist", lambda ctx: calls.append("persist"), finalizer=True)],
        )
        with self.assertRaises(ValueError):
            runner.run({"finished": False})
        self.assertEqual(calls, [])


if __name__ == "__main__":
    unittest.main()
