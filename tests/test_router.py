import unittest
from unittest import mock

from concord.config import RouterSettings
from concord.events import EventBus
from concord.router import Router, RoutingRule, Target, cache_key
from concord.scheduler import ManualScheduler


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RouterTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.events = EventBus()
        self.router = Router(RouterSettings(), self.events, clock=self.clock)

    def test_knowledge_question_is_boosted(self):
        decision = self.router.route("What is machine learning?")
        self.assertEqual(decision.target, Target.KNOWLEDGE)
        self.assertEqual(decision.rule_matched, "knowledge_query")
        self.assertEqual(decision.confidence, 1.0)
        self.assertFalse(decision.fallback)

    def test_no_match_falls_back(self):
        decision = self.router.route("hello there")
        self.assertEqual(decision.target, Target.REASONING)
        self.assertEqual(decision.confidence, 0.3)
        self.assertTrue(decision.fallback)
        self.assertIsNone(decision.rule_matched)

    def test_below_threshold_keeps_candidate_confidence(self):
        decision = self.router.route("Organize the files")
        self.assertEqual(decision.target, Target.REASONING)
        self.assertAlmostEqual(decision.confidence, 0.6)
        self.assertEqual(decision.rule_matched, "multi_step_task")
        self.assertTrue(decision.fallback)
        self.assertEqual(self.router.get_stats()["fallbacks"], 1)

    def test_hybrid_beats_boosted_reasoning(self):
        decision = self.router.route("Research and analyze the market")
        self.assertEqual(decision.target, Target.HYBRID)
        self.assertAlmostEqual(decision.confidence, 0.9)

    def test_cache_hit_returns_identical_decision(self):
        first = self.router.route("What is machine learning?", {"priority": "normal"})
        second = self.router.route("What is machine learning?", {"priority": "normal"})
        self.assertIs(first, second)
        stats = self.router.get_stats()
        self.assertEqual(stats["cache_hits"], 1)
        self.assertEqual(stats["cache_misses"], 1)
        self.assertEqual(len(self.events.recent(name="route_cache_hit")), 1)

    def test_cache_key_includes_routing_context(self):
        self.assertNotEqual(cache_key("x", {"deadline": 1}), cache_key("x", {"deadline": 2}))
        self.assertNotEqual(cache_key("x", {"accuracy": "high"}), cache_key("x", {}))
        self.assertEqual(cache_key("x", {"unrelated": 1}), cache_key("x", {}))

    def test_cache_entry_expires_after_ttl(self):
        first = self.router.route("What is machine learning?")
        self.clock.now = 301.0
        second = self.router.route("What is machine learning?")
        self.assertIsNot(first, second)
        self.assertEqual(first, second)
        self.assertEqual(self.router.get_stats()["cache_misses"], 2)

    def test_sweep_cache_removes_expired(self):
        self.router.route("What is machine learning?")
        self.router.route("hello there")
        self.clock.now = 299.0
        self.assertEqual(self.router.sweep_cache(), 0)
        self.clock.now = 400.0
        self.assertEqual(self.router.sweep_cache(), 2)
        self.assertEqual(self.router.get_stats()["cache_size"], 0)
        self.assertEqual(self.events.recent(name="route_cache_swept")[-1].data["removed"], 2)

    def test_routing_error_returns_low_confidence_fallback(self):
        with mock.patch("concord.router.classify", side_effect=RuntimeError("boom")):
            decision = self.router.route("What is machine learning?")
        self.assertEqual(decision.confidence, 0.1)
        self.assertTrue(decision.fallback)
        self.assertEqual(self.router.get_stats()["failed_routes"], 1)
        errors = self.events.recent(name="error")
        self.assertEqual(errors[-1].data["component"], "router")

    def test_custom_rules(self):
        router = Router(rules=[RoutingRule.build("deploys", [r"deploy"], "deliberation", 0.95)])
        decision = router.route("deploy the service")
        self.assertEqual(decision.target, Target.DELIBERATION)
        self.assertEqual(decision.rule_matched, "deploys")
        with self.assertRaises(ValueError):
            router.add_rule(RoutingRule.build("deploys", [r"x"], "knowledge", 0.5))
        self.assertTrue(router.remove_rule("deploys"))
        self.assertFalse(router.remove_rule("deploys"))

    def test_rule_validation(self):
        with self.assertRaises(ValueError):
            RoutingRule.build("bad", [r"x"], "knowledge", 1.5)
        with self.assertRaises(ValueError):
            RoutingRule.build("bad", [], "knowledge", 0.5)

    def test_history_and_usage(self):
        self.router.route("What is machine learning?")
        self.router.route("hello there")
        history = self.router.get_history(1)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["decision"]["target"], "reasoning")
        usage = self.router.get_stats()["system_usage"]
        self.assertEqual(usage["knowledge"], 1)
        self.assertEqual(usage["reasoning"], 1)
        self.assertEqual(self.router.get_history(0), [])
        self.assertIn("knowledge", self.router.capabilities())


class RouterSchedulingTests(unittest.IsolatedAsyncioTestCase):
    async def test_attached_sweep_runs_on_scheduler(self):
        scheduler = ManualScheduler()
        router = Router(RouterSettings(cache_ttl_seconds=300), clock=scheduler.now)
        router.attach(scheduler)
        router.attach(scheduler)
        self.assertEqual(len(scheduler.jobs), 1)
        router.route("What is machine learning?")
        fired = await scheduler.advance(450)
        self.assertEqual(fired, 3)
        self.assertEqual(router.get_stats()["cache_size"], 0)
        router.detach(scheduler)
        self.assertEqual(scheduler.jobs, [])


if __name__ == "__main__":
    unittest.main()
