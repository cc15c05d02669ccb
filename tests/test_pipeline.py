import tempfile
import unittest
from pathlib import Path

from concord.config import Config
from concord.deliberation import DeliberationEngine, LLMParticipant
from concord.errors import NotInitializedError
from concord.pipeline import ConcordPipeline, synthesis_inputs
from concord.router import Target
from concord.scheduler import ManualScheduler
from concord.subsystems import OllamaReasoner, RagClient


class PipelineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.pipeline = ConcordPipeline.offline(scheduler=self.scheduler)

    async def test_requires_initialize(self):
        with self.assertRaises(NotInitializedError):
            self.pipeline.route("What is council deliberation")
        with self.assertRaises(NotInitializedError):
            await self.pipeline.execute_task("x")
        with self.assertRaises(NotInitializedError):
            self.pipeline.synthesize(["x"])

    async def test_lifecycle_registers_housekeeping(self):
        async with self.pipeline as pipeline:
            self.assertTrue(pipeline.initialized)
            self.assertEqual(len(self.scheduler.jobs), 3)
        self.assertFalse(self.pipeline.initialized)
        self.assertEqual(self.scheduler.jobs, [])

    async def test_knowledge_question_end_to_end(self):
        async with self.pipeline as pipeline:
            result = await pipeline.run("What is council deliberation")
        self.assertEqual(result.routing.target, Target.KNOWLEDGE)
        self.assertEqual(result.execution.metadata["targets"], ["knowledge"])
        self.assertEqual(result.response.sources, frozenset({"knowledge"}))
        self.assertIn("council deliberation runs phases", result.response.content)
        router_stats = self.pipeline.router.get_stats()
        self.assertEqual(router_stats["total_requests"], 1)
        self.assertEqual(router_stats["cache_hits"], 0)
        self.assertEqual(result.to_dict()["routing"]["target"], "knowledge")

    async def test_hybrid_request(self):
        async with self.pipeline as pipeline:
            result = await pipeline.run("Research and analyze the council deliberation")
        self.assertEqual(result.routing.target, Target.HYBRID)
        self.assertEqual(result.execution.result["type"], "hybrid")
        self.assertEqual(result.execution.result["sources"], ["concord-deliberation", "concord-overview"])
        self.assertAlmostEqual(result.response.confidence, 0.375)
        self.assertIn("(with 2 sources)", result.response.content)

    async def test_council_deliberation(self):
        async with self.pipeline as pipeline:
            result = await pipeline.run(
                "Plan the database migration", {"strategy": "single", "target": "deliberation"}
            )
            stats = pipeline.get_stats()
        self.assertEqual(result.response.sources, frozenset({"deliberation"}))
        self.assertTrue(result.execution.result["council_recommendation"])
        self.assertEqual(stats["deliberation"]["total_discussions"], 1)
        self.assertEqual(stats["authority"]["total_decisions"], 1)

    async def test_parallel_run_with_synthesis_options(self):
        async with self.pipeline as pipeline:
            result = await pipeline.run(
                "Check status",
                {"strategy": "parallel", "synthesis": {"strategy": "simple_merge", "template": "concise"}},
            )
        self.assertEqual(result.response.metadata["source_count"], 3)
        self.assertEqual(result.response.strategy_used, "simple_merge")
        self.assertTrue(result.response.content.startswith("**Response (concise format):**"))

    async def test_workflow_and_history(self):
        async with self.pipeline as pipeline:
            result = await pipeline.execute_workflow("research", "Investigate council deliberation")
            history = pipeline.get_history(5)
        self.assertEqual(result.metadata["steps_executed"], 3)
        self.assertEqual(len(history["tasks"]), 1)
        self.assertIn("events", history)
        self.assertTrue(any(e["name"] == "workflow_completed" for e in history["events"]))

    async def test_audit_log_records_events(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "audit.jsonl"
            pipeline = ConcordPipeline.offline(Config({"audit": {"path": str(path)}}), scheduler=ManualScheduler())
            async with pipeline:
                await pipeline.run("What is council deliberation")
            pipeline.events.publish("after_shutdown")
            names = [r["event"] for r in pipeline.audit.read()]
        self.assertIn("task_completed", names)
        self.assertIn("synthesis_completed", names)
        self.assertNotIn("after_shutdown", names)


class PipelineConstructionTests(unittest.TestCase):
    def test_from_config_wires_http_subsystems(self):
        config = Config({"subsystems": {"rag": {"base_url": "http://rag:1/", "max_results": 3}}})
        pipeline = ConcordPipeline.from_config(config)
        knowledge = pipeline.subsystems.get("knowledge")
        self.assertIsInstance(knowledge, RagClient)
        self.assertEqual(knowledge.base_url, "http://rag:1")
        self.assertEqual(knowledge.max_results, 3)
        self.assertIsInstance(pipeline.subsystems.get("reasoning"), OllamaReasoner)
        council = pipeline.subsystems.get("deliberation")
        self.assertIsInstance(council, DeliberationEngine)
        self.assertTrue(all(isinstance(p, LLMParticipant) for p in council.participants.values()))
        self.assertEqual(sorted(council.participants), ["content", "knowledge", "reasoning", "tool"])

    def test_synthesis_inputs(self):
        parallel = {"type": "parallel", "results": [{"system": "a", "result": "x"}], "successful": 1}
        self.assertEqual(synthesis_inputs(parallel, "a"), parallel["results"])
        consensus = {"type": "consensus", "answer": "yes", "confidence": 0.7, "system": "r2"}
        self.assertEqual(synthesis_inputs(consensus, "r0")[0]["source"], "r2")
        self.assertEqual(synthesis_inputs({"response": "hi"}, "reasoning"), [{"system": "reasoning", "result": {"response": "hi"}}])
        self.assertEqual(synthesis_inputs("plain", "reasoning"), ["plain"])


if __name__ == "__main__":
    unittest.main()
