import unittest
from unittest import mock

from concord.deliberation import (
    CouncilWorkflow,
    DeliberationEngine,
    LLMParticipant,
    Message,
    MessageType,
    StaticParticipant,
    WORKFLOWS,
    analyze_task,
)
from concord.deliberation.council import consensus_score
from concord.deliberation.participants import parse_insights, parse_vote
from concord.events import EventBus
from concord.subsystems.ollama import OllamaResult

REQUEST = {"intent": "request", "text": "Fix the deploy pipeline"}


def council(*participants, **kwargs):
    return DeliberationEngine(list(participants), **kwargs)


class DeliberationEngineTests(unittest.IsolatedAsyncioTestCase):
    async def test_agreeing_council_reaches_consensus(self):
        events = EventBus()
        engine = council(
            StaticParticipant("knowledge", vote="strongly_agree"),
            StaticParticipant("reasoning", vote="strongly_agree"),
            events=events,
        )
        output = await engine.process(REQUEST, {"processing_id": "d-1"})

        self.assertEqual(output["workflow"]["name"], "problem_solving")
        self.assertEqual(output["metadata"]["participants"], ["knowledge", "reasoning", "decision_maker"])
        self.assertEqual(output["metadata"]["accepted"], ["knowledge", "reasoning", "decision_maker"])
        self.assertEqual(output["metadata"]["missing_required"], [])
        self.assertEqual(len(output["collaboration"]["phases"]), 4)
        self.assertTrue(all(p["success"] for p in output["collaboration"]["phases"]))

        consensus = output["consensus"]
        self.assertTrue(consensus["achieved"])
        # the coordinator's off-scale vote counts as neutral
        self.assertAlmostEqual(consensus["score"], (1.0 + 1.0 + 0.5) / 3)
        self.assertEqual([r["agent"] for r in consensus["agreed_recommendations"]], ["knowledge", "reasoning"])

        self.assertEqual(output["response"], "Balanced approach incorporating all perspectives")
        self.assertEqual(output["decision"]["framework_used"], "Rational Decision Making")
        self.assertEqual(output["decision"]["decision_id"], "d-1")
        self.assertEqual(output["agent_contributions"]["knowledge"]["total_contributions"], 4)

        stats = engine.get_stats()
        self.assertEqual(stats["total_discussions"], 1)
        self.assertEqual(stats["consensus_reached"], 1)
        self.assertEqual(stats["active_discussions"], 0)
        self.assertEqual(engine.get_history()[0]["discussion_id"], "d-1")
        self.assertEqual(len(engine.channels.channel("knowledge_sharing").recent()), 4)
        self.assertEqual(events.recent(name="discussion_complete")[-1].data["discussion_id"], "d-1")
        self.assertEqual(len(events.recent(name="decision_made")), 1)

    async def test_dissent_is_recorded_and_resolved(self):
        engine = council(
            StaticParticipant("knowledge", vote="strongly_disagree"),
            StaticParticipant("reasoning", vote="strongly_disagree"),
        )
        output = await engine.process(REQUEST)
        consensus = output["consensus"]
        self.assertFalse(consensus["achieved"])
        self.assertAlmostEqual(consensus["score"], 0.5 / 3)
        self.assertEqual(len(consensus["dissenting_opinions"]), 2)
        self.assertEqual(output["decision"]["conflict_resolution"], "compromise")
        self.assertEqual(engine.authority.get_stats()["conflicts_resolved"], 1)
        self.assertEqual(engine.authority.get_history(1)[0]["conflicts_detected"], 3)

    async def test_slow_participant_costs_only_its_contribution(self):
        workflows = {
            "problem_solving": CouncilWorkflow(
                "problem_solving", ("analysis",), ("knowledge", "reasoning"), (), 0.05, False
            )
        }
        engine = council(
            StaticParticipant("knowledge"),
            StaticParticipant("reasoning", delay=1.0),
            workflows=workflows,
        )
        output = await engine.process("status update please")
        self.assertEqual(output["metadata"]["accepted"], ["knowledge", "decision_maker"])
        phase = output["collaboration"]["phases"][0]
        self.assertEqual(phase["timed_out"], ["reasoning"])
        self.assertEqual(sorted(phase["contributions"]), ["decision_maker", "knowledge"])
        self.assertTrue(phase["success"])
        self.assertFalse(output["consensus"]["required"])
        self.assertEqual(output["consensus"]["score"], 1.0)

    async def test_failing_participant_is_isolated(self):
        engine = council(
            StaticParticipant("knowledge"),
            StaticParticipant("reasoning", fail_on=("phase_execution", "consensus_request")),
        )
        with self.assertLogs("concord.deliberation.council", level="WARNING"):
            output = await engine.process(REQUEST)
        phases = output["collaboration"]["phases"]
        self.assertTrue(all("reasoning" not in p["contributions"] for p in phases))
        self.assertNotIn("reasoning", output["consensus"]["voting_results"])
        self.assertIn("knowledge", output["consensus"]["voting_results"])

    async def test_missing_required_participant_is_reported(self):
        engine = council(StaticParticipant("knowledge"))
        output = await engine.process(REQUEST)
        self.assertEqual(output["metadata"]["missing_required"], ["reasoning"])
        self.assertEqual(output["metadata"]["participants"], ["knowledge", "decision_maker"])

    async def test_optional_participant_joins_when_expertise_matches(self):
        engine = council(StaticParticipant("knowledge"), StaticParticipant("reasoning"), StaticParticipant("tool"))
        output = await engine.process(REQUEST)
        self.assertIn("tool", output["metadata"]["participants"])

    async def test_authority_failure_yields_fallback_decision(self):
        engine = council(StaticParticipant("knowledge"), StaticParticipant("reasoning"))
        with mock.patch.object(engine.authority, "make_decision", side_effect=RuntimeError("boom")):
            with self.assertLogs("concord.deliberation.council", level="ERROR"):
                output = await engine.process(REQUEST)
        self.assertEqual(output["response"], "Unable to reach definitive decision")
        self.assertTrue(output["decision"]["fallback"])
        self.assertEqual(output["decision_quality"], 0.2)
        self.assertEqual(output["confidence"], 0.3)

    async def test_llm_participant_parses_model_output(self):
        client = mock.Mock()
        client.generate = mock.AsyncMock(
            return_value=OllamaResult(text="- Check logs\n- Roll back\nConfidence: 70", duration_ms=5.0, ok=True)
        )
        participant = LLMParticipant("reasoning", client, "qwen")
        phase = await participant.respond(Message(MessageType.PHASE, "d", {"phase": "analysis", "input": "x"}), 1.0)
        self.assertEqual(phase.contribution["insights"], ["Check logs", "Roll back"])
        self.assertAlmostEqual(phase.confidence, 0.7)

        client.generate.return_value = OllamaResult(
            text="Vote: disagree\nRecommendation: wait for the fix", duration_ms=5.0, ok=True
        )
        vote = await participant.respond(Message(MessageType.CONSENSUS, "d", {"voting_options": ["a"]}), 1.0)
        self.assertEqual(vote.vote, "disagree")
        self.assertEqual(vote.recommendation["suggestion"], "wait for the fix")

        client.generate.return_value = OllamaResult(text="", duration_ms=5.0, ok=False, error="connection refused")
        failed = await participant.respond(Message(MessageType.PHASE, "d", {"phase": "analysis"}), 1.0)
        self.assertFalse(failed.success)
        self.assertEqual(failed.error, "connection refused")


class AnalysisTests(unittest.TestCase):
    def test_upstream_signals(self):
        analysis = analyze_task(
            {
                "intent": {"primary": {"intent": "creation"}},
                "reasoning": {"conclusions": list(range(20))},
                "emotion": {"detection": {"overall_intensity": 0.9}},
            }
        )
        self.assertEqual(analysis.task_type, "content_creation")
        self.assertEqual(analysis.complexity_level, "high")
        self.assertEqual(analysis.estimated_duration, 60.0)
        self.assertEqual(analysis.priority_level, "high")

    def test_plain_payload_defaults(self):
        analysis = analyze_task({"text": ""})
        self.assertEqual(analysis.task_type, "general")
        self.assertEqual(analysis.complexity_level, "low")
        self.assertEqual(analyze_task(REQUEST, {"task_type": "tool_execution"}).task_type, "tool_execution")

    def test_phase_timeout_adapts_to_complexity(self):
        workflow = WORKFLOWS["problem_solving"]
        self.assertEqual(workflow.adapted_timeout("medium", 45.0), 15.0)
        self.assertEqual(workflow.adapted_timeout("high", 45.0), 22.5)
        self.assertEqual(workflow.adapted_timeout("high", 20.0), 20.0)

    def test_consensus_score(self):
        self.assertEqual(consensus_score({}), 0.0)
        self.assertAlmostEqual(consensus_score({"a": "agree", "b": "neutral", "c": "shrug"}), 0.6)


class ParsingTests(unittest.TestCase):
    def test_parse_vote(self):
        self.assertEqual(parse_vote("Vote: strongly_agree"), "strongly_agree")
        self.assertEqual(parse_vote("Vote: Strongly Disagree\nRecommendation: stop"), "strongly_disagree")
        self.assertEqual(parse_vote("Vote: disagree"), "disagree")
        self.assertEqual(parse_vote("yes"), "agree")
        self.assertEqual(parse_vote("not sure"), "neutral")

    def test_parse_insights(self):
        text = "Intro line\n- first\n* second\n1. third\n- First\n- fourth\n- fifth"
        self.assertEqual(parse_insights(text), ["first", "second", "third", "fourth"])


if __name__ == "__main__":
    unittest.main()
