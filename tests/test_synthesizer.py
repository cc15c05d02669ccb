import unittest

from concord.config import SynthesisSettings
from concord.events import EventBus
from concord.synthesizer import (
    PLACEHOLDER,
    ResponseSynthesizer,
    SourceResult,
    accuracy,
    citations,
    coherence,
    common_themes,
    completeness,
    find_agreements,
    normalize,
    truncate,
)

REASONED = {"system": "reasoning", "result": {"response": "Reasoned answer.", "confidence": 0.9}}
DOC = {"content": "Doc passage", "confidence": 0.8, "source": "knowledge"}

AGREEING = [
    {"content": "The cache should be invalidated on every write. Latency matters.", "confidence": 0.8, "source": "reasoning"},
    {"content": "The cache should be invalidated on each write operation.", "confidence": 0.6, "source": "knowledge"},
]


class NormalizeTests(unittest.TestCase):
    def test_plain_string(self):
        self.assertEqual(normalize("hello"), SourceResult("hello", 0.5))

    def test_wrapped_subsystem_result(self):
        item = normalize(REASONED)
        self.assertEqual(item.content, "Reasoned answer.")
        self.assertEqual(item.source, "reasoning")
        self.assertEqual(item.confidence, 0.9)

    def test_failures_and_empties_are_dropped(self):
        self.assertIsNone(normalize({"error": "down", "system": "knowledge"}))
        self.assertIsNone(normalize({"system": "knowledge", "result": {"error": "down", "system": "knowledge"}}))
        self.assertIsNone(normalize(""))
        self.assertIsNone(normalize("   "))
        self.assertIsNone(normalize(None))

    def test_confidence_coercion(self):
        self.assertEqual(normalize({"content": "x", "score": 0.4}).confidence, 0.4)
        self.assertEqual(normalize({"content": "x", "confidence": "high"}).confidence, 0.5)
        self.assertEqual(normalize({"content": "x", "confidence": True}).confidence, 0.5)
        self.assertEqual(normalize({"content": "x", "confidence": 1.7}).confidence, 1.0)
        self.assertEqual(normalize(SourceResult("x", -0.2)).confidence, 0.0)

    def test_structured_result_without_text_is_serialized(self):
        item = normalize({"rows": [1, 2], "source": "sql"})
        self.assertEqual(item.source, "sql")
        self.assertIn('"rows": [1, 2]', item.content)


class HelperTests(unittest.TestCase):
    def test_truncate_prefers_sentence_boundary(self):
        content = "A" * 90 + ". " + "b" * 20
        self.assertEqual(truncate(content, 100), "A" * 90 + ".")

    def test_truncate_falls_back_to_word_boundary(self):
        content = "word " * 30
        cut = truncate(content, 50)
        self.assertTrue(cut.endswith("word..."))
        self.assertLessEqual(len(cut), 50)
        self.assertEqual(truncate("Short.", 100), "Short.")

    def test_agreements_and_themes(self):
        results = [normalize(r) for r in AGREEING]
        agreements = find_agreements(results)
        self.assertEqual(len(agreements), 1)
        self.assertEqual(agreements[0]["sources"], ["reasoning", "knowledge"])
        self.assertAlmostEqual(agreements[0]["confidence"], 0.7)
        keywords = [t["keyword"] for t in common_themes(results)]
        self.assertEqual(keywords, ["cache", "invalidated", "should", "write"])

    def test_citations_list_each_source_once(self):
        text = citations([
            {"source": "reasoning", "confidence": 0.9},
            {"source": "reasoning", "confidence": 0.4},
            {"source": "knowledge", "confidence": 0.65},
        ])
        self.assertEqual(
            text,
            "\n\n**Sources:**\n1. reasoning (confidence: 90.0%)\n2. knowledge (confidence: 65.0%)",
        )
        self.assertEqual(citations([]), "")

    def test_quality_heuristics(self):
        self.assertEqual(coherence(""), 0.0)
        self.assertEqual(coherence("A single sentence that is long enough."), 0.8)
        self.assertAlmostEqual(completeness("x" * 600, 3), 1.0)
        self.assertAlmostEqual(completeness("short", 1), 0.3)
        self.assertEqual(accuracy([]), 0.3)
        self.assertAlmostEqual(accuracy([SourceResult("a", 0.4), SourceResult("b", 0.8)]), 0.6)


class SynthesizerTests(unittest.TestCase):
    def setUp(self):
        self.events = EventBus()
        self.synthesizer = ResponseSynthesizer(events=self.events)

    def test_weighted_merge_excludes_light_sources(self):
        weak = {"content": "Weak hint", "confidence": 0.1, "source": "knowledge"}
        response = self.synthesizer.synthesize([REASONED, DOC, weak], {"strategy": "weighted_merge"})
        self.assertEqual(response.strategy_used, "weighted_merge")
        self.assertEqual(
            response.content, "**From reasoning:** Reasoned answer.\n\n**From knowledge:** Doc passage"
        )
        self.assertAlmostEqual(response.confidence, (0.9 * 0.72 + 0.8 * 0.56) / (0.72 + 0.56))
        self.assertEqual(response.sources, frozenset({"reasoning", "knowledge"}))
        self.assertEqual(response.metadata["total_sources"], 3)
        self.assertEqual(response.metadata["used_sources"], 2)
        self.assertEqual(response.metadata["source_count"], 3)
        self.assertNotIn("Weak hint", response.content)

    def test_weighted_merge_with_nothing_usable_gives_placeholder(self):
        weak = {"content": "Weak hint", "confidence": 0.1, "source": "knowledge"}
        with self.assertLogs("concord.synthesizer", level="WARNING"):
            response = self.synthesizer.synthesize([weak], {"strategy": "weighted_merge"})
        self.assertNotIn("Weak hint", response.content)
        self.assertEqual(response.content, PLACEHOLDER)
        self.assertEqual(response.confidence, 0.1)
        self.assertEqual(response.sources, frozenset())
        self.assertEqual(response.metadata["total_sources"], 1)
        self.assertEqual(response.metadata["used_sources"], 0)
        self.assertEqual(self.synthesizer.get_stats()["fallbacks"], 1)

    def test_consensus_does_not_revive_light_sources(self):
        results = [
            {"content": "Apples ripen slowly in autumn", "confidence": 0.1, "source": "knowledge"},
            {"content": "Orbital mechanics governs satellites", "confidence": 0.05, "source": "reasoning"},
        ]
        with self.assertLogs("concord.synthesizer", level="WARNING"):
            response = self.synthesizer.synthesize(results, {"strategy": "consensus"})
        self.assertEqual(response.content, PLACEHOLDER)
        self.assertEqual(response.metadata["total_sources"], 2)

    def test_failing_strategy_falls_back_to_simple_merge(self):
        def broken(results, options):
            raise RuntimeError("merge exploded")

        self.synthesizer.add_strategy("broken", broken)
        with self.assertLogs("concord.synthesizer", level="WARNING"):
            response = self.synthesizer.synthesize([DOC], {"strategy": "broken"})
        self.assertEqual(response.strategy_used, "simple_merge")
        self.assertEqual(response.content, "**knowledge:** Doc passage")
        self.assertEqual(response.metadata["fallback_from"], "broken")
        self.assertEqual(response.metadata["error"], "merge exploded")

    def test_consensus_reports_agreement(self):
        response = self.synthesizer.synthesize(AGREEING, {"strategy": "consensus"})
        self.assertEqual(response.strategy_used, "consensus")
        self.assertTrue(response.content.startswith("**Consensus Points:**"))
        self.assertIn("• The cache should be invalidated on every write (2 sources agree)", response.content)
        self.assertIn("• Common topic: cache", response.content)
        self.assertAlmostEqual(response.confidence, 0.7)

    def test_consensus_without_agreement_uses_weighted_merge(self):
        results = [
            {"content": "Completely unrelated statement about apples", "confidence": 0.7, "source": "reasoning"},
            {"content": "Another sentence discussing orbital mechanics", "confidence": 0.7, "source": "knowledge"},
        ]
        response = self.synthesizer.synthesize(results, {"strategy": "consensus"})
        self.assertEqual(response.strategy_used, "weighted_merge")
        self.assertEqual(response.metadata["fallback_from"], "consensus")
        self.assertEqual(response.metadata["requested_strategy"], "consensus")

    def test_hierarchical_orders_by_source_rank(self):
        results = [
            {"content": "From the docs", "confidence": 0.9, "source": "knowledge"},
            {"content": "Council view", "confidence": 0.6, "source": "deliberation"},
            {"content": "Analysis", "confidence": 0.7, "source": "reasoning"},
        ]
        response = self.synthesizer.synthesize(results, {"strategy": "hierarchical"})
        self.assertTrue(response.content.startswith("Council view\n\n**Additional Context (reasoning):**\nAnalysis"))
        self.assertEqual(response.confidence, 0.6)
        self.assertEqual(response.metadata["primary_source"], "deliberation")

        custom = self.synthesizer.synthesize(results, {"strategy": "hierarchical", "hierarchy": ["knowledge"]})
        self.assertEqual(custom.metadata["primary_source"], "knowledge")
        self.assertLess(custom.content.index("(reasoning)"), custom.content.index("(deliberation)"))

    def test_simple_merge_averages_confidence(self):
        response = self.synthesizer.synthesize([REASONED, DOC], {"strategy": "simple_merge"})
        self.assertEqual(response.content, "**reasoning:** Reasoned answer.\n\n**knowledge:** Doc passage")
        self.assertAlmostEqual(response.confidence, 0.85)

    def test_attribution_can_be_disabled(self):
        synthesizer = ResponseSynthesizer(SynthesisSettings(source_attribution=False))
        response = synthesizer.synthesize([REASONED, DOC], {"strategy": "simple_merge"})
        self.assertEqual(response.content, "Reasoned answer.\n\nDoc passage")

    def test_post_processing(self):
        long_text = {"content": "lorem ipsum " * 100, "confidence": 0.9, "source": "reasoning"}
        response = self.synthesizer.synthesize([long_text], {"strategy": "simple_merge", "max_length": 120})
        self.assertLessEqual(len(response.content), 120)

        response = self.synthesizer.synthesize(
            [REASONED], {"template": "concise", "include_citations": True}
        )
        self.assertTrue(response.content.startswith("**Response (concise format):**\n\n**From reasoning:**"))
        self.assertTrue(response.content.endswith("**Sources:**\n1. reasoning (confidence: 90.0%)"))

        plain = self.synthesizer.synthesize([REASONED], {"template": "haiku"})
        self.assertEqual(plain.content, "**From reasoning:** Reasoned answer.")

    def test_placeholder_when_nothing_is_valid(self):
        response = self.synthesizer.synthesize(
            [{"error": "down", "system": "knowledge"}, "", None], {"include_citations": True}
        )
        self.assertEqual(response.content, PLACEHOLDER)
        self.assertEqual(response.confidence, 0.1)
        self.assertEqual(response.sources, frozenset())
        self.assertTrue(response.metadata["placeholder"])
        self.assertEqual(response.metadata["source_count"], 0)

    def test_deterministic_output(self):
        first = self.synthesizer.synthesize(AGREEING, {"strategy": "consensus"})
        second = self.synthesizer.synthesize(AGREEING, {"strategy": "consensus"})
        self.assertEqual(first.content, second.content)
        self.assertEqual(first.confidence, second.confidence)
        self.assertEqual(first.sources, second.sources)
        self.assertEqual(first.quality, second.quality)

    def test_quality_scores(self):
        response = self.synthesizer.synthesize([REASONED, DOC])
        quality = response.quality
        self.assertEqual(set(quality), {"coherence", "completeness", "accuracy", "relevance", "overall"})
        expected = (quality["coherence"] + quality["completeness"] + quality["accuracy"] + quality["relevance"]) / 4
        self.assertAlmostEqual(response.quality_score, expected)
        self.assertAlmostEqual(quality["accuracy"], 0.85)

        unchecked = ResponseSynthesizer(SynthesisSettings(quality_check=False)).synthesize([REASONED])
        self.assertIsNone(unchecked.quality_score)
        self.assertEqual(unchecked.quality, {})

    def test_unknown_strategy_uses_weighted_merge(self):
        with self.assertLogs("concord.synthesizer", level="WARNING"):
            response = self.synthesizer.synthesize([REASONED], {"strategy": "magic"})
        self.assertEqual(response.strategy_used, "weighted_merge")
        self.assertEqual(response.metadata["requested_strategy"], "magic")

    def test_custom_strategy(self):
        def shout(results, options):
            return {"content": " ".join(r.content.upper() for r in results), "confidence": 0.42}

        self.synthesizer.add_strategy("shout", shout)
        with self.assertRaises(ValueError):
            self.synthesizer.add_strategy("shout", shout)
        response = self.synthesizer.synthesize(["quiet words"], {"strategy": "shout"})
        self.assertEqual(response.content, "QUIET WORDS")
        self.assertEqual(response.strategy_used, "shout")
        self.assertEqual(response.confidence, 0.42)
        self.assertEqual(self.synthesizer.get_stats()["strategy_usage"]["shout"], 1)

    def test_stats_history_and_events(self):
        self.synthesizer.synthesize([REASONED, DOC])
        self.synthesizer.synthesize([])
        stats = self.synthesizer.get_stats()
        self.assertEqual(stats["total_syntheses"], 2)
        self.assertEqual(stats["successful_syntheses"], 1)
        self.assertEqual(stats["fallbacks"], 1)
        self.assertEqual(stats["strategy_usage"]["weighted_merge"], 1)
        history = self.synthesizer.get_history(1)
        self.assertEqual(history[0]["strategy"], "none")
        self.assertTrue(history[0]["fallback"])
        self.assertEqual(len(self.events.recent(name="synthesis_completed")), 2)
        self.assertEqual(self.synthesizer.get_history(0), [])

    def test_to_dict_sorts_sources(self):
        data = self.synthesizer.synthesize([REASONED, DOC]).to_dict()
        self.assertEqual(data["sources"], ["knowledge", "reasoning"])
        self.assertEqual(data["strategy_used"], "weighted_merge")


if __name__ == "__main__":
    unittest.main()
