import unittest
from datetime import datetime, timedelta, timezone

from concord.classifier import (
    Intent,
    assess_complexity,
    assess_urgency,
    classify,
    classify_question,
    detect_intent,
    extract_keywords,
)


class ClassifierTests(unittest.TestCase):
    def test_intent_first_match_wins(self):
        self.assertEqual(detect_intent("What is a vector database?"), Intent.QUESTION)
        self.assertEqual(detect_intent("How do I rotate keys"), Intent.HOW_TO)
        self.assertEqual(detect_intent("Analyze the incident report"), Intent.ANALYSIS)
        self.assertEqual(detect_intent("Troubleshoot the failing deploy"), Intent.PROBLEM_SOLVING)
        self.assertEqual(detect_intent("hello there"), Intent.GENERAL)
        # "explain" is a question pattern and is checked before analysis.
        self.assertEqual(detect_intent("Explain and analyze the logs"), Intent.QUESTION)

    def test_complexity_components(self):
        self.assertEqual(assess_complexity("hi"), 0.0)
        # one question word plus one complex term
        self.assertAlmostEqual(assess_complexity("what should we analyze"), 0.3)
        long_text = "What and how should we analyze and compare these? " * 12
        self.assertEqual(assess_complexity(long_text), 1.0)

    def test_keywords_drop_short_and_stop_words(self):
        keywords = extract_keywords("This is the Kubernetes scheduler, with many pods!")
        self.assertEqual(keywords, frozenset({"kubernetes", "scheduler", "pods"}))

    def test_question_type(self):
        self.assertEqual(classify_question("Why is the sky blue"), "causal")
        self.assertEqual(classify_question("Is it done?"), "interrogative")
        self.assertEqual(classify_question("Ship it."), "statement")

    def test_urgency_from_text_priority_and_deadline(self):
        now = 1_000_000.0
        self.assertEqual(assess_urgency("fix this asap", {}, now), 0.5)
        self.assertEqual(assess_urgency("fix this", {"priority": "urgent"}, now), 0.3)
        self.assertEqual(assess_urgency("fix this", {"deadline": now + 600}, now), 0.4)
        self.assertEqual(assess_urgency("fix this", {"deadline": now + 7200}, now), 0.2)
        self.assertEqual(assess_urgency("fix this", {"deadline": now + 172800}, now), 0.0)
        self.assertEqual(
            assess_urgency("urgent", {"priority": "urgent", "deadline": now + 10}, now),
            1.0,
        )

    def test_deadline_accepts_datetime_and_iso(self):
        moment = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        now = moment.timestamp() - 1800
        self.assertEqual(assess_urgency("x", {"deadline": moment}, now), 0.4)
        iso = (moment + timedelta(hours=5)).isoformat()
        self.assertEqual(assess_urgency("x", {"deadline": iso}, now), 0.2)
        self.assertEqual(assess_urgency("x", {"deadline": "not a date"}, now), 0.0)

    def test_context_clues(self):
        result = classify(
            "Plan the migration",
            {
                "conversation_history": ["hi"],
                "documents": [],
                "accuracy": "high",
                "priority": "urgent",
                "multi_step": True,
            },
        )
        clues = result.context_clues
        self.assertTrue(clues.has_history)
        self.assertFalse(clues.has_documents)
        self.assertTrue(clues.requires_accuracy)
        self.assertTrue(clues.requires_speed)
        self.assertTrue(clues.multi_step)
        self.assertFalse(clues.has_deadline)

    def test_classify_never_raises(self):
        for value in (None, 42, "", "   "):
            result = classify(value, context="not a mapping")
            self.assertEqual(result.intent, Intent.GENERAL)
            self.assertGreaterEqual(result.complexity, 0.0)
        self.assertEqual(classify(None).text, "")
        self.assertEqual(classify(42).length, 2)

    def test_to_dict_is_serializable(self):
        data = classify("What is RAG?").to_dict()
        self.assertEqual(data["intent"], "question")
        self.assertEqual(data["question_type"], "factual")
        self.assertIsInstance(data["keywords"], list)


if __name__ == "__main__":
    unittest.main()
