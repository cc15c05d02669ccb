"""Heuristic request classification.

``classify`` is a pure function of the request text and context: no I/O and
no failure modes. Every downstream component (router, orchestrator,
deliberation) reads the resulting ``Classification``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import re
import time


class Intent(str, Enum):
    QUESTION = "question"
    HOW_TO = "how_to"
    COMPARISON = "comparison"
    ANALYSIS = "analysis"
    PROBLEM_SOLVING = "problem_solving"
    PLANNING = "planning"
    CREATIVE = "creative"
    GENERAL = "general"


# Checked in order; first match wins.
INTENT_PATTERNS: tuple[tuple[Intent, re.Pattern[str]], ...] = (
    (Intent.QUESTION, re.compile(r"what is|what are|define|explain|tell me about", re.I)),
    (Intent.HOW_TO, re.compile(r"how to|how do|how can|steps to", re.I)),
    (Intent.COMPARISON, re.compile(r"compare|versus|vs|difference between", re.I)),
    (Intent.ANALYSIS, re.compile(r"analyze|examine|evaluate|assess", re.I)),
    (Intent.PROBLEM_SOLVING, re.compile(r"solve|fix|resolve|troubleshoot", re.I)),
    (Intent.PLANNING, re.compile(r"plan|strategy|approach|method", re.I)),
    (Intent.CREATIVE, re.compile(r"create|generate|design|build", re.I)),
)

QUESTION_WORDS = ("what", "how", "why", "when", "where", "who")
COMPLEX_TERMS = ("analyze", "compare", "evaluate", "synthesize", "integrate")
URGENCY_PATTERN = re.compile(r"urgent|asap|immediately|quickly|fast", re.I)
STOP_WORDS = frozenset(
    """this that with have will from they know want been good much some time very when
    come here just like long make many over such take than them well were""".split()
)

QUESTION_TYPES = (
    ("factual", re.compile(r"^what", re.I)),
    ("procedural", re.compile(r"^how", re.I)),
    ("causal", re.compile(r"^why", re.I)),
    ("temporal", re.compile(r"^when", re.I)),
    ("spatial", re.compile(r"^where", re.I)),
    ("personal", re.compile(r"^who", re.I)),
)

HOUR = 3600.0
DAY = 86400.0


@dataclass(frozen=True)
class ContextClues:
    has_history: bool = False
    has_documents: bool = False
    has_deadline: bool = False
    requires_accuracy: bool = False
    requires_speed: bool = False
    multi_step: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "has_history": self.has_history,
            "has_documents": self.has_documents,
            "has_deadline": self.has_deadline,
            "requires_accuracy": self.requires_accuracy,
            "requires_speed": self.requires_speed,
            "multi_step": self.multi_step,
        }


@dataclass(frozen=True)
class Classification:
    text: str
    complexity: float
    intent: Intent
    keywords: frozenset[str]
    urgency: float
    context_clues: ContextClues = field(default_factory=ContextClues)
    question_type: str = "statement"
    length: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "length": self.length,
            "complexity": self.complexity,
            "intent": self.intent.value,
            "keywords": sorted(self.keywords),
            "urgency": self.urgency,
            "question_type": self.question_type,
            "context_clues": self.context_clues.to_dict(),
        }


def assess_complexity(text: str) -> float:
    score = 0.0
    if len(text) > 500:
        score += 0.3
    elif len(text) > 200:
        score += 0.2
    elif len(text) > 100:
        score += 0.1

    lowered = text.lower()
    score += 0.1 * sum(1 for word in QUESTION_WORDS if word in lowered)
    score += 0.2 * sum(1 for term in COMPLEX_TERMS if term in lowered)

    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    if len(sentences) > 3:
        score += 0.2
    elif len(sentences) > 1:
        score += 0.1
    return min(round(score, 6), 1.0)


def detect_intent(text: str) -> Intent:
    for intent, pattern in INTENT_PATTERNS:
        if pattern.search(text):
            return intent
    return Intent.GENERAL


def extract_keywords(text: str) -> frozenset[str]:
    cleaned = re.sub(r"[^a-z0-9\s]", "", text.lower())
    return frozenset(w for w in cleaned.split() if len(w) > 3 and w not in STOP_WORDS)


def classify_question(text: str) -> str:
    for name, pattern in QUESTION_TYPES:
        if pattern.search(text):
            return name
    if text.endswith("?"):
        return "interrogative"
    return "statement"


def analyze_context(context: Mapping[str, Any]) -> ContextClues:
    return ContextClues(
        has_history=bool(context.get("conversation_history")),
        has_documents=bool(context.get("documents")),
        has_deadline=context.get("deadline") is not None,
        requires_accuracy=context.get("accuracy") == "high",
        requires_speed=context.get("priority") == "urgent",
        multi_step=context.get("multi_step") is True,
    )


def _deadline_epoch(value: Any) -> Optional[float]:
    """Accepts a datetime, an ISO-8601 string or epoch seconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return moment.timestamp()
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return _deadline_epoch(parsed)
    return None


def assess_urgency(text: str, context: Mapping[str, Any], now: Optional[float] = None) -> float:
    urgency = 0.0
    if URGENCY_PATTERN.search(text):
        urgency += 0.5
    if context.get("priority") == "urgent":
        urgency += 0.3
    deadline = _deadline_epoch(context.get("deadline"))
    if deadline is not None:
        remaining = deadline - (time.time() if now is None else now)
        if remaining < HOUR:
            urgency += 0.4
        elif remaining < DAY:
            urgency += 0.2
    return min(round(urgency, 6), 1.0)


def classify(text: Any, context: Optional[Mapping[str, Any]] = None, now: Optional[float] = None) -> Classification:
    """Build the feature summary for one request. Absent or odd input defaults safely."""
    text = text if isinstance(text, str) else ("" if text is None else str(text))
    context = context if isinstance(context, Mapping) else {}
    return Classification(
        text=text,
        complexity=assess_complexity(text),
        intent=detect_intent(text),
        keywords=extract_keywords(text),
        urgency=assess_urgency(text, context, now),
        context_clues=analyze_context(context),
        question_type=classify_question(text),
        length=len(text),
    )
