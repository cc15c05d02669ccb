"""Rule-based routing of requests to a target subsystem."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence
import hashlib
import json
import logging
import re
import time

from concord.classifier import Classification, Intent, classify
from concord.config import RouterSettings
from concord.events import EventBus
from concord.scheduler import ScheduledJob, Scheduler

logger = logging.getLogger(__name__)

# Context fields that can change a routing decision for the same text.
CACHE_CONTEXT_FIELDS = ("intent", "priority", "accuracy", "deadline")


class Target(str, Enum):
    KNOWLEDGE = "knowledge"
    REASONING = "reasoning"
    DELIBERATION = "deliberation"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class RoutingRule:
    rule_id: str
    patterns: tuple[re.Pattern[str], ...]
    target: Target
    confidence: float

    def __post_init__(self) -> None:
        if not self.rule_id:
            raise ValueError("rule_id is required")
        if not self.patterns:
            raise ValueError(f"rule {self.rule_id} has no patterns")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"rule {self.rule_id} confidence must be within [0, 1]")

    @classmethod
    def build(cls, rule_id: str, patterns: Iterable[str], target: Target | str, confidence: float) -> "RoutingRule":
        return cls(
            rule_id=rule_id,
            patterns=tuple(re.compile(p, re.I) for p in patterns),
            target=Target(target),
            confidence=float(confidence),
        )

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


@dataclass(frozen=True)
class RoutingDecision:
    target: Target
    confidence: float
    reasoning: str
    rule_matched: Optional[str] = None
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "rule_matched": self.rule_matched,
            "fallback": self.fallback,
        }


DEFAULT_RULES: tuple[RoutingRule, ...] = (
    RoutingRule.build(
        "knowledge_query",
        [r"what is|what are|define|explain|describe", r"how to|how do|tutorial|guide", r"find|search|lookup|retrieve"],
        Target.KNOWLEDGE,
        0.8,
    ),
    RoutingRule.build(
        "complex_reasoning",
        [r"analyze|compare|evaluate|assess", r"why|because|reason|logic", r"solve|problem|solution|approach"],
        Target.REASONING,
        0.7,
    ),
    RoutingRule.build(
        "multi_step_task",
        [r"plan|strategy|steps|process", r"coordinate|organize|manage", r"multiple|several|various|different"],
        Target.DELIBERATION,
        0.6,
    ),
    RoutingRule.build(
        "hybrid_task",
        [r"research and analyze", r"find and explain", r"comprehensive|detailed analysis"],
        Target.HYBRID,
        0.9,
    ),
)

CAPABILITIES: Dict[str, Dict[str, Any]] = {
    Target.KNOWLEDGE.value: {
        "strengths": ["knowledge_retrieval", "fact_finding", "document_search"],
        "weaknesses": ["complex_reasoning", "multi_step_planning"],
        "response_time": "fast",
        "accuracy": "high",
    },
    Target.REASONING.value: {
        "strengths": ["reasoning", "analysis", "decision_making", "context_understanding"],
        "weaknesses": ["knowledge_retrieval", "real_time_data"],
        "response_time": "medium",
        "accuracy": "very_high",
    },
    Target.DELIBERATION.value: {
        "strengths": ["complex_tasks", "multi_step_planning", "coordination"],
        "weaknesses": ["simple_queries", "speed"],
        "response_time": "slow",
        "accuracy": "high",
    },
}


def adjust_score(score: float, analysis: Classification, target: Target) -> float:
    """Apply the fixed (target, condition) multipliers to a rule's base confidence."""
    if target is Target.KNOWLEDGE and analysis.complexity > 0.7:
        score *= 0.7
    if target is Target.REASONING and analysis.complexity > 0.5:
        score *= 1.2
    if target is Target.DELIBERATION and analysis.complexity > 0.8:
        score *= 1.3

    if analysis.intent is Intent.QUESTION and target is Target.KNOWLEDGE:
        score *= 1.3
    if analysis.intent is Intent.ANALYSIS and target is Target.REASONING:
        score *= 1.2
    if analysis.intent is Intent.PLANNING and target is Target.DELIBERATION:
        score *= 1.2

    if analysis.urgency > 0.7:
        if target is Target.KNOWLEDGE:
            score *= 1.2
        if target is Target.DELIBERATION:
            score *= 0.8
    return score


def cache_key(text: str, context: Mapping[str, Any]) -> str:
    relevant = {name: context.get(name) for name in CACHE_CONTEXT_FIELDS}
    blob = text + json.dumps(relevant, sort_keys=True, default=str)
    return "route_" + hashlib.sha256(blob.encode("utf-8")).hexdigest()[:24]


class Router:
    """Matches classified requests against an ordered rule table.

    Decisions are memoized per ``cache_key`` for ``cache_ttl_seconds``.
    Expired entries are dropped lazily on lookup and by ``sweep_cache``,
    which ``attach`` registers on a scheduler.
    """

    def __init__(
        self,
        settings: Optional[RouterSettings] = None,
        events: Optional[EventBus] = None,
        rules: Optional[Sequence[RoutingRule]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or RouterSettings()
        self.events = events
        self._clock = clock
        self._rules: Dict[str, RoutingRule] = {}
        for rule in DEFAULT_RULES if rules is None else rules:
            self.add_rule(rule)
        self._cache: Dict[str, tuple[RoutingDecision, float]] = {}
        self._history: deque[Dict[str, Any]] = deque(maxlen=self.settings.history_size)
        self._sweep_job: Optional[ScheduledJob] = None
        self.stats: Dict[str, Any] = {
            "total_requests": 0,
            "successful_routes": 0,
            "failed_routes": 0,
            "average_routing_time_ms": 0.0,
            "cache_hits": 0,
            "cache_misses": 0,
            "fallbacks": 0,
            "system_usage": {t.value: 0 for t in Target},
        }

    @property
    def fallback_target(self) -> Target:
        return Target(self.settings.fallback_target)

    @property
    def rules(self) -> List[RoutingRule]:
        return list(self._rules.values())

    def add_rule(self, rule: RoutingRule) -> None:
        if rule.rule_id in self._rules:
            raise ValueError(f"Routing rule already exists: {rule.rule_id}")
        self._rules[rule.rule_id] = rule
        logger.debug("Added routing rule %s -> %s", rule.rule_id, rule.target.value)

    def remove_rule(self, rule_id: str) -> bool:
        removed = self._rules.pop(rule_id, None) is not None
        if removed:
            logger.debug("Removed routing rule %s", rule_id)
        return removed

    def attach(self, scheduler: Scheduler) -> None:
        if self._sweep_job is None:
            self._sweep_job = scheduler.every(self.settings.sweep_interval, self.sweep_cache, "router-cache-sweep")

    def detach(self, scheduler: Scheduler) -> None:
        if self._sweep_job is not None:
            scheduler.cancel(self._sweep_job)
            self._sweep_job = None

    def _publish(self, name: str, **data: Any) -> None:
        if self.events is not None:
            self.events.publish(name, **data)

    def _fallback(self, confidence: float, reasoning: str) -> RoutingDecision:
        return RoutingDecision(
            target=self.fallback_target,
            confidence=confidence,
            reasoning=reasoning,
            fallback=True,
        )

    def evaluate(self, analysis: Classification) -> RoutingDecision:
        """Score every rule against ``analysis`` without touching the cache."""
        candidates: List[RoutingDecision] = []
        for rule in self._rules.values():
            if not rule.matches(analysis.text):
                continue
            score = adjust_score(rule.confidence, analysis, rule.target)
            if score > 0:
                candidates.append(
                    RoutingDecision(
                        target=rule.target,
                        confidence=min(round(score, 6), 1.0),
                        reasoning=f"Matched rule: {rule.rule_id}",
                        rule_matched=rule.rule_id,
                    )
                )

        if not candidates:
            return self._fallback(0.3, "No specific patterns matched, using fallback")

        # Stable sort keeps declaration order on ties.
        candidates.sort(key=lambda c: c.confidence, reverse=True)
        best = candidates[0]
        threshold = self.settings.confidence_threshold
        if best.confidence < threshold:
            return RoutingDecision(
                target=self.fallback_target,
                confidence=best.confidence,
                reasoning=f"Confidence {best.confidence} below threshold {threshold}",
                rule_matched=best.rule_matched,
                fallback=True,
            )
        return best

    def route(self, text: str, context: Optional[Mapping[str, Any]] = None) -> RoutingDecision:
        context = context or {}
        started = time.perf_counter()
        self.stats["total_requests"] += 1
        try:
            key = cache_key(text, context)
            cached = self._lookup(key)
            if cached is not None:
                self.stats["cache_hits"] += 1
                self._publish("route_cache_hit", key=key, target=cached.target.value)
                logger.debug("Cache hit for routing decision: %s", cached.target.value)
                return cached

            self.stats["cache_misses"] += 1
            analysis = classify(text, context)
            decision = self.evaluate(analysis)
            self._cache[key] = (decision, self._clock())
        except Exception as exc:
            self.stats["failed_routes"] += 1
            logger.exception("Failed to route request")
            self._publish("error", component="router", error=str(exc))
            return self._fallback(0.1, "Fallback due to routing error")

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._record(text, decision, elapsed_ms)
        logger.debug("Routed to %s (confidence: %.3f)", decision.target.value, decision.confidence)
        self._publish("request_routed", request=text[:200], decision=decision.to_dict(), routing_time_ms=elapsed_ms)
        return decision

    def _lookup(self, key: str) -> Optional[RoutingDecision]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        decision, stored_at = entry
        if self._clock() - stored_at > self.settings.cache_ttl_seconds:
            del self._cache[key]
            return None
        return decision

    def _record(self, text: str, decision: RoutingDecision, elapsed_ms: float) -> None:
        stats = self.stats
        stats["successful_routes"] += 1
        n = stats["successful_routes"]
        stats["average_routing_time_ms"] = (stats["average_routing_time_ms"] * (n - 1) + elapsed_ms) / n
        stats["system_usage"][decision.target.value] += 1
        if decision.fallback:
            stats["fallbacks"] += 1
        self._history.append(
            {
                "request": text[:200],
                "decision": decision.to_dict(),
                "timestamp": time.time(),
                "routing_time_ms": elapsed_ms,
            }
        )

    def sweep_cache(self) -> int:
        now = self._clock()
        ttl = self.settings.cache_ttl_seconds
        expired = [key for key, (_, stored_at) in self._cache.items() if now - stored_at > ttl]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.debug("Cleaned up %d expired routing cache entries", len(expired))
            self._publish("route_cache_swept", removed=len(expired))
        return len(expired)

    def clear_cache(self) -> None:
        self._cache.clear()

    def capabilities(self) -> Dict[str, Dict[str, Any]]:
        return {k: dict(v) for k, v in CAPABILITIES.items()}

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "system_usage": dict(self.stats["system_usage"]),
            "cache_size": len(self._cache),
            "history_size": len(self._history),
            "rules_count": len(self._rules),
        }

    def get_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]
