"""Merge subsystem outputs into one response.

Synthesis is synchronous and deterministic: the same normalized inputs,
strategy and options always produce the same content, confidence, sources
and quality scores. Timing only feeds the statistics.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union
import json
import logging
import re
import time

from concord.config import SynthesisSettings
from concord.errors import SynthesisFailure
from concord.events import EventBus

logger = logging.getLogger(__name__)

RELIABILITY: Dict[str, float] = {
    "deliberation": 0.9,
    "reasoning": 0.8,
    "knowledge": 0.7,
}
DEFAULT_RELIABILITY = 0.6

DEFAULT_HIERARCHY = ("deliberation", "reasoning", "knowledge", "unknown")

TEMPLATES: Dict[str, Dict[str, Any]] = {
    "comprehensive": {
        "structure": ("summary", "detailed_analysis", "supporting_evidence", "conclusions", "sources"),
        "min_sections": 3,
    },
    "concise": {"structure": ("direct_answer", "key_points", "sources"), "min_sections": 2},
    "analytical": {
        "structure": ("problem_statement", "analysis", "findings", "recommendations", "sources"),
        "min_sections": 4,
    },
}

PLACEHOLDER = "No valid results to synthesize."
PLACEHOLDER_CONFIDENCE = 0.1

_CONTENT_KEYS = ("content", "response", "final_answer", "answer", "text", "context")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_NON_WORD = re.compile(r"[^a-z0-9\s]")


@dataclass(frozen=True)
class SourceResult:
    content: str
    confidence: float
    source: str = "unknown"
    type: str = "text"


@dataclass
class Draft:
    """Strategy output before post-processing."""

    content: str
    confidence: float
    strategy: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SynthesizedResponse:
    content: str
    confidence: float
    sources: frozenset[str]
    quality_score: Optional[float]
    strategy_used: str
    quality: Dict[str, float] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "confidence": self.confidence,
            "sources": sorted(self.sources),
            "quality_score": self.quality_score,
            "strategy_used": self.strategy_used,
            "quality": dict(self.quality),
            "metadata": self.metadata,
        }


StrategyFn = Callable[[List[SourceResult], Mapping[str, Any]], Union[Draft, Mapping[str, Any]]]


def _confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.5
    return max(0.0, min(1.0, float(value)))


def _text(data: Mapping[str, Any]) -> str:
    for key in _CONTENT_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return json.dumps(data, sort_keys=True, default=str)


def normalize(result: Any) -> Optional[SourceResult]:
    """Coerce a raw subsystem output into a ``SourceResult``.

    Returns None for entries that cannot contribute: empty content and
    ``{error, system}`` failure markers.
    """
    if isinstance(result, SourceResult):
        normalized = result
    elif isinstance(result, str):
        normalized = SourceResult(content=result, confidence=0.5)
    elif isinstance(result, Mapping):
        inner = result.get("result")
        if isinstance(inner, Mapping) and "system" in result:
            if "error" in inner:
                return None
            normalized = SourceResult(
                content=_text(inner),
                confidence=_confidence(inner.get("confidence")),
                source=str(result["system"]),
                type=str(inner.get("type") or "structured"),
            )
        else:
            if "error" in result and set(result) <= {"error", "system"}:
                return None
            confidence = result.get("confidence")
            if confidence is None:
                confidence = result.get("score")
            normalized = SourceResult(
                content=_text(result),
                confidence=_confidence(confidence),
                source=str(result.get("source") or result.get("system") or "unknown"),
                type=str(result.get("type") or "mixed"),
            )
    else:
        return None

    if not normalized.content or not normalized.content.strip():
        return None
    if not 0.0 <= normalized.confidence <= 1.0:
        normalized = SourceResult(
            normalized.content, max(0.0, min(1.0, normalized.confidence)), normalized.source, normalized.type
        )
    return normalized


def sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if len(s.strip()) > 20]


def jaccard(a: str, b: str) -> float:
    words_a = set(a.lower().split())
    words_b = set(b.lower().split())
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def common_themes(results: Sequence[SourceResult], limit: int = 5) -> List[Dict[str, Any]]:
    """Words longer than four letters that appear in more than one result."""
    counts: Dict[str, int] = {}
    for result in results:
        words = {w for w in _NON_WORD.sub("", result.content.lower()).split() if len(w) > 4}
        for word in words:
            counts[word] = counts.get(word, 0) + 1
    floor = min(2, len(results))
    common = sorted((item for item in counts.items() if item[1] >= floor), key=lambda kv: (-kv[1], kv[0]))
    return [
        {"keyword": word, "frequency": count, "description": f"Common topic: {word}"}
        for word, count in common[:limit]
    ]


def find_agreements(results: Sequence[SourceResult], threshold: float = 0.3, limit: int = 3) -> List[Dict[str, Any]]:
    split = [sentences(r.content) for r in results]
    agreements: List[Dict[str, Any]] = []
    seen = set()
    for i, result in enumerate(results):
        for sentence in split[i]:
            if sentence in seen:
                continue
            agreeing = [result.source]
            total = result.confidence
            for j in range(i + 1, len(results)):
                if any(jaccard(sentence, other) >= threshold for other in split[j]):
                    agreeing.append(results[j].source)
                    total += results[j].confidence
            if len(agreeing) > 1:
                seen.add(sentence)
                agreements.append({"content": sentence, "sources": agreeing, "confidence": total / len(agreeing)})
    agreements.sort(key=lambda a: -a["confidence"])
    return agreements[:limit]


def truncate(content: str, max_length: int) -> str:
    """Cut ``content`` to ``max_length`` at a sentence, else a word, boundary."""
    if len(content) <= max_length:
        return content
    head = content[:max_length]
    stop = head.rfind(".")
    if stop > max_length * 0.8:
        return head[: stop + 1]
    head = content[: max(max_length - 3, 0)]
    space = head.rfind(" ")
    if space > 0:
        head = head[:space]
    return head.rstrip() + "..."


def citations(sources: Sequence[Dict[str, Any]]) -> str:
    lines = []
    seen = set()
    for entry in sources:
        name = entry["source"]
        if name in seen:
            continue
        seen.add(name)
        lines.append(f"{len(lines) + 1}. {name} (confidence: {entry['confidence'] * 100:.1f}%)")
    if not lines:
        return ""
    return "\n\n**Sources:**\n" + "\n".join(lines)


def coherence(content: str) -> float:
    parts = sentences(content)
    if not parts:
        return 0.0
    if len(parts) == 1:
        return 0.8
    score = 0.5
    average = len(content) / len(parts)
    if 20 < average < 200:
        score += 0.2
    if "**" in content or "•" in content:
        score += 0.1
    return min(score, 1.0)


def completeness(content: str, source_count: int) -> float:
    score = 0.3
    if len(content) > 200:
        score += 0.2
    if len(content) > 500:
        score += 0.2
    if source_count > 1:
        score += 0.2
    if source_count > 2:
        score += 0.1
    return min(score, 1.0)


def accuracy(results: Sequence[SourceResult]) -> float:
    if not results:
        return 0.3
    return sum(r.confidence for r in results) / len(results)


class ResponseSynthesizer:
    """Strategy table plus post-processing and quality scoring.

    Args:
        settings: Length limit, attribution, citation and threshold knobs.
        events: Optional bus for ``synthesis_completed``.
        reliability: Per-source reliability override table.
    """

    def __init__(
        self,
        settings: Optional[SynthesisSettings] = None,
        events: Optional[EventBus] = None,
        reliability: Optional[Mapping[str, float]] = None,
    ) -> None:
        self.settings = settings or SynthesisSettings()
        self.events = events
        self.reliability: Dict[str, float] = dict(RELIABILITY if reliability is None else reliability)
        self.templates: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in TEMPLATES.items()}
        self._strategies: Dict[str, StrategyFn] = {
            "weighted_merge": self.weighted_merge,
            "consensus": self.consensus,
            "hierarchical": self.hierarchical,
            "simple_merge": self.simple_merge,
        }
        self._history: deque[Dict[str, Any]] = deque(maxlen=self.settings.history_size)
        self.stats: Dict[str, Any] = {
            "total_syntheses": 0,
            "successful_syntheses": 0,
            "fallbacks": 0,
            "average_synthesis_time_ms": 0.0,
            "average_quality_score": 0.0,
            "strategy_usage": {name: 0 for name in self._strategies},
        }

    def add_strategy(self, name: str, fn: StrategyFn) -> None:
        if name in self._strategies:
            raise ValueError(f"Synthesis strategy already exists: {name}")
        self._strategies[name] = fn
        self.stats["strategy_usage"][name] = 0
        logger.debug("Added synthesis strategy %s", name)

    def _attributed(self, source: str, content: str, prefix: str) -> str:
        if self.settings.source_attribution and source != "unknown":
            return prefix.format(source=source) + content
        return content

    # -- strategies --------------------------------------------------------

    def weighted_merge(self, results: List[SourceResult], options: Mapping[str, Any]) -> Draft:
        reliability = {**self.reliability, **(options.get("reliability") or {})}
        threshold = float(options.get("weight_threshold", self.settings.weight_threshold))
        weighted = [(r, r.confidence * reliability.get(r.source, DEFAULT_RELIABILITY)) for r in results]
        weighted.sort(key=lambda item: -item[1])

        used = [(r, w) for r, w in weighted if w > threshold]
        if not used:
            raise SynthesisFailure(
                f"All {len(results)} sources fell below weight {threshold}", total_sources=len(results)
            )
        total_weight = sum(w for _, w in used)
        content = "\n\n".join(self._attributed(r.source, r.content, "**From {source}:** ") for r, _ in used)
        return Draft(
            content=content,
            confidence=sum(r.confidence * w for r, w in used) / total_weight,
            strategy="weighted_merge",
            sources=[{"source": r.source, "confidence": r.confidence, "weight": w} for r, w in used],
            metadata={
                "total_sources": len(results),
                "used_sources": len(used),
                "weights": [{"source": r.source, "weight": w} for r, w in weighted],
            },
        )

    def consensus(self, results: List[SourceResult], options: Mapping[str, Any]) -> Draft:
        threshold = float(options.get("agreement_threshold", self.settings.agreement_threshold))
        agreements = find_agreements(results, threshold)
        if not agreements:
            logger.debug("No agreement among %d sources, using weighted merge", len(results))
            draft = self.weighted_merge(results, options)
            draft.metadata["fallback_from"] = "consensus"
            return draft

        themes = common_themes(results)
        lines = ["**Consensus Points:**"]
        lines.extend(f"• {a['content']} ({len(a['sources'])} sources agree)" for a in agreements)
        if themes:
            lines.append("")
            lines.append("**Common Themes:**")
            lines.extend(f"• {t['description']}" for t in themes)
        confidence = sum(a["confidence"] for a in agreements) / len(agreements)
        return Draft(
            content="\n".join(lines),
            confidence=confidence,
            strategy="consensus",
            sources=[{"source": r.source, "confidence": r.confidence} for r in results],
            metadata={"agreements": len(agreements), "themes": len(themes), "consensus_strength": confidence},
        )

    def hierarchical(self, results: List[SourceResult], options: Mapping[str, Any]) -> Draft:
        hierarchy = tuple(options.get("hierarchy") or DEFAULT_HIERARCHY)

        def rank(result: SourceResult) -> int:
            return hierarchy.index(result.source) if result.source in hierarchy else len(hierarchy)

        ordered = sorted(results, key=lambda r: (rank(r), -r.confidence))
        primary = ordered[0]
        blocks = [primary.content]
        blocks.extend(f"**Additional Context ({r.source}):**\n{r.content}" for r in ordered[1:])
        return Draft(
            content="\n\n".join(blocks),
            confidence=primary.confidence,
            strategy="hierarchical",
            sources=[
                {"source": r.source, "confidence": r.confidence, "priority": len(hierarchy) - (rank(r) + 1)}
                for r in ordered
            ],
            metadata={"hierarchy": list(hierarchy), "primary_source": primary.source},
        )

    def simple_merge(self, results: List[SourceResult], options: Mapping[str, Any]) -> Draft:
        content = "\n\n".join(self._attributed(r.source, r.content, "**{source}:** ") for r in results)
        return Draft(
            content=content,
            confidence=sum(r.confidence for r in results) / len(results),
            strategy="simple_merge",
            sources=[{"source": r.source, "confidence": r.confidence} for r in results],
            metadata={"total_length": len(content)},
        )

    # -- pipeline ----------------------------------------------------------

    def _run_strategy(self, name: str, results: List[SourceResult], options: Mapping[str, Any]) -> Draft:
        fn = self._strategies.get(name)
        if fn is None:
            logger.warning("Unknown synthesis strategy %s, using weighted_merge", name)
            fn = self.weighted_merge
        else:
            self.stats["strategy_usage"][name] += 1
        draft = fn(results, options)
        if isinstance(draft, Mapping):
            draft = Draft(
                content=str(draft.get("content", "")),
                confidence=_confidence(draft.get("confidence")),
                strategy=str(draft.get("strategy") or name),
                sources=list(draft.get("sources") or []),
                metadata=dict(draft.get("metadata") or {}),
            )
        if not draft.content.strip():
            raise SynthesisFailure(f"Strategy {name} produced empty content")
        return draft

    def _fallback_merge(
        self, strategy: str, results: List[SourceResult], options: Mapping[str, Any], exc: Exception
    ) -> Draft:
        logger.warning("Synthesis strategy %s failed, using simple_merge: %s", strategy, exc)
        try:
            draft = self.simple_merge(results, options)
        except Exception as inner:
            logger.exception("Fallback synthesis failed")
            return self._placeholder(str(inner))
        draft.metadata["fallback_from"] = strategy
        draft.metadata["error"] = str(exc)
        return draft

    def _placeholder(self, reason: str) -> Draft:
        return Draft(
            content=PLACEHOLDER,
            confidence=PLACEHOLDER_CONFIDENCE,
            strategy="none",
            metadata={"placeholder": True, "reason": reason},
        )

    def assess_quality(self, content: str, confidence: float, results: Sequence[SourceResult]) -> Dict[str, float]:
        scores = {
            "coherence": coherence(content),
            "completeness": completeness(content, len(results)),
            "accuracy": accuracy(results),
            "relevance": confidence if confidence else 0.7,
        }
        scores["overall"] = sum(scores.values()) / 4
        return scores

    def synthesize(self, results: Iterable[Any], options: Optional[Mapping[str, Any]] = None) -> SynthesizedResponse:
        """Normalize ``results`` and merge them.

        Options: ``strategy``, ``template``, ``include_citations``,
        ``max_length``, ``hierarchy``, ``reliability``. A failing strategy
        falls back to ``simple_merge``. When nothing is usable, including when
        every source sits below the weight floor, the response is a
        low-confidence placeholder.
        """
        options = dict(options or {})
        started = time.perf_counter()
        self.stats["total_syntheses"] += 1
        strategy = str(options.get("strategy") or self.settings.default_strategy)

        normalized: List[SourceResult] = []
        for raw in results:
            item = normalize(raw)
            if item is not None:
                normalized.append(item)

        fallback = False
        if not normalized:
            logger.warning("No valid results to synthesize")
            draft = self._placeholder("no valid results")
            fallback = True
        else:
            try:
                draft = self._run_strategy(strategy, normalized, options)
            except SynthesisFailure as exc:
                fallback = True
                if exc.total_sources is None:
                    draft = self._fallback_merge(strategy, normalized, options, exc)
                else:
                    logger.warning("Synthesis strategy %s left no usable source: %s", strategy, exc)
                    draft = self._placeholder(str(exc))
                    draft.metadata.update(total_sources=exc.total_sources, used_sources=0)
            except Exception as exc:
                fallback = True
                draft = self._fallback_merge(strategy, normalized, options, exc)

        content = truncate(draft.content, int(options.get("max_length", self.settings.max_length)))
        template = options.get("template")
        if template in self.templates:
            content = f"**Response ({template} format):**\n\n{content}"
        if options.get("include_citations", self.settings.include_citations) and draft.sources:
            content += citations(draft.sources)

        quality: Dict[str, float] = {}
        quality_score: Optional[float] = None
        if self.settings.quality_check:
            quality = self.assess_quality(content, draft.confidence, normalized)
            quality_score = quality["overall"]

        response = SynthesizedResponse(
            content=content,
            confidence=draft.confidence,
            sources=frozenset(s["source"] for s in draft.sources),
            quality_score=quality_score,
            strategy_used=draft.strategy,
            quality=quality,
            metadata={**draft.metadata, "source_count": len(normalized), "requested_strategy": strategy},
        )
        self._record(response, (time.perf_counter() - started) * 1000, fallback)
        return response

    def _record(self, response: SynthesizedResponse, elapsed_ms: float, fallback: bool) -> None:
        stats = self.stats
        if fallback:
            stats["fallbacks"] += 1
        else:
            stats["successful_syntheses"] += 1
        n = stats["total_syntheses"]
        stats["average_synthesis_time_ms"] = (stats["average_synthesis_time_ms"] * (n - 1) + elapsed_ms) / n
        if response.quality_score is not None:
            stats["average_quality_score"] = (stats["average_quality_score"] * (n - 1) + response.quality_score) / n
        summary = {
            "strategy": response.strategy_used,
            "confidence": response.confidence,
            "quality_score": response.quality_score,
            "sources": sorted(response.sources),
            "synthesis_time_ms": elapsed_ms,
            "fallback": fallback,
        }
        self._history.append(summary)
        logger.debug("Synthesis via %s in %.1f ms", response.strategy_used, elapsed_ms)
        if self.events is not None:
            self.events.publish("synthesis_completed", **summary)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "strategy_usage": dict(self.stats["strategy_usage"]),
            "strategies_available": len(self._strategies),
            "templates_available": len(self.templates),
        }

    def get_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]
