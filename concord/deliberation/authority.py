"""The coordinating participant's decision synthesis.

Given what the council produced (contributions, shared insights, the vote),
``DecisionAuthority.make_decision`` picks a decision framework, detects and
resolves conflict, merges the participants' perspectives and grades the
resulting decision. All of it is table-driven and deterministic.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging
import time

from concord.config import DeliberationSettings
from concord.deliberation.results import CollaborationResult, ConsensusResult, Decision
from concord.events import EventBus

logger = logging.getLogger(__name__)

LOW, MEDIUM, HIGH, CRITICAL = "low", "medium", "high", "critical"


@dataclass(frozen=True)
class Framework:
    framework_id: str
    name: str
    steps: Tuple[str, ...]
    weight: float


FRAMEWORKS: Tuple[Framework, ...] = (
    Framework(
        "rational",
        "Rational Decision Making",
        ("problem_identification", "criteria_establishment", "alternative_generation",
         "alternative_evaluation", "selection", "implementation", "monitoring"),
        0.4,
    ),
    Framework(
        "consensus",
        "Consensus Building",
        ("stakeholder_identification", "perspective_gathering", "common_ground_finding",
         "difference_resolution", "agreement_building", "commitment_securing"),
        0.3,
    ),
    Framework(
        "intuitive",
        "Intuitive Decision Making",
        ("pattern_recognition", "experience_application", "gut_check", "rapid_assessment", "confidence_evaluation"),
        0.2,
    ),
    Framework(
        "evidence",
        "Evidence-Based Decision Making",
        ("evidence_gathering", "quality_assessment", "synthesis", "interpretation", "application", "outcome_measurement"),
        0.1,
    ),
)

# Steps whose quality is taken from the synthesis rather than a constant.
STEP_QUALITY: Dict[str, float] = {
    "problem_identification": 0.9,
    "criteria_establishment": 0.85,
    "alternative_generation": 0.8,
    "alternative_evaluation": 0.85,
    "implementation": 0.8,
    "monitoring": 0.75,
    "stakeholder_identification": 0.9,
    "perspective_gathering": 0.85,
    "common_ground_finding": 0.8,
    "difference_resolution": 0.75,
    "commitment_securing": 0.8,
    "pattern_recognition": 0.85,
    "experience_application": 0.8,
    "gut_check": 0.75,
    "rapid_assessment": 0.9,
    "evidence_gathering": 0.85,
    "quality_assessment": 0.8,
    "synthesis": 0.85,
    "interpretation": 0.8,
    "application": 0.85,
    "outcome_measurement": 0.75,
}
DEFAULT_STEP_QUALITY = 0.7

STAKEHOLDER_WEIGHTS: Dict[str, float] = {
    "knowledge": 0.25,
    "reasoning": 0.25,
    "content": 0.2,
    "tool": 0.2,
    "decision_maker": 0.1,
}
DEFAULT_STAKEHOLDER_WEIGHT = 0.2

QUALITY_CRITERIA: Dict[str, float] = {
    "logical_consistency": 0.25,
    "evidence_support": 0.25,
    "stakeholder_alignment": 0.20,
    "feasibility": 0.15,
    "risk_management": 0.15,
}
QUALITY_LEVELS: Tuple[Tuple[float, str], ...] = (
    (0.9, "excellent"),
    (0.75, "good"),
    (0.6, "acceptable"),
    (0.4, "poor"),
)
IMPROVEMENTS: Dict[str, str] = {
    "logical_consistency": "Review logical flow and eliminate contradictions",
    "evidence_support": "Gather additional supporting evidence",
    "stakeholder_alignment": "Better incorporate stakeholder perspectives",
    "feasibility": "Simplify implementation or increase resources",
    "risk_management": "Develop stronger risk mitigation strategies",
}

SUCCESS_METRICS = [
    "Stakeholder satisfaction score > 80%",
    "Implementation timeline adherence > 90%",
    "Quality objectives achievement > 85%",
    "Resource utilization efficiency > 75%",
    "Risk mitigation effectiveness > 80%",
]
CONTINGENCY_PLANS = [
    {"trigger": "Stakeholder resistance", "response": "Enhanced engagement and communication strategy"},
    {"trigger": "Implementation delays", "response": "Resource reallocation and timeline adjustment"},
    {"trigger": "Quality issues", "response": "Quality review process and corrective actions"},
    {"trigger": "Unexpected risks", "response": "Risk assessment update and mitigation plan revision"},
]
MITIGATIONS = {
    "implementation_risk": "Detailed planning and phased approach",
    "stakeholder_risk": "Enhanced communication and engagement",
    "technical_risk": "Technical review and expert consultation",
    "timeline_risk": "Resource allocation and priority management",
}


@dataclass(frozen=True)
class DecisionContext:
    decision_type: str = "general"
    complexity: str = MEDIUM
    stakeholder_count: int = 0
    conflict_level: str = LOW
    time_pressure: str = "normal"
    uncertainty: str = MEDIUM
    stakes: str = MEDIUM


@dataclass
class ConflictResolution:
    conflicts_detected: int = 0
    severity: str = "none"
    strategy: str = "none"
    success: bool = True


@dataclass
class PerspectiveSynthesis:
    strategy: str
    recommendation: str
    confidence: float
    alignment: float
    quality: float
    insights: List[str] = field(default_factory=list)
    trade_offs: List[str] = field(default_factory=list)


@dataclass
class FrameworkResult:
    framework: Framework
    step_qualities: List[Tuple[str, float]]
    confidence: float
    success: bool = True


@dataclass
class QualityAssessment:
    overall_score: float
    quality_level: str
    criteria_scores: Dict[str, float]
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    improvement_suggestions: List[str] = field(default_factory=list)


def quality_level(score: float) -> str:
    for threshold, label in QUALITY_LEVELS:
        if score >= threshold:
            return label
    return "unacceptable"


def conflict_severity(score: float, threshold: float = 0.3) -> Optional[str]:
    """Severity for a consensus score, or None when no conflict is detected.

    Bands are quarters of the detection threshold: the further below it,
    the more severe.
    """
    if score >= threshold or threshold <= 0:
        return None
    ratio = score / threshold
    if ratio < 0.25:
        return CRITICAL
    if ratio < 0.5:
        return HIGH
    if ratio < 0.75:
        return MEDIUM
    return LOW


def resolution_strategy(severity: str, context: DecisionContext) -> str:
    if severity == CRITICAL:
        return "arbitration" if context.time_pressure == HIGH else "escalation"
    if severity == HIGH:
        return "integration" if context.stakes == HIGH else "arbitration"
    if severity == MEDIUM:
        return "mediation" if context.stakeholder_count > 3 else "compromise"
    if severity == LOW:
        return "mediation"
    return "none"


def analyze_context(
    collaboration: Optional[CollaborationResult],
    consensus: Optional[ConsensusResult],
    insights: List[str],
) -> DecisionContext:
    fields_: Dict[str, Any] = {}
    if collaboration is not None:
        fields_["stakeholder_count"] = len(collaboration.participants)
        q = collaboration.quality
        fields_["complexity"] = LOW if q > 0.8 else MEDIUM if q > 0.5 else HIGH
    if consensus is not None:
        s = consensus.score
        fields_["conflict_level"] = LOW if s > 0.8 else MEDIUM if s > 0.5 else HIGH
        fields_["uncertainty"] = LOW if consensus.achieved else HIGH

    lowered = [i.lower() for i in insights if isinstance(i, str)]
    if any("strategic" in i for i in lowered):
        fields_.update(decision_type="strategic", stakes=HIGH)
    elif any("operational" in i for i in lowered):
        fields_.update(decision_type="operational", time_pressure=HIGH)
    elif any("technical" in i for i in lowered):
        fields_.update(decision_type="technical", complexity=HIGH)
    return DecisionContext(**fields_)


def select_framework(context: DecisionContext) -> Tuple[Framework, float]:
    best, best_score = FRAMEWORKS[0], 0.0
    for framework in FRAMEWORKS:
        score = framework.weight
        if context.complexity == HIGH and framework.framework_id == "rational":
            score += 0.3
        if context.conflict_level == HIGH and framework.framework_id == "consensus":
            score += 0.4
        if context.time_pressure == HIGH and framework.framework_id == "intuitive":
            score += 0.3
        if context.uncertainty == LOW and framework.framework_id == "evidence":
            score += 0.2
        if score > best_score:
            best, best_score = framework, score
    return best, best_score


def select_synthesis_strategy(context: DecisionContext, conflict: ConflictResolution) -> str:
    if conflict.severity in (HIGH, CRITICAL):
        return "dialectical"
    if context.complexity == HIGH:
        return "emergent"
    if context.stakeholder_count > 4:
        return "consensus_building"
    if context.decision_type == "technical":
        return "best_of_breed"
    return "weighted_average"


class DecisionAuthority:
    """Produces the terminal ``Decision`` for a discussion."""

    def __init__(self, settings: Optional[DeliberationSettings] = None, events: Optional[EventBus] = None) -> None:
        self.settings = settings or DeliberationSettings()
        self.events = events
        self._history: deque[Dict[str, Any]] = deque(maxlen=self.settings.decision_history_size)
        self.stats: Dict[str, Any] = {
            "total_decisions": 0,
            "successful_decisions": 0,
            "average_decision_time_ms": 0.0,
            "average_confidence": 0.0,
            "conflicts_resolved": 0,
            "escalations": 0,
        }

    def detect_conflicts(self, consensus: Optional[ConsensusResult], context: DecisionContext) -> ConflictResolution:
        result = ConflictResolution()
        if consensus is None:
            return result
        severity = conflict_severity(consensus.score, self.settings.conflict_threshold)
        if severity is not None:
            result.conflicts_detected = 1
            result.severity = severity
            result.strategy = resolution_strategy(severity, context)
            result.success = self._apply_resolution(result.strategy)
        if consensus.dissenting_opinions:
            result.conflicts_detected += len(consensus.dissenting_opinions)
            if result.severity == "none":
                result.severity = LOW
        return result

    def _apply_resolution(self, strategy: str) -> bool:
        if strategy == "escalation":
            self.stats["escalations"] += 1
            logger.info("Escalating decision; conflict cannot be resolved by the council")
            return False
        self.stats["conflicts_resolved"] += 1
        logger.debug("Resolving conflict by %s", strategy)
        return True

    def _weighted_confidence(self, collaboration: Optional[CollaborationResult]) -> float:
        if collaboration is None or not collaboration.contributions:
            return 0.6
        total_weight = 0.0
        weighted = 0.0
        for pid, contributions in collaboration.contributions.items():
            weight = STAKEHOLDER_WEIGHTS.get(pid, DEFAULT_STAKEHOLDER_WEIGHT)
            confidence = sum(c.confidence for c in contributions) / len(contributions) if contributions else 0.8
            total_weight += weight
            weighted += weight * confidence
        return weighted / total_weight if total_weight > 0 else 0.6

    def synthesize_perspectives(
        self,
        strategy: str,
        collaboration: Optional[CollaborationResult],
        consensus: Optional[ConsensusResult],
        insights: List[str],
    ) -> PerspectiveSynthesis:
        if strategy == "weighted_average":
            return PerspectiveSynthesis(
                strategy, "Balanced approach incorporating all perspectives",
                self._weighted_confidence(collaboration), 0.8, 0.75, insights[:3],
            )
        if strategy == "consensus_building":
            score = consensus.score if consensus is not None and consensus.score else 0.6
            return PerspectiveSynthesis(
                strategy, "Consensus-driven solution with broad agreement", score, 0.9, 0.8, insights[:5],
            )
        if strategy == "best_of_breed":
            return PerspectiveSynthesis(
                strategy, "Optimal solution combining best elements", 0.85, 0.7, 0.85, insights[:3],
            )
        if strategy == "dialectical":
            return PerspectiveSynthesis(
                strategy, "Synthesized solution resolving contradictions", 0.75, 0.6, 0.7, list(insights),
                ["Complexity vs Simplicity", "Speed vs Quality"],
            )
        if strategy == "emergent":
            return PerspectiveSynthesis(
                strategy, "Novel solution emerging from perspective interaction", 0.7, 0.65, 0.8,
                list(insights) + ["Novel perspective from synthesis", "Unexpected solution pathway identified"],
            )
        raise ValueError(f"Unknown synthesis strategy: {strategy}")

    def apply_framework(self, framework: Framework, synthesis: PerspectiveSynthesis) -> FrameworkResult:
        dynamic = {
            "selection": synthesis.confidence,
            "confidence_evaluation": synthesis.confidence,
            "agreement_building": synthesis.alignment,
        }
        steps = [(step, dynamic.get(step, STEP_QUALITY.get(step, DEFAULT_STEP_QUALITY))) for step in framework.steps]
        completion = len(steps) / len(framework.steps)
        avg_quality = sum(q for _, q in steps) / max(1, len(steps))
        confidence = (completion * 0.4 + avg_quality * 0.6) * framework.weight
        return FrameworkResult(framework=framework, step_qualities=steps, confidence=confidence)

    def assess_quality(
        self,
        confidence: float,
        synthesis: PerspectiveSynthesis,
        context: DecisionContext,
        risk_assessment: Dict[str, Any],
    ) -> QualityAssessment:
        scores = {
            "logical_consistency": 0.9 if confidence > 0.7 else 0.6,
            "evidence_support": 0.85 if len(synthesis.insights) > 2 else 0.65,
            "stakeholder_alignment": synthesis.alignment,
            "feasibility": {LOW: 0.9, MEDIUM: 0.75}.get(context.complexity, 0.6),
            "risk_management": 0.8 if risk_assessment else 0.5,
        }
        overall = sum(scores[name] * weight for name, weight in QUALITY_CRITERIA.items())
        assessment = QualityAssessment(overall_score=overall, quality_level=quality_level(overall), criteria_scores=scores)
        for name, score in scores.items():
            if score >= 0.8:
                assessment.strengths.append(name)
            elif score < 0.6:
                assessment.weaknesses.append(name)
                assessment.improvement_suggestions.append(IMPROVEMENTS[name])
        return assessment

    @staticmethod
    def _rationale(framework: FrameworkResult, synthesis: PerspectiveSynthesis, context: DecisionContext) -> str:
        parts = [
            f"Applied {framework.framework.name} framework for systematic decision making",
            f"Synthesized perspectives using {synthesis.strategy} approach",
        ]
        if synthesis.alignment > 0.8:
            parts.append("High stakeholder alignment supports decision confidence")
        if context.conflict_level == LOW:
            parts.append("Low conflict level enables smooth implementation")
        if synthesis.insights:
            parts.append(f"Incorporated {len(synthesis.insights)} key insights from collaborative analysis")
        return ". ".join(parts)

    @staticmethod
    def _guidance(synthesis: PerspectiveSynthesis) -> List[str]:
        guidance = [
            "Begin with stakeholder communication and alignment",
            "Establish clear success metrics and monitoring processes",
            "Implement in phases with regular review points",
        ]
        if synthesis.trade_offs:
            guidance.append("Pay special attention to identified trade-offs during implementation")
        guidance.append("Maintain flexibility for adjustments based on feedback")
        return guidance

    @staticmethod
    def _risks(synthesis: PerspectiveSynthesis, context: DecisionContext) -> Dict[str, Any]:
        risks = {
            "implementation_risk": MEDIUM if context.complexity == HIGH else LOW,
            "stakeholder_risk": HIGH if synthesis.alignment < 0.6 else LOW,
            "technical_risk": MEDIUM if context.decision_type == "technical" else LOW,
            "timeline_risk": MEDIUM if context.time_pressure == HIGH else LOW,
        }
        return {"risks": risks, "mitigation": dict(MITIGATIONS)}

    def make_decision(
        self,
        collaboration: Optional[CollaborationResult],
        consensus: Optional[ConsensusResult],
        decision_id: Optional[str] = None,
    ) -> Decision:
        started = time.perf_counter()
        insights = list(collaboration.shared_insights) if collaboration is not None else []
        context = analyze_context(collaboration, consensus, insights)
        framework, _score = select_framework(context)
        conflict = self.detect_conflicts(consensus, context)

        strategy = select_synthesis_strategy(context, conflict)
        try:
            synthesis = self.synthesize_perspectives(strategy, collaboration, consensus, insights)
        except Exception:
            logger.exception("Perspective synthesis failed")
            synthesis = PerspectiveSynthesis(strategy, "Unable to synthesize perspectives effectively", 0.3, 0.0, 0.2)

        try:
            framework_result = self.apply_framework(framework, synthesis)
        except Exception:
            logger.exception("Framework application failed [%s]", framework.name)
            framework_result = FrameworkResult(framework=framework, step_qualities=[], confidence=0.3, success=False)

        confidence = (
            (framework_result.confidence or 0.6) * 0.4
            + (synthesis.confidence or 0.6) * 0.4
            + (synthesis.alignment or 0.7) * 0.2
        )
        risk_assessment = self._risks(synthesis, context)
        assessment = self.assess_quality(confidence, synthesis, context, risk_assessment)

        decision = Decision(
            recommendation=synthesis.recommendation,
            confidence=confidence,
            rationale=self._rationale(framework_result, synthesis, context),
            risk_assessment=risk_assessment,
            quality_score=assessment.overall_score,
            framework_used=framework.name,
            quality_level=assessment.quality_level,
            synthesis_strategy=synthesis.strategy,
            conflict_resolution=conflict.strategy,
            stakeholder_alignment=synthesis.alignment,
            implementation_guidance=self._guidance(synthesis),
            success_metrics=list(SUCCESS_METRICS),
            contingency_plans=[dict(p) for p in CONTINGENCY_PLANS],
            decision_id=decision_id,
        )
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._record(decision, assessment, conflict, elapsed_ms)
        if self.events is not None:
            self.events.publish("decision_made", decision=decision.to_dict())
        logger.debug("Decision %s completed - quality %s", decision_id, assessment.quality_level)
        return decision

    def _record(self, decision: Decision, assessment: QualityAssessment, conflict: ConflictResolution, elapsed_ms: float) -> None:
        stats = self.stats
        stats["total_decisions"] += 1
        n = stats["total_decisions"]
        if assessment.quality_level not in ("poor", "unacceptable"):
            stats["successful_decisions"] += 1
        stats["average_decision_time_ms"] = (stats["average_decision_time_ms"] * (n - 1) + elapsed_ms) / n
        stats["average_confidence"] = (stats["average_confidence"] * (n - 1) + decision.confidence) / n
        self._history.append(
            {
                "decision": decision.to_dict(),
                "criteria_scores": dict(assessment.criteria_scores),
                "strengths": list(assessment.strengths),
                "weaknesses": list(assessment.weaknesses),
                "improvement_suggestions": list(assessment.improvement_suggestions),
                "conflicts_detected": conflict.conflicts_detected,
                "conflict_severity": conflict.severity,
                "resolution_success": conflict.success,
                "timestamp": time.time(),
            }
        )

    def get_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        return list(self._history)[-limit:] if limit > 0 else []

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)

    def clear_history(self) -> None:
        self._history.clear()
