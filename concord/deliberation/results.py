"""Result records produced while a discussion runs."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from concord.deliberation.participants import AgentContribution


@dataclass
class PhaseResult:
    phase: str
    contributions: Dict[str, AgentContribution] = field(default_factory=dict)
    insights: List[str] = field(default_factory=list)
    success: bool = False
    execution_time_ms: float = 0.0
    timed_out: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "contributions": {pid: c.to_dict() for pid, c in self.contributions.items()},
            "insights": list(self.insights),
            "success": self.success,
            "execution_time_ms": self.execution_time_ms,
            "timed_out": list(self.timed_out),
        }


@dataclass
class CollaborationResult:
    participants: List[str]
    phases: List[PhaseResult] = field(default_factory=list)
    # participant -> contributions in phase order, one per (participant, phase)
    contributions: Dict[str, List[AgentContribution]] = field(default_factory=dict)
    shared_insights: List[str] = field(default_factory=list)
    quality: float = 0.0

    def add(self, phase: PhaseResult) -> None:
        self.phases.append(phase)
        for pid, contribution in phase.contributions.items():
            existing = self.contributions.setdefault(pid, [])
            if any(c.phase == contribution.phase for c in existing):
                continue
            existing.append(contribution)
        self.shared_insights.extend(phase.insights)

    def summary(self) -> Dict[str, Any]:
        return {
            "phases_completed": len(self.phases),
            "total_contributions": sum(len(v) for v in self.contributions.values()),
            "shared_insights_count": len(self.shared_insights),
            "collaboration_quality": self.quality,
            "participant_count": len(self.participants),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participants": list(self.participants),
            "phases": [p.to_dict() for p in self.phases],
            "shared_insights": list(self.shared_insights),
            "quality": self.quality,
        }


@dataclass
class ConsensusResult:
    achieved: bool
    score: float
    agreed_recommendations: List[Dict[str, Any]] = field(default_factory=list)
    dissenting_opinions: List[Dict[str, Any]] = field(default_factory=list)
    voting_results: Dict[str, str] = field(default_factory=dict)
    required: bool = True
    consensus_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "achieved": self.achieved,
            "score": self.score,
            "agreed_recommendations": list(self.agreed_recommendations),
            "dissenting_opinions": list(self.dissenting_opinions),
            "voting_results": dict(self.voting_results),
            "required": self.required,
            "consensus_time_ms": self.consensus_time_ms,
        }


@dataclass
class Decision:
    recommendation: str
    confidence: float
    rationale: str
    risk_assessment: Dict[str, Any]
    quality_score: float
    framework_used: str
    quality_level: str = "acceptable"
    synthesis_strategy: str = "none"
    conflict_resolution: str = "none"
    stakeholder_alignment: float = 0.0
    implementation_guidance: List[str] = field(default_factory=list)
    success_metrics: List[str] = field(default_factory=list)
    contingency_plans: List[Dict[str, str]] = field(default_factory=list)
    decision_id: Optional[str] = None
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendation": self.recommendation,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "risk_assessment": self.risk_assessment,
            "quality_score": self.quality_score,
            "quality_level": self.quality_level,
            "framework_used": self.framework_used,
            "synthesis_strategy": self.synthesis_strategy,
            "conflict_resolution": self.conflict_resolution,
            "stakeholder_alignment": self.stakeholder_alignment,
            "implementation_guidance": list(self.implementation_guidance),
            "success_metrics": list(self.success_metrics),
            "contingency_plans": list(self.contingency_plans),
            "decision_id": self.decision_id,
            "fallback": self.fallback,
        }


def fallback_decision(decision_id: Optional[str] = None) -> Decision:
    return Decision(
        recommendation="Unable to reach definitive decision",
        confidence=0.3,
        rationale="Decision making process encountered errors",
        risk_assessment={},
        quality_score=0.2,
        framework_used="none",
        quality_level="unacceptable",
        decision_id=decision_id,
        fallback=True,
    )
