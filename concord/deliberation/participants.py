"""Deliberation participants: message types, votes and implementations.

A participant answers three kinds of message: an invitation to a
discussion, a phase of work, and a request to vote. ``StaticParticipant``
answers from fixed tables and is what tests and offline runs use.
``LLMParticipant`` answers through a local Ollama model.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
import asyncio
import logging
import re

from concord.subsystems.ollama import OllamaClient

logger = logging.getLogger(__name__)

COORDINATOR_ID = "decision_maker"


class MessageType(str, Enum):
    INVITE = "collaboration_invite"
    PHASE = "phase_execution"
    CONSENSUS = "consensus_request"


class Vote(str, Enum):
    STRONGLY_AGREE = "strongly_agree"
    AGREE = "agree"
    NEUTRAL = "neutral"
    DISAGREE = "disagree"
    STRONGLY_DISAGREE = "strongly_disagree"


VOTE_WEIGHTS: Dict[str, float] = {
    Vote.STRONGLY_AGREE.value: 1.0,
    Vote.AGREE.value: 0.8,
    Vote.NEUTRAL.value: 0.5,
    Vote.DISAGREE.value: 0.2,
    Vote.STRONGLY_DISAGREE.value: 0.0,
}
DEFAULT_VOTE_WEIGHT = 0.5
AGREEING_VOTES = (Vote.STRONGLY_AGREE.value, Vote.AGREE.value)
DISSENTING_VOTES = (Vote.DISAGREE.value, Vote.STRONGLY_DISAGREE.value)


def vote_weight(vote: Any) -> float:
    return VOTE_WEIGHTS.get(str(getattr(vote, "value", vote)), DEFAULT_VOTE_WEIGHT)


@dataclass(frozen=True)
class Message:
    type: MessageType
    discussion_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def phase(self) -> Optional[str]:
        return self.payload.get("phase")


@dataclass
class ParticipantResponse:
    participant_id: str
    success: bool = True
    accepted: bool = False
    contribution: Optional[Dict[str, Any]] = None
    vote: Optional[str] = None
    recommendation: Optional[Dict[str, Any]] = None
    confidence: float = 0.0
    error: Optional[str] = None

    @classmethod
    def failed(cls, participant_id: str, error: str) -> "ParticipantResponse":
        return cls(participant_id=participant_id, success=False, error=error)


@dataclass(frozen=True)
class AgentContribution:
    participant_id: str
    phase: str
    payload: Dict[str, Any]
    insights: tuple[str, ...]
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "phase": self.phase,
            "payload": dict(self.payload),
            "insights": list(self.insights),
            "confidence": self.confidence,
        }


@runtime_checkable
class Participant(Protocol):
    participant_id: str
    specialty: str

    async def respond(self, message: Message, timeout: float) -> ParticipantResponse:
        ...


CAPABILITIES: Dict[str, List[str]] = {
    "knowledge": ["information_retrieval", "fact_checking", "knowledge_synthesis"],
    "reasoning": ["logical_analysis", "pattern_recognition", "inference"],
    "content": ["text_generation", "content_structuring", "communication"],
    "tool": ["external_integration", "task_execution", "automation"],
}

CONTRIBUTIONS: Dict[str, Dict[str, Dict[str, Any]]] = {
    "knowledge": {
        "analysis": {"type": "knowledge_base", "insights": ["Relevant information identified", "Knowledge gaps noted"]},
        "ideation": {"type": "information_support", "insights": ["Supporting data provided", "Context enriched"]},
        "evaluation": {"type": "fact_verification", "insights": ["Facts verified", "Accuracy assessed"]},
        "decision": {"type": "knowledge_summary", "insights": ["Key information summarized"]},
    },
    "reasoning": {
        "analysis": {"type": "logical_analysis", "insights": ["Logical structure identified", "Reasoning patterns found"]},
        "ideation": {"type": "idea_generation", "insights": ["Alternative approaches suggested", "Logical connections made"]},
        "evaluation": {"type": "option_assessment", "insights": ["Options evaluated logically", "Pros and cons analyzed"]},
        "decision": {"type": "decision_logic", "insights": ["Decision rationale provided"]},
    },
    "content": {
        "analysis": {"type": "content_analysis", "insights": ["Content structure analyzed", "Communication needs identified"]},
        "ideation": {"type": "creative_input", "insights": ["Creative alternatives proposed", "Presentation options suggested"]},
        "evaluation": {"type": "content_quality", "insights": ["Content quality assessed", "Clarity evaluated"]},
        "decision": {"type": "communication_plan", "insights": ["Communication strategy outlined"]},
    },
    "tool": {
        "analysis": {"type": "tool_assessment", "insights": ["Required tools identified", "Technical feasibility assessed"]},
        "ideation": {"type": "implementation_options", "insights": ["Implementation approaches suggested", "Tool alternatives provided"]},
        "evaluation": {"type": "technical_evaluation", "insights": ["Technical viability assessed", "Resource requirements estimated"]},
        "decision": {"type": "execution_plan", "insights": ["Execution steps outlined"]},
    },
}
GENERAL_CONTRIBUTION = {"type": "general", "insights": ["General contribution provided"]}

RECOMMENDATIONS: Dict[str, Dict[str, str]] = {
    "knowledge": {"type": "information_based", "priority": "accuracy", "suggestion": "Base decision on verified information"},
    "reasoning": {"type": "logic_based", "priority": "consistency", "suggestion": "Ensure logical consistency in decision"},
    "content": {"type": "communication_based", "priority": "clarity", "suggestion": "Prioritize clear communication of decision"},
    "tool": {"type": "implementation_based", "priority": "feasibility", "suggestion": "Consider implementation feasibility"},
}
GENERAL_RECOMMENDATION = {"type": "general", "priority": "balance", "suggestion": "Consider all perspectives"}


@dataclass
class StaticParticipant:
    """Deterministic participant answering from the contribution tables.

    ``delay`` simulates slow participants (for timeout handling) and
    ``fail_on`` lists message types that raise instead of answering.
    """

    participant_id: str
    specialty: str = ""
    vote: str = Vote.AGREE.value
    confidence: float = 0.8
    delay: float = 0.0
    fail_on: tuple[str, ...] = ()
    contributions: Optional[Dict[str, Dict[str, Any]]] = None
    received: List[Message] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.specialty:
            self.specialty = self.participant_id

    async def respond(self, message: Message, timeout: float) -> ParticipantResponse:
        self.received.append(message)
        if self.delay:
            await asyncio.sleep(self.delay)
        if message.type.value in self.fail_on:
            raise RuntimeError(f"{self.participant_id} failed on {message.type.value}")
        if message.type is MessageType.INVITE:
            return ParticipantResponse(self.participant_id, accepted=True, confidence=self.confidence)
        if message.type is MessageType.PHASE:
            table = self.contributions or CONTRIBUTIONS.get(self.specialty, {})
            contribution = dict(table.get(message.phase or "", GENERAL_CONTRIBUTION))
            contribution["capabilities"] = CAPABILITIES.get(self.specialty, ["general_assistance"])
            return ParticipantResponse(self.participant_id, contribution=contribution, confidence=self.confidence)
        return ParticipantResponse(
            self.participant_id,
            vote=self.vote,
            recommendation=dict(RECOMMENDATIONS.get(self.specialty, GENERAL_RECOMMENDATION)),
            confidence=self.confidence,
        )


@dataclass
class CoordinatorParticipant:
    """The coordinating participant's side of the message protocol.

    It steers phases rather than contributing insights, and its vote
    (``facilitate_consensus``) is not on the five-point scale so it counts
    with the default weight.
    """

    participant_id: str = COORDINATOR_ID
    specialty: str = "coordination"

    async def respond(self, message: Message, timeout: float) -> ParticipantResponse:
        if message.type is MessageType.INVITE:
            return ParticipantResponse(self.participant_id, accepted=True, confidence=1.0)
        if message.type is MessageType.PHASE:
            return ParticipantResponse(
                self.participant_id,
                contribution={
                    "type": "coordination",
                    "guidance": f"Coordinating {message.phase} phase",
                    "priorities": ["efficiency", "quality", "consensus"],
                    "insights": [],
                },
                confidence=0.9,
            )
        return ParticipantResponse(
            self.participant_id,
            vote="facilitate_consensus",
            recommendation={
                "type": "synthesis",
                "approach": "integrate_all_perspectives",
                "priority": "balanced_decision",
            },
            confidence=0.95,
        )


PHASE_SYSTEM = (
    "You are the {specialty} specialist on a small council. Contribute to the '{phase}' phase.\n"
    "Reply with 1-4 bullet points (lines starting with '-'), then 'Confidence: <0-100>'."
)
VOTE_SYSTEM = (
    "You are the {specialty} specialist on a small council. Review the collaboration summary and options.\n"
    "Reply with 'Vote: <strongly_agree|agree|neutral|disagree|strongly_disagree>' and one line\n"
    "'Recommendation: <text>'."
)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[\).])\s*(.+)$")
_CONFIDENCE = re.compile(r"confidence\s*[:=]\s*(\d{1,3})", re.I)
_VOTE = re.compile(r"vote\s*[:\-]\s*([a-z_ ]+)", re.I)
_RECOMMENDATION = re.compile(r"recommendation\s*[:\-]\s*(.+)", re.I)


def parse_insights(text: str, limit: int = 4) -> list[str]:
    insights = []
    seen = set()
    for line in text.splitlines():
        match = _BULLET.match(line)
        if not match:
            continue
        item = match.group(1).strip()
        if item and item.lower() not in seen:
            seen.add(item.lower())
            insights.append(item)
    return insights[:limit]


def parse_vote(text: str) -> str:
    """Map a free-text verdict onto the five-point scale; unknown text is neutral."""
    match = _VOTE.search(text)
    verdict = re.sub(r"[^a-z]+", " ", (match.group(1) if match else text).lower()).strip()
    if "strongly disagree" in verdict:
        return Vote.STRONGLY_DISAGREE.value
    if "strongly agree" in verdict:
        return Vote.STRONGLY_AGREE.value
    if "disagree" in verdict or verdict in {"no", "reject"}:
        return Vote.DISAGREE.value
    if "agree" in verdict or verdict in {"yes", "approve"}:
        return Vote.AGREE.value
    return Vote.NEUTRAL.value


class LLMParticipant:
    def __init__(
        self,
        participant_id: str,
        client: OllamaClient,
        model: str,
        specialty: Optional[str] = None,
        temperature: float = 0.2,
    ) -> None:
        self.participant_id = participant_id
        self.specialty = specialty or participant_id
        self.client = client
        self.model = model
        self.temperature = temperature

    async def respond(self, message: Message, timeout: float) -> ParticipantResponse:
        if message.type is MessageType.INVITE:
            return ParticipantResponse(self.participant_id, accepted=True, confidence=1.0)
        if message.type is MessageType.PHASE:
            return await self._phase(message)
        return await self._vote(message)

    async def _phase(self, message: Message) -> ParticipantResponse:
        task = message.payload.get("input", "")
        result = await self.client.generate(
            self.model,
            f"Task:\n{task}\n\nShared context:\n{message.payload.get('shared_context', {})}",
            system=PHASE_SYSTEM.format(specialty=self.specialty, phase=message.phase),
            temperature=self.temperature,
        )
        if not result.ok:
            return ParticipantResponse.failed(self.participant_id, result.error or "generation failed")
        match = _CONFIDENCE.search(result.text)
        confidence = min(int(match.group(1)) / 100.0, 1.0) if match else 0.6
        return ParticipantResponse(
            self.participant_id,
            contribution={"type": f"{self.specialty}_{message.phase}", "insights": parse_insights(result.text)},
            confidence=confidence,
        )

    async def _vote(self, message: Message) -> ParticipantResponse:
        options = message.payload.get("voting_options", [])
        prompt = (
            f"Summary: {message.payload.get('collaboration_summary', {})}\n"
            "Options:\n" + "\n".join(f"- {o}" for o in options)
        )
        result = await self.client.generate(
            self.model,
            prompt,
            system=VOTE_SYSTEM.format(specialty=self.specialty),
            temperature=self.temperature,
        )
        if not result.ok:
            return ParticipantResponse.failed(self.participant_id, result.error or "generation failed")
        rec = _RECOMMENDATION.search(result.text)
        return ParticipantResponse(
            self.participant_id,
            vote=parse_vote(result.text),
            recommendation={
                "type": f"{self.specialty}_based",
                "suggestion": rec.group(1).strip() if rec else "",
            },
            confidence=0.7,
        )
