"""Council deliberation: participants, discussion state and decision synthesis."""
from __future__ import annotations

from concord.deliberation.authority import DecisionAuthority, conflict_severity, quality_level
from concord.deliberation.council import WORKFLOWS, CouncilWorkflow, DeliberationEngine, analyze_task
from concord.deliberation.participants import (
    COORDINATOR_ID,
    CoordinatorParticipant,
    LLMParticipant,
    Message,
    MessageType,
    Participant,
    ParticipantResponse,
    StaticParticipant,
    Vote,
)
from concord.deliberation.results import CollaborationResult, ConsensusResult, Decision

__all__ = [
    "COORDINATOR_ID",
    "CollaborationResult",
    "ConsensusResult",
    "CoordinatorParticipant",
    "CouncilWorkflow",
    "Decision",
    "DecisionAuthority",
    "DeliberationEngine",
    "LLMParticipant",
    "Message",
    "MessageType",
    "Participant",
    "ParticipantResponse",
    "StaticParticipant",
    "Vote",
    "WORKFLOWS",
    "analyze_task",
    "conflict_severity",
    "quality_level",
]
