"""Deliberation engine: phased collaboration, voting and a final decision.

A discussion moves ``idle -> initiated -> phase_execution* -> consensus ->
decided -> idle``. Every participant call is bounded by a timeout; a slow
or failing participant costs only its own contribution.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import asyncio
import logging
import math
import time
import uuid

from concord.classifier import Intent, classify
from concord.config import DeliberationSettings
from concord.deliberation.authority import DecisionAuthority
from concord.deliberation.channels import ChannelBoard, DiscussionState, SharedContext
from concord.deliberation.participants import (
    AGREEING_VOTES,
    DISSENTING_VOTES,
    AgentContribution,
    CoordinatorParticipant,
    Message,
    MessageType,
    Participant,
    ParticipantResponse,
    vote_weight,
)
from concord.deliberation.results import (
    CollaborationResult,
    ConsensusResult,
    Decision,
    PhaseResult,
    fallback_decision,
)
from concord.events import EventBus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CouncilWorkflow:
    name: str
    phases: Tuple[str, ...]
    required: Tuple[str, ...]
    optional: Tuple[str, ...]
    timeout_per_phase: float
    consensus_required: bool

    def adapted_timeout(self, complexity: str, cap: float) -> float:
        factor = 1.5 if complexity == "high" else 1.0
        return min(self.timeout_per_phase * factor, cap)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phases": list(self.phases),
            "required": list(self.required),
            "optional": list(self.optional),
            "timeout_per_phase": self.timeout_per_phase,
            "consensus_required": self.consensus_required,
        }


WORKFLOWS: Dict[str, CouncilWorkflow] = {
    "problem_solving": CouncilWorkflow(
        "problem_solving", ("analysis", "ideation", "evaluation", "decision"),
        ("knowledge", "reasoning"), ("content", "tool"), 15.0, True,
    ),
    "knowledge_synthesis": CouncilWorkflow(
        "knowledge_synthesis", ("collection", "analysis", "synthesis", "validation"),
        ("knowledge", "reasoning"), ("content",), 10.0, False,
    ),
    "content_creation": CouncilWorkflow(
        "content_creation", ("planning", "research", "creation", "review"),
        ("content", "knowledge"), ("reasoning",), 20.0, True,
    ),
    "tool_execution": CouncilWorkflow(
        "tool_execution", ("planning", "preparation", "execution", "validation"),
        ("tool",), ("knowledge", "reasoning"), 30.0, False,
    ),
}
DEFAULT_WORKFLOW = "problem_solving"

# (task_type, required_expertise, collaboration_mode) per upstream intent.
TASK_PROFILES: Dict[str, Tuple[str, Tuple[str, ...], str]] = {
    "question": ("knowledge_synthesis", ("knowledge", "reasoning"), "parallel"),
    "request": ("problem_solving", ("reasoning", "tool"), "sequential"),
    "creation": ("content_creation", ("content", "knowledge"), "collaborative"),
}
CLASSIFIER_INTENTS: Dict[Intent, str] = {
    Intent.QUESTION: "question",
    Intent.HOW_TO: "question",
    Intent.COMPARISON: "question",
    Intent.ANALYSIS: "request",
    Intent.PROBLEM_SOLVING: "request",
    Intent.PLANNING: "request",
    Intent.CREATIVE: "creation",
}

VOTING_DEFAULTS = ("Proceed with current approach", "Require additional analysis", "Seek external consultation")


@dataclass(frozen=True)
class TaskAnalysis:
    task_type: str = "general"
    complexity_level: str = "medium"
    required_expertise: Tuple[str, ...] = ()
    collaboration_mode: str = "sequential"
    estimated_duration: float = 30.0
    priority_level: str = "normal"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_type": self.task_type,
            "complexity_level": self.complexity_level,
            "required_expertise": list(self.required_expertise),
            "collaboration_mode": self.collaboration_mode,
            "estimated_duration": self.estimated_duration,
            "priority_level": self.priority_level,
        }


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, Mapping):
            return None
        data = data.get(key)
    return data


def _upstream_intent(payload: Any) -> Optional[str]:
    if isinstance(payload, str):
        return CLASSIFIER_INTENTS.get(classify(payload).intent)
    intent = _dig(payload, "intent")
    if isinstance(intent, Mapping):
        intent = _dig(intent, "primary", "intent")
    if isinstance(intent, str):
        return intent
    text = _dig(payload, "text")
    if isinstance(text, str):
        return CLASSIFIER_INTENTS.get(classify(text).intent)
    return None


def analyze_task(payload: Any, context: Optional[Mapping[str, Any]] = None) -> TaskAnalysis:
    """Derive task type, complexity and priority from whatever signals the input carries."""
    context = context or {}
    fields_: Dict[str, Any] = {}
    profile = TASK_PROFILES.get(_upstream_intent(payload) or "")
    if profile is not None:
        fields_.update(task_type=profile[0], required_expertise=profile[1], collaboration_mode=profile[2])
    if context.get("task_type") in WORKFLOWS:
        fields_["task_type"] = context["task_type"]

    factors = [
        len(_dig(payload, "reasoning", "conclusions") or []),
        len(_dig(payload, "memory", "retrieved_memories") or []),
        float(_dig(payload, "emotion", "detection", "complexity_score") or 0),
    ]
    average = sum(factors) / len(factors)
    if average > 5:
        fields_.update(complexity_level="high", estimated_duration=60.0)
    elif average < 2:
        fields_.update(complexity_level="low", estimated_duration=15.0)

    if float(_dig(payload, "emotion", "detection", "overall_intensity") or 0) > 0.8:
        fields_["priority_level"] = "high"
    return TaskAnalysis(**fields_)


def consensus_score(votes: Mapping[str, Any]) -> float:
    """Mean vote weight over the participants who voted."""
    if not votes:
        return 0.0
    return sum(vote_weight(v) for v in votes.values()) / len(votes)


def collaboration_quality(result: CollaborationResult) -> float:
    participants = max(1, len(result.participants))
    phases = max(1, len(result.phases))
    participation = len(result.contributions) / participants
    insight_density = len(result.shared_insights) / phases
    phase_success = sum(1 for p in result.phases if p.success) / phases
    diversity = len(result.contributions) / participants
    return (participation + insight_density * 0.1 + phase_success + diversity) / 3


def decision_quality(consensus: ConsensusResult, collaboration: CollaborationResult, decision: Decision) -> float:
    return (
        consensus.score * 0.3
        + collaboration.quality * 0.3
        + (decision.confidence or 0.5) * 0.3
        + (1.0 if consensus.achieved else 0.7) * 0.1
    )


class DeliberationEngine:
    """Runs council discussions over a fixed participant ensemble.

    Args:
        participants: Role-specialized participants keyed by ``participant_id``.
        coordinator: The coordinating participant; always included.
        authority: Produces the final decision.
    """

    def __init__(
        self,
        participants: Iterable[Participant],
        coordinator: Optional[Participant] = None,
        authority: Optional[DecisionAuthority] = None,
        settings: Optional[DeliberationSettings] = None,
        events: Optional[EventBus] = None,
        workflows: Optional[Mapping[str, CouncilWorkflow]] = None,
    ) -> None:
        self.settings = settings or DeliberationSettings()
        self.events = events
        self.participants: Dict[str, Participant] = {p.participant_id: p for p in participants}
        self.coordinator = coordinator or CoordinatorParticipant()
        self.authority = authority or DecisionAuthority(self.settings, events)
        self.workflows = dict(workflows or WORKFLOWS)
        self.shared = SharedContext()
        self.channels = ChannelBoard.default(self.participants, self.coordinator.participant_id)
        self._history: List[Dict[str, Any]] = []
        self.stats: Dict[str, Any] = {
            "total_discussions": 0,
            "failed_discussions": 0,
            "consensus_reached": 0,
            "average_discussion_time_ms": 0.0,
            "average_participation": 0.0,
            "decision_accuracy": 0.0,
            "collaboration_efficiency": 0.0,
        }

    def _publish(self, name: str, **data: Any) -> None:
        if self.events is not None:
            self.events.publish(name, **data)

    def select_workflow(self, analysis: TaskAnalysis) -> CouncilWorkflow:
        return self.workflows.get(analysis.task_type) or self.workflows[DEFAULT_WORKFLOW]

    def select_participants(self, workflow: CouncilWorkflow, analysis: TaskAnalysis) -> Tuple[List[str], List[str]]:
        """Return ``(active, missing_required)``; the coordinator is always last in ``active``."""
        active: List[str] = []
        missing: List[str] = []
        for pid in workflow.required:
            if pid in self.participants:
                active.append(pid)
            else:
                missing.append(pid)
        for pid in workflow.optional:
            if pid in self.participants and pid in analysis.required_expertise and pid not in active:
                active.append(pid)
        active.append(self.coordinator.participant_id)
        if missing:
            logger.warning("Workflow %s missing required participants: %s", workflow.name, ", ".join(missing))
        return active, missing

    def _participant(self, pid: str) -> Optional[Participant]:
        if pid == self.coordinator.participant_id:
            return self.coordinator
        return self.participants.get(pid)

    async def _ask(self, pid: str, message: Message, timeout: float) -> ParticipantResponse:
        participant = self._participant(pid)
        if participant is None:
            return ParticipantResponse.failed(pid, "participant not found")
        try:
            return await asyncio.wait_for(participant.respond(message, timeout), timeout)
        except asyncio.TimeoutError:
            logger.debug("Participant %s timed out on %s", pid, message.type.value)
            return ParticipantResponse.failed(pid, "timeout")
        except Exception as exc:
            logger.warning("Participant %s failed on %s: %s", pid, message.type.value, exc)
            return ParticipantResponse.failed(pid, str(exc))

    async def broadcast(self, message: Message, participant_ids: List[str], timeout: float) -> Dict[str, ParticipantResponse]:
        """Send to every participant concurrently and wait for all to settle."""
        responses = await asyncio.gather(*(self._ask(pid, message, timeout) for pid in participant_ids))
        return dict(zip(participant_ids, responses))

    async def execute_phase(
        self,
        discussion_id: str,
        phase: str,
        workflow: CouncilWorkflow,
        participants: List[str],
        timeout: float,
        payload: Any,
    ) -> PhaseResult:
        result = PhaseResult(phase=phase)
        started = time.perf_counter()
        message = Message(
            MessageType.PHASE,
            discussion_id,
            {
                "phase": phase,
                "workflow": workflow.name,
                "input": payload,
                "shared_context": self.shared.snapshot(discussion_id),
                "timeout": timeout,
            },
        )
        responses = await self.broadcast(message, participants, timeout)
        for pid, response in responses.items():
            if not (response.success and response.contribution):
                if response.error == "timeout":
                    result.timed_out.append(pid)
                continue
            insights = tuple(str(i) for i in response.contribution.get("insights") or [])
            result.contributions[pid] = AgentContribution(
                participant_id=pid,
                phase=phase,
                payload=dict(response.contribution),
                insights=insights,
                confidence=max(0.0, min(float(response.confidence or 0.0), 1.0)),
            )
            result.insights.extend(insights)
        result.success = len(result.contributions) >= math.ceil(len(participants) * self.settings.phase_success_ratio)
        result.execution_time_ms = (time.perf_counter() - started) * 1000
        return result

    @staticmethod
    def voting_options(collaboration: CollaborationResult) -> List[str]:
        options: List[str] = []
        for contributions in collaboration.contributions.values():
            for contribution in contributions:
                options.extend(contribution.insights[:2])
        options.extend(VOTING_DEFAULTS)
        return options[:5]

    async def reach_consensus(
        self, discussion_id: str, collaboration: CollaborationResult, workflow: CouncilWorkflow
    ) -> ConsensusResult:
        if not workflow.consensus_required:
            return ConsensusResult(achieved=True, score=1.0, required=False)

        started = time.perf_counter()
        message = Message(
            MessageType.CONSENSUS,
            discussion_id,
            {
                "collaboration_summary": collaboration.summary(),
                "shared_insights": list(collaboration.shared_insights),
                "voting_options": self.voting_options(collaboration),
                "timeout": self.settings.vote_timeout_seconds,
            },
        )
        responses = await self.broadcast(message, collaboration.participants, self.settings.vote_timeout_seconds)
        votes: Dict[str, str] = {}
        recommendations: Dict[str, Dict[str, Any]] = {}
        for pid, response in responses.items():
            if response.success and response.vote:
                votes[pid] = str(response.vote)
                if response.recommendation:
                    recommendations[pid] = response.recommendation

        score = consensus_score(votes)
        result = ConsensusResult(achieved=score >= self.settings.consensus_threshold, score=score, voting_results=votes)
        wanted = AGREEING_VOTES if result.achieved else DISSENTING_VOTES
        picked = [
            {"agent": pid, "recommendation": recommendations[pid], "vote": vote}
            for pid, vote in votes.items()
            if vote in wanted and pid in recommendations
        ]
        if result.achieved:
            result.agreed_recommendations = picked
        else:
            result.dissenting_opinions = picked
        result.consensus_time_ms = (time.perf_counter() - started) * 1000
        return result

    def _final_decision(
        self, discussion_id: str, collaboration: CollaborationResult, consensus: ConsensusResult
    ) -> Tuple[Decision, float]:
        try:
            decision = self.authority.make_decision(collaboration, consensus, decision_id=discussion_id)
            return decision, decision_quality(consensus, collaboration, decision)
        except Exception:
            logger.exception("Final decision generation failed [%s]", discussion_id)
            return fallback_decision(discussion_id), 0.2

    async def process(self, payload: Any, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        context = dict(context or {})
        discussion_id = str(context.get("processing_id") or f"discussion_{uuid.uuid4().hex[:12]}")
        started = time.perf_counter()

        analysis = analyze_task(payload, context)
        workflow = self.select_workflow(analysis)
        participants, missing = self.select_participants(workflow, analysis)
        timeout = workflow.adapted_timeout(analysis.complexity_level, self.settings.max_phase_timeout_seconds)
        self.shared.open(discussion_id, analysis.task_type, participants)
        logger.debug("Starting council discussion [%s] workflow=%s", discussion_id, workflow.name)
        try:
            invite = Message(
                MessageType.INVITE,
                discussion_id,
                {"task_analysis": analysis.to_dict(), "workflow": workflow.name, "input": payload},
            )
            invitations = await self.broadcast(
                invite, participants, min(timeout, self.settings.invite_timeout_seconds)
            )
            accepted = [pid for pid, r in invitations.items() if r.success and r.accepted]
            self.shared.update(discussion_id, "accepted", accepted)
            self.channels.broadcast(
                "general", self.coordinator.participant_id,
                {"type": "discussion_started", "discussion_id": discussion_id, "workflow": workflow.name},
            )

            collaboration = CollaborationResult(participants=list(participants))
            for phase in workflow.phases:
                self.shared.set_state(discussion_id, DiscussionState.PHASES, phase)
                phase_result = await self.execute_phase(discussion_id, phase, workflow, participants, timeout, payload)
                collaboration.add(phase_result)
                self.shared.update(discussion_id, "last_phase_success", phase_result.success)
                if phase_result.insights:
                    self.channels.broadcast(
                        "knowledge_sharing", self.coordinator.participant_id,
                        {"phase": phase, "insights": list(phase_result.insights)},
                    )
            collaboration.quality = collaboration_quality(collaboration)

            self.shared.set_state(discussion_id, DiscussionState.CONSENSUS)
            consensus = await self.reach_consensus(discussion_id, collaboration, workflow)

            decision, quality = self._final_decision(discussion_id, collaboration, consensus)
            self.shared.set_state(discussion_id, DiscussionState.DECIDED)

            elapsed_ms = (time.perf_counter() - started) * 1000
            output = {
                "response": decision.recommendation,
                "confidence": decision.confidence,
                "council_recommendation": decision.recommendation,
                "decision": decision.to_dict(),
                "decision_quality": quality,
                "consensus": consensus.to_dict(),
                "task_analysis": analysis.to_dict(),
                "workflow": workflow.to_dict(),
                "collaboration": collaboration.to_dict(),
                "agent_contributions": self.summarize_contributions(collaboration),
                "collaboration_metrics": self.collaboration_metrics(collaboration, consensus),
                "metadata": {
                    "discussion_id": discussion_id,
                    "processing_time_ms": elapsed_ms,
                    "participants": list(participants),
                    "accepted": accepted,
                    "missing_required": missing,
                    "consensus_reached": consensus.achieved,
                    "workflow": workflow.name,
                },
            }
            self._remember(output)
            self._update_stats(elapsed_ms, collaboration, consensus, quality)
            logger.debug("Council discussion completed [%s] - consensus: %s", discussion_id, consensus.achieved)
            self._publish("discussion_complete", discussion_id=discussion_id, consensus=consensus.achieved)
            return output
        except Exception as exc:
            self.stats["failed_discussions"] += 1
            logger.error("Council discussion failed [%s]: %s", discussion_id, exc)
            self._publish("error", component="deliberation", discussion_id=discussion_id, error=str(exc))
            raise
        finally:
            self.shared.close(discussion_id)

    @staticmethod
    def summarize_contributions(collaboration: CollaborationResult) -> Dict[str, Any]:
        summary = {}
        for pid, contributions in collaboration.contributions.items():
            summary[pid] = {
                "total_contributions": len(contributions),
                "phases_participated": list(dict.fromkeys(c.phase for c in contributions)),
                "key_insights": [i for c in contributions for i in c.insights][:3],
                "average_confidence": (
                    sum(c.confidence for c in contributions) / len(contributions) if contributions else 0.0
                ),
            }
        return summary

    @staticmethod
    def collaboration_metrics(collaboration: CollaborationResult, consensus: ConsensusResult) -> Dict[str, Any]:
        participants = max(1, len(collaboration.participants))
        return {
            "participation_rate": len(collaboration.contributions) / participants,
            "consensus_achievement": consensus.achieved,
            "consensus_score": consensus.score,
            "collaboration_efficiency": collaboration.quality,
            "decision_time_ms": consensus.consensus_time_ms,
            "insight_generation": len(collaboration.shared_insights),
            "agent_engagement": sum(len(v) for v in collaboration.contributions.values()) / participants,
        }

    def _remember(self, output: Dict[str, Any]) -> None:
        self._history.append(
            {
                "discussion_id": output["metadata"]["discussion_id"],
                "workflow": output["metadata"]["workflow"],
                "participants": output["metadata"]["participants"],
                "consensus_achieved": output["consensus"]["achieved"],
                "decision_quality": output["decision_quality"],
                "recommendation": output["council_recommendation"],
                "timestamp": time.time(),
            }
        )
        limit = self.settings.history_size
        if len(self._history) > limit:
            self._history = self._history[-max(1, limit // 2):]

    def _update_stats(
        self, elapsed_ms: float, collaboration: CollaborationResult, consensus: ConsensusResult, quality: float
    ) -> None:
        stats = self.stats
        stats["total_discussions"] += 1
        n = stats["total_discussions"]
        if consensus.achieved:
            stats["consensus_reached"] += 1
        participation = len(collaboration.contributions) / max(1, len(collaboration.participants))

        def running(key: str, value: float) -> None:
            stats[key] = (stats[key] * (n - 1) + value) / n

        running("average_discussion_time_ms", elapsed_ms)
        running("average_participation", participation)
        running("decision_accuracy", quality)
        running("collaboration_efficiency", collaboration.quality)

    def active_discussions(self) -> List[str]:
        return self.shared.active()

    def get_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self._history[-limit:] if limit > 0 else []

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "active_discussions": len(self.shared.active()),
            "participants": sorted(self.participants),
            "workflows": sorted(self.workflows),
            "channels": self.channels.names(),
        }

    def clear_history(self) -> None:
        self._history.clear()
        self.channels.clear()
