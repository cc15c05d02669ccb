"""Request pipeline: route, execute, synthesize."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
import logging

from concord.audit import AuditLog
from concord.config import Config, get_config
from concord.deliberation import DeliberationEngine, LLMParticipant, StaticParticipant
from concord.errors import NotInitializedError
from concord.events import EventBus
from concord.orchestrator import ExecutionOrchestrator, ExecutionResult, Strategy
from concord.router import Router, RoutingDecision
from concord.scheduler import AsyncioScheduler, Scheduler
from concord.subsystems import (
    OllamaClient,
    OllamaReasoner,
    RagClient,
    StaticKnowledge,
    StaticReasoner,
    SubsystemRegistry,
)
from concord.synthesizer import ResponseSynthesizer, SynthesizedResponse

logger = logging.getLogger(__name__)

COUNCIL_SPECIALTIES = ("knowledge", "reasoning", "content", "tool")

OFFLINE_DOCUMENTS = [
    {
        "content": "Concord routes each request to knowledge retrieval, reasoning or council deliberation.",
        "source": "concord-overview",
    },
    {
        "content": "A council deliberation runs phases, collects votes and issues a decision.",
        "source": "concord-deliberation",
    },
]


@dataclass
class PipelineResult:
    task_id: str
    routing: RoutingDecision
    execution: ExecutionResult
    response: SynthesizedResponse

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "routing": self.routing.to_dict(),
            "execution": self.execution.to_dict(),
            "response": self.response.to_dict(),
        }


def synthesis_inputs(result: Any, source: str) -> List[Any]:
    """Flatten an orchestrator result into synthesizer inputs."""
    if not isinstance(result, Mapping):
        return [result]
    kind = result.get("type")
    if kind in (Strategy.PARALLEL.value, Strategy.SEQUENTIAL.value):
        return list(result.get("results") or [])
    if kind == Strategy.HYBRID.value:
        return [
            {
                "content": result.get("final_answer", ""),
                "confidence": result.get("confidence"),
                "source": "reasoning",
                "type": kind,
            }
        ]
    if kind == Strategy.CONSENSUS.value:
        return [
            {
                "content": result.get("answer", ""),
                "confidence": result.get("confidence"),
                "source": result.get("system") or source,
                "type": kind,
            }
        ]
    return [{"system": source, "result": result}]


class ConcordPipeline:
    """Owns the router, orchestrator and synthesizer for one process.

    Use ``from_config`` for the HTTP-backed subsystems or ``offline`` for the
    deterministic in-process ones. ``initialize`` registers housekeeping on
    the scheduler; ``shutdown`` cancels it along with outstanding tasks.
    """

    def __init__(
        self,
        subsystems: SubsystemRegistry,
        config: Optional[Config] = None,
        events: Optional[EventBus] = None,
        scheduler: Optional[Scheduler] = None,
        router: Optional[Router] = None,
    ) -> None:
        self.config = config or Config({})
        self.events = events or EventBus(self.config.event_history_size)
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.subsystems = subsystems
        self.router = router or Router(self.config.router, self.events)
        self.orchestrator = ExecutionOrchestrator(
            subsystems, self.router, self.config.orchestrator, self.events
        )
        self.synthesizer = ResponseSynthesizer(self.config.synthesis, self.events)
        self.audit: Optional[AuditLog] = None
        audit_path = self.config.audit_path
        if audit_path is not None:
            self.audit = AuditLog(audit_path)
        self.initialized = False

    @classmethod
    def from_config(cls, config: Optional[Config] = None, **kwargs: Any) -> "ConcordPipeline":
        config = config or get_config()
        rag_cfg = config.subsystems.rag
        ollama_cfg = config.subsystems.ollama
        events = kwargs.pop("events", None) or EventBus(config.event_history_size)

        ollama = OllamaClient(config.subsystems.ollama_url, timeout=float(ollama_cfg.get("timeout", 120)))
        temperature = float(ollama_cfg.get("temperature", 0.2))
        participant_model = str(ollama_cfg.get("participant_model", "qwen2.5:7b"))
        council = DeliberationEngine(
            [LLMParticipant(name, ollama, participant_model, temperature=temperature) for name in COUNCIL_SPECIALTIES],
            settings=config.deliberation,
            events=events,
        )
        registry = SubsystemRegistry(
            knowledge=RagClient(
                config.subsystems.rag_url,
                timeout=float(rag_cfg.get("timeout", 15)),
                max_results=int(rag_cfg.get("max_results", 5)),
                threshold=float(rag_cfg.get("threshold", 0)),
            ),
            reasoning=OllamaReasoner(
                ollama, str(ollama_cfg.get("reasoning_model", "qwen2.5:14b")), temperature=temperature
            ),
            deliberation=council,
        )
        return cls(registry, config=config, events=events, **kwargs)

    @classmethod
    def offline(cls, config: Optional[Config] = None, **kwargs: Any) -> "ConcordPipeline":
        config = config or Config({})
        events = kwargs.pop("events", None) or EventBus(config.event_history_size)
        council = DeliberationEngine(
            [StaticParticipant(name, specialty=name) for name in COUNCIL_SPECIALTIES],
            settings=config.deliberation,
            events=events,
        )
        registry = SubsystemRegistry(
            knowledge=StaticKnowledge(list(OFFLINE_DOCUMENTS)),
            reasoning=StaticReasoner(),
            deliberation=council,
        )
        return cls(registry, config=config, events=events, **kwargs)

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> None:
        if self.initialized:
            return
        if self.audit is not None:
            self.audit.attach(self.events)
        self.router.attach(self.scheduler)
        self.orchestrator.attach(self.scheduler)
        self.initialized = True
        logger.info("Pipeline initialized with subsystems: %s", ", ".join(self.subsystems.available()))

    async def shutdown(self) -> None:
        if not self.initialized:
            return
        await self.orchestrator.shutdown()
        self.orchestrator.detach(self.scheduler)
        self.router.detach(self.scheduler)
        await self.scheduler.stop()
        if self.audit is not None:
            self.events.unsubscribe("*", self.audit.handle)
        self.initialized = False
        logger.info("Pipeline shut down")

    async def __aenter__(self) -> "ConcordPipeline":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    def _require_initialized(self) -> None:
        if not self.initialized:
            raise NotInitializedError("Pipeline not initialized")

    # -- operations --------------------------------------------------------

    def route(self, text: str, context: Optional[Mapping[str, Any]] = None) -> RoutingDecision:
        self._require_initialized()
        return self.router.route(text, context)

    async def execute_task(self, text: str, options: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        self._require_initialized()
        return await self.orchestrator.execute_task(text, options)

    async def execute_workflow(self, name: str, text: str, options: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        self._require_initialized()
        return await self.orchestrator.execute_workflow(name, text, options)

    def synthesize(self, results: List[Any], options: Optional[Mapping[str, Any]] = None) -> SynthesizedResponse:
        self._require_initialized()
        return self.synthesizer.synthesize(results, options)

    async def run(self, text: str, options: Optional[Dict[str, Any]] = None) -> PipelineResult:
        """Route, execute and synthesize ``text`` end to end.

        ``options`` takes the ``execute_task`` options plus ``synthesis``
        (a dict of synthesizer options).
        """
        self._require_initialized()
        options = dict(options or {})
        synthesis_options = dict(options.pop("synthesis", None) or {})
        decision = self.router.route(text, options.get("context"))
        execution = await self.orchestrator.execute_task(text, {**options, "routing_decision": decision})
        targets = execution.metadata.get("targets") or [decision.target.value]
        response = self.synthesizer.synthesize(synthesis_inputs(execution.result, targets[0]), synthesis_options)
        return PipelineResult(execution.task_id, decision, execution, response)

    # -- read-only accessors -----------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        stats = {
            "router": self.router.get_stats(),
            "orchestrator": self.orchestrator.get_stats(),
            "synthesizer": self.synthesizer.get_stats(),
            "subsystems": self.subsystems.available(),
            "initialized": self.initialized,
        }
        council = self.subsystems.get("deliberation") if "deliberation" in self.subsystems else None
        if isinstance(council, DeliberationEngine):
            stats["deliberation"] = council.get_stats()
            stats["authority"] = council.authority.get_stats()
        return stats

    def get_history(self, limit: int = 50) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "routing": self.router.get_history(limit),
            "tasks": self.orchestrator.get_history(limit),
            "synthesis": self.synthesizer.get_history(limit),
            "events": [e.to_dict() for e in self.events.recent(limit)],
        }
