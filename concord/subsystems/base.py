"""Narrow contracts for the knowledge, reasoning and deliberation backends."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from concord.errors import SubsystemUnavailable

KNOWLEDGE = "knowledge"
REASONING = "reasoning"
DELIBERATION = "deliberation"
SUBSYSTEM_KINDS = (KNOWLEDGE, REASONING, DELIBERATION)


@runtime_checkable
class KnowledgeSubsystem(Protocol):
    async def retrieve(self, query: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Return ``{documents, confidence, sources}``."""
        ...


@runtime_checkable
class ReasoningSubsystem(Protocol):
    async def process(self, payload: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Return ``{response, confidence, reasoning, layers_used}``."""
        ...


@runtime_checkable
class DeliberationSubsystem(Protocol):
    async def process(self, payload: Any, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        ...


class SubsystemRegistry:
    """Named backends, each tagged with the contract it speaks.

    The three standard backends register under their kind's name. Extra
    backends (for example several reasoners polled for consensus) register
    under any name with an explicit kind.
    """

    def __init__(
        self,
        knowledge: Optional[KnowledgeSubsystem] = None,
        reasoning: Optional[ReasoningSubsystem] = None,
        deliberation: Optional[DeliberationSubsystem] = None,
    ) -> None:
        self._systems: Dict[str, Tuple[str, Any]] = {}
        for kind, system in ((KNOWLEDGE, knowledge), (REASONING, reasoning), (DELIBERATION, deliberation)):
            if system is not None:
                self.register(kind, system, kind)

    def register(self, name: str, system: Any, kind: str = REASONING) -> None:
        if kind not in SUBSYSTEM_KINDS:
            raise ValueError(f"Unknown subsystem kind: {kind}")
        self._systems[name] = (kind, system)

    def resolve(self, name: str) -> Tuple[str, Any]:
        entry = self._systems.get(name)
        if entry is None:
            raise SubsystemUnavailable(name, "not configured")
        return entry

    def get(self, name: str) -> Any:
        return self.resolve(name)[1]

    def available(self) -> List[str]:
        return list(self._systems)

    def __contains__(self, name: object) -> bool:
        return name in self._systems
