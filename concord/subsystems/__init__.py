"""Collaborator subsystems consumed by the orchestrator."""
from __future__ import annotations

from concord.subsystems.base import (
    DeliberationSubsystem,
    KnowledgeSubsystem,
    ReasoningSubsystem,
    SubsystemRegistry,
)
from concord.subsystems.ollama import OllamaClient, OllamaResult
from concord.subsystems.rag import RagClient
from concord.subsystems.reasoner import OllamaReasoner
from concord.subsystems.static import StaticKnowledge, StaticReasoner

__all__ = [
    "DeliberationSubsystem",
    "KnowledgeSubsystem",
    "OllamaClient",
    "OllamaReasoner",
    "OllamaResult",
    "RagClient",
    "ReasoningSubsystem",
    "StaticKnowledge",
    "StaticReasoner",
    "SubsystemRegistry",
]
