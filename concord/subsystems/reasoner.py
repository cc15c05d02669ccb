"""LLM-backed reasoning subsystem."""
from __future__ import annotations

from typing import Any, Dict, Optional
import logging
import re

from concord.errors import SubsystemUnavailable
from concord.subsystems.ollama import OllamaClient

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a careful analyst. Reason step by step, then answer.\n"
    "Finish with a line of the form 'Confidence: <0-100>'."
)

_CONFIDENCE = re.compile(r"confidence\s*[:=]\s*(\d{1,3})\s*%?", re.I)


def parse_confidence(text: str, default: float = 0.6) -> float:
    match = _CONFIDENCE.search(text or "")
    if not match:
        return default
    return max(0.0, min(int(match.group(1)) / 100.0, 1.0))


def build_prompt(payload: Dict[str, Any]) -> str:
    parts = [f"Request:\n{payload.get('text', '')}"]
    context = payload.get("context")
    if context:
        parts.append(f"Context:\n{context}")
    sources = payload.get("sources") or []
    if sources:
        parts.append("Sources:\n" + "\n".join(f"- {s}" for s in sources))
    return "\n\n".join(parts)


class OllamaReasoner:
    def __init__(self, client: OllamaClient, model: str, temperature: float = 0.2) -> None:
        self.client = client
        self.model = model
        self.temperature = temperature

    async def process(self, payload: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = options or {}
        result = await self.client.generate(
            self.model,
            build_prompt(payload),
            system=SYSTEM_PROMPT,
            temperature=float(options.get("temperature", self.temperature)),
            max_tokens=options.get("max_tokens"),
        )
        if not result.ok:
            raise SubsystemUnavailable("reasoning", result.error or "generation failed")
        text = _CONFIDENCE.sub("", result.text).strip()
        return {
            "response": text,
            "confidence": parse_confidence(result.text),
            "reasoning": f"{self.model} in {result.duration_ms:.0f}ms",
            "layers_used": ["perception", "reasoning", "decision"],
        }
