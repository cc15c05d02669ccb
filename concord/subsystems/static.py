"""Deterministic in-process subsystems for offline runs and tests."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class StaticKnowledge:
    """Keyword lookup over a fixed document list."""

    documents: List[Dict[str, Any]] = field(default_factory=list)
    calls: int = 0

    async def retrieve(self, query: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.calls += 1
        options = options or {}
        limit = int(options.get("max_results", 5))
        terms = {t for t in query.lower().split() if len(t) > 3}
        scored = []
        for doc in self.documents:
            words = set(str(doc.get("content", "")).lower().split())
            overlap = len(terms & words) / len(terms) if terms else 0.0
            if overlap > 0:
                scored.append({**doc, "score": round(overlap, 4)})
        scored.sort(key=lambda d: d["score"], reverse=True)
        scored = scored[:limit]
        confidence = sum(d["score"] for d in scored) / len(scored) if scored else 0.0
        return {
            "documents": scored,
            "confidence": confidence,
            "sources": [d.get("source", "static") for d in scored],
            "response": "\n\n".join(d.get("content", "") for d in scored),
        }


@dataclass
class StaticReasoner:
    """Echoes the request back with any supplied context."""

    confidence: float = 0.8
    calls: int = 0

    async def process(self, payload: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.calls += 1
        text = payload.get("text", "")
        response = f"Considered: {text}"
        if payload.get("sources"):
            response += f" (with {len(payload['sources'])} sources)"
        return {
            "response": response,
            "confidence": self.confidence,
            "reasoning": "static",
            "layers_used": ["static"],
        }
