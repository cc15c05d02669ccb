"""Knowledge retrieval over the RAG search API."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import httpx
import logging
import time

from concord.errors import SubsystemTimeout, SubsystemUnavailable

logger = logging.getLogger(__name__)


@dataclass
class RagClient:
    base_url: str
    timeout: float = 15.0
    max_results: int = 5
    threshold: float = 0.0
    transport: Optional[httpx.AsyncBaseTransport] = None
    errors: list[dict] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")

    def _record_error(self, action: str, exc: Exception) -> None:
        self.errors.append({"action": action, "error": str(exc), "time": time.time()})

    def drain_errors(self) -> list[dict]:
        errors = list(self.errors)
        self.errors.clear()
        return errors

    async def search(self, query: str, limit: int = 20, collection: Optional[str] = None) -> list[dict]:
        params: Dict[str, Any] = {"q": query, "limit": limit}
        if collection:
            params["collection"] = collection
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(f"{self.base_url}/api/rag/search", params=params)
                resp.raise_for_status()
                return resp.json().get("results", [])
        except httpx.TimeoutException as exc:
            self._record_error(f"search:{collection or 'all'}", exc)
            logger.warning(f"RAG search timed out after {self.timeout}s for collection={collection}")
            raise SubsystemTimeout("knowledge", self.timeout) from exc
        except httpx.HTTPError as exc:
            self._record_error(f"search:{collection or 'all'}", exc)
            logger.warning("RAG search failed", exc_info=True)
            raise SubsystemUnavailable("knowledge", str(exc)) from exc

    async def retrieve(self, query: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = options or {}
        limit = int(options.get("max_results", self.max_results))
        threshold = float(options.get("threshold", self.threshold))
        results = await self.search(query, limit=limit, collection=options.get("collection"))

        documents = []
        for item in results:
            score = float(item.get("score", item.get("similarity", 0.0)) or 0.0)
            if score < threshold:
                continue
            documents.append(
                {
                    "content": item.get("snippet") or item.get("content") or item.get("text", ""),
                    "score": score,
                    "source": item.get("path") or item.get("source") or item.get("title", "unknown"),
                }
            )
        documents = documents[:limit]
        confidence = sum(d["score"] for d in documents) / len(documents) if documents else 0.0
        return {
            "documents": documents,
            "confidence": max(0.0, min(confidence, 1.0)),
            "sources": [d["source"] for d in documents],
            "response": "\n\n".join(d["content"] for d in documents if d["content"]),
        }
