"""Per-discussion shared context and broadcast channels.

Each discussion owns exactly one ``DiscussionRecord``; only the coroutine
running that discussion mutates it, so no locking is needed.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import logging
import time

logger = logging.getLogger(__name__)


class DiscussionState:
    IDLE = "idle"
    INITIATED = "initiated"
    PHASES = "phase_execution"
    CONSENSUS = "consensus"
    DECIDED = "decided"


@dataclass
class DiscussionRecord:
    discussion_id: str
    task_type: str
    participants: List[str]
    state: str = DiscussionState.INITIATED
    current_phase: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    values: Dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "discussion_id": self.discussion_id,
            "task_type": self.task_type,
            "participants": list(self.participants),
            "state": self.state,
            "current_phase": self.current_phase,
            **self.values,
        }


class SharedContext:
    """Discussion id -> owned record."""

    def __init__(self) -> None:
        self._records: Dict[str, DiscussionRecord] = {}

    def open(self, discussion_id: str, task_type: str, participants: Iterable[str]) -> DiscussionRecord:
        if discussion_id in self._records:
            raise ValueError(f"Discussion already active: {discussion_id}")
        record = DiscussionRecord(discussion_id=discussion_id, task_type=task_type, participants=list(participants))
        self._records[discussion_id] = record
        return record

    def set_state(self, discussion_id: str, state: str, phase: Optional[str] = None) -> None:
        record = self._records.get(discussion_id)
        if record is None:
            return
        record.state = state
        if phase is not None:
            record.current_phase = phase

    def update(self, discussion_id: str, key: str, value: Any) -> None:
        record = self._records.get(discussion_id)
        if record is not None:
            record.values[key] = value

    def snapshot(self, discussion_id: str) -> Dict[str, Any]:
        record = self._records.get(discussion_id)
        return record.snapshot() if record else {}

    def close(self, discussion_id: str) -> Optional[DiscussionRecord]:
        return self._records.pop(discussion_id, None)

    def active(self) -> List[str]:
        return list(self._records)


@dataclass
class BroadcastChannel:
    name: str
    subscribers: frozenset[str]
    max_history: int
    history: deque = field(init=False)

    def __post_init__(self) -> None:
        self.history = deque(maxlen=self.max_history)

    def publish(self, sender: str, message: Dict[str, Any]) -> List[str]:
        """Record ``message`` and return the subscribers it reaches."""
        self.history.append({"sender": sender, "message": message, "ts": time.time()})
        return sorted(s for s in self.subscribers if s != sender)

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return list(self.history)[-limit:] if limit > 0 else []


class ChannelBoard:
    def __init__(self, channels: Iterable[BroadcastChannel] = ()) -> None:
        self._channels: Dict[str, BroadcastChannel] = {c.name: c for c in channels}

    @classmethod
    def default(cls, agent_ids: Iterable[str], coordinator_id: str) -> "ChannelBoard":
        everyone = frozenset(agent_ids) | {coordinator_id}
        return cls(
            [
                BroadcastChannel("general", everyone, 100),
                BroadcastChannel("urgent", everyone, 50),
                BroadcastChannel("knowledge_sharing", frozenset({"knowledge", "reasoning", coordinator_id}), 200),
            ]
        )

    def broadcast(self, channel: str, sender: str, message: Dict[str, Any]) -> List[str]:
        target = self._channels.get(channel)
        if target is None:
            logger.warning("Broadcast to unknown channel %s dropped", channel)
            return []
        return target.publish(sender, message)

    def channel(self, name: str) -> Optional[BroadcastChannel]:
        return self._channels.get(name)

    def names(self) -> List[str]:
        return list(self._channels)

    def clear(self) -> None:
        for channel in self._channels.values():
            channel.history.clear()
