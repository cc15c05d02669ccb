"""Task execution against the knowledge, reasoning and deliberation backends.

A task is owned by the coroutine that runs it. It moves ``pending ->
running -> completed | failed | cancelled`` and never leaves a terminal
status. Aggregate statistics are folded in once, at the terminal transition.
"""
from __future__ import annotations

from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Set
import asyncio
import logging
import time
import uuid

from concord.config import OrchestratorSettings
from concord.errors import (
    ConsensusFailure,
    InvalidTransitionError,
    SubsystemTimeout,
    SubsystemUnavailable,
    TaskCancelledError,
    UnknownStrategyError,
    UnknownWorkflowError,
    WorkflowStepFailure,
)
from concord.events import EventBus
from concord.router import Router, RoutingDecision, Target
from concord.scheduler import ScheduledJob, Scheduler
from concord.subsystems.base import DELIBERATION, KNOWLEDGE, REASONING, SubsystemRegistry

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    SINGLE = "single"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HYBRID = "hybrid"
    CONSENSUS = "consensus"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

_TRANSITIONS = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: TERMINAL_STATUSES,
}

# Workflow step kinds that are not subsystem names.
ROUTER_STEP = "router"
DYNAMIC_STEP = "dynamic"

Runner = Callable[["Task"], Awaitable["ExecutionResult"]]


@dataclass
class StepRecord:
    step_number: int
    system: str
    action: str
    execution_time_ms: float
    success: bool
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "step_number": self.step_number,
            "system": self.system,
            "action": self.action,
            "execution_time_ms": self.execution_time_ms,
            "success": self.success,
        }
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error
        return data


@dataclass
class Task:
    task_id: str
    request: str
    strategy: str
    options: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    steps: List[StepRecord] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    deadline: Optional[float] = None
    workflow: Optional[str] = None
    error: Optional[str] = None
    call_counts: Dict[str, int] = field(default_factory=dict)
    concurrency_at_start: int = 0

    def transition(self, status: TaskStatus) -> None:
        if status not in _TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(f"Task {self.task_id}: {self.status.value} -> {status.value}")
        self.status = status

    @property
    def execution_time_ms(self) -> float:
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else self.start_time
        return (end - self.start_time) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "request": self.request[:200],
            "strategy": self.strategy,
            "workflow": self.workflow,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "systems_used": sorted(self.results),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "execution_time_ms": self.execution_time_ms,
            "error": self.error,
        }


@dataclass(frozen=True)
class WorkflowStep:
    """One workflow step.

    ``system`` is a subsystem name, ``"router"`` or ``"dynamic"``. A parallel
    step lists its subsystems in ``systems`` instead.
    """

    system: Optional[str] = None
    systems: tuple[str, ...] = ()
    action: str = ""

    def __post_init__(self) -> None:
        if bool(self.system) == bool(self.systems):
            raise ValueError("a workflow step needs exactly one of system or systems")

    @property
    def parallel(self) -> bool:
        return bool(self.systems)

    @property
    def label(self) -> str:
        return "+".join(self.systems) if self.systems else str(self.system)


@dataclass(frozen=True)
class Workflow:
    name: str
    steps: tuple[WorkflowStep, ...]
    timeout: float
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("workflow name is required")
        if not self.steps:
            raise ValueError(f"workflow {self.name} has no steps")
        if self.timeout <= 0:
            raise ValueError(f"workflow {self.name} timeout must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "timeout": self.timeout,
            "steps": [
                {"system": s.label, "parallel": s.parallel, "action": s.action} for s in self.steps
            ],
        }


DEFAULT_WORKFLOWS: tuple[Workflow, ...] = (
    Workflow(
        "research",
        (
            WorkflowStep(KNOWLEDGE, action="retrieve"),
            WorkflowStep(REASONING, action="analyze"),
            WorkflowStep(DELIBERATION, action="deliberate"),
        ),
        timeout=60.0,
        description="Retrieve, analyze, then deliberate on the findings",
    ),
    Workflow(
        "quick_answer",
        (
            WorkflowStep(ROUTER_STEP, action="route"),
            WorkflowStep(DYNAMIC_STEP, action="execute"),
        ),
        timeout=15.0,
        description="Route once and answer with the chosen subsystem",
    ),
    Workflow(
        "comprehensive",
        (
            WorkflowStep(systems=(KNOWLEDGE, REASONING), action="gather"),
            WorkflowStep(DELIBERATION, action="deliberate"),
        ),
        timeout=90.0,
        description="Gather knowledge and reasoning together, then deliberate",
    ),
    Workflow(
        "validation",
        (
            WorkflowStep(ROUTER_STEP, action="route"),
            WorkflowStep(DYNAMIC_STEP, action="execute"),
            WorkflowStep(systems=(KNOWLEDGE, REASONING), action="validate"),
        ),
        timeout=45.0,
        description="Answer with the routed subsystem and cross-check it",
    ),
)


@dataclass
class ExecutionResult:
    task_id: str
    result: Any
    metadata: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"task_id": self.task_id, "result": self.result, "metadata": self.metadata}


def extract_answer(result: Any) -> tuple[str, float]:
    """Normalized answer text and confidence from any subsystem output."""
    if isinstance(result, str):
        return result, 0.5
    if isinstance(result, Mapping):
        for key in ("final_answer", "answer", "response", "text"):
            value = result.get(key)
            if isinstance(value, str) and value:
                confidence = result.get("confidence")
                return value, float(confidence) if isinstance(confidence, (int, float)) else 0.5
    return str(result), 0.5


def _is_error(result: Any) -> bool:
    return isinstance(result, Mapping) and "error" in result and set(result) <= {"error", "system"}


def consensus_vote(results: Sequence[Dict[str, Any]], target_count: int) -> Dict[str, Any]:
    """Pick the majority answer among ``results``, else the most confident one.

    ``results`` holds ``{system, result}`` entries; error entries are ignored.
    A majority needs more than half of ``target_count`` respondents.
    """
    valid = [r for r in results if not _is_error(r["result"])]
    if not valid:
        raise ConsensusFailure("No valid results for consensus")

    groups: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    answers = []
    for entry in valid:
        text, confidence = extract_answer(entry["result"])
        key = text.strip().lower()
        item = {"system": entry["system"], "text": text, "confidence": confidence, "result": entry["result"]}
        groups.setdefault(key, []).append(item)
        answers.append(item)

    total = max(target_count, 1)
    leader_key, leader = max(groups.items(), key=lambda kv: len(kv[1]))
    if len(leader) > total / 2:
        chosen = leader[0]
        agreement = len(leader) / total
        method = "majority"
    else:
        chosen = max(answers, key=lambda a: a["confidence"])
        agreement = len(groups[chosen["text"].strip().lower()]) / total
        method = "confidence"

    return {
        "type": Strategy.CONSENSUS.value,
        "method": method,
        "consensus_result": chosen["result"],
        "system": chosen["system"],
        "answer": chosen["text"],
        "confidence": chosen["confidence"],
        "agreement": agreement,
        "all_results": list(results),
    }


class ExecutionOrchestrator:
    """Runs tasks and workflows against a ``SubsystemRegistry``.

    Active tasks are capped at ``max_concurrent_tasks``; extra submissions
    wait in a FIFO queue that ``drain_queue`` empties. ``attach`` registers
    queue draining and completed-task cleanup on a scheduler.
    """

    def __init__(
        self,
        subsystems: SubsystemRegistry,
        router: Optional[Router] = None,
        settings: Optional[OrchestratorSettings] = None,
        events: Optional[EventBus] = None,
        workflows: Optional[Iterable[Workflow]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.subsystems = subsystems
        self.router = router
        self.settings = settings or OrchestratorSettings()
        self.events = events
        self._clock = clock
        self._workflows: Dict[str, Workflow] = {}
        for workflow in DEFAULT_WORKFLOWS if workflows is None else workflows:
            self._workflows[workflow.name] = workflow
        self._active: Dict[str, Task] = {}
        self._queue: Deque[tuple[Task, Runner, asyncio.Future]] = deque()
        self._completed: "OrderedDict[str, Task]" = OrderedDict()
        self._runners: Set[asyncio.Task] = set()
        self._jobs: List[ScheduledJob] = []
        self.stats: Dict[str, Any] = {
            "total_tasks": 0,
            "completed_tasks": 0,
            "failed_tasks": 0,
            "cancelled_tasks": 0,
            "average_execution_time_ms": 0.0,
            "system_calls": {},
            "workflows_executed": 0,
            "concurrent_peak": 0,
        }

    # -- lifecycle ---------------------------------------------------------

    def attach(self, scheduler: Scheduler) -> None:
        if self._jobs:
            return
        self._jobs = [
            scheduler.every(self.settings.queue_drain_seconds, self.drain_queue, "orchestrator-queue"),
            scheduler.every(self.settings.cleanup_interval_seconds, self.cleanup_completed, "orchestrator-cleanup"),
        ]

    def detach(self, scheduler: Scheduler) -> None:
        for job in self._jobs:
            scheduler.cancel(job)
        self._jobs = []

    async def shutdown(self) -> None:
        for task_id in list(self._active):
            self.cancel_task(task_id)
        while self._queue:
            task, _, future = self._queue.popleft()
            self._cancel_pending(task, future)
        runners = list(self._runners)
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        logger.info("Orchestrator shut down")

    def _publish(self, name: str, **data: Any) -> None:
        if self.events is not None:
            self.events.publish(name, **data)

    # -- workflows ---------------------------------------------------------

    def add_workflow(self, workflow: Workflow) -> None:
        if workflow.name in self._workflows:
            raise ValueError(f"Workflow already exists: {workflow.name}")
        for step in workflow.steps:
            for name in step.systems or (step.system,):
                if name in (ROUTER_STEP, DYNAMIC_STEP) and step.parallel:
                    raise ValueError(f"{name} cannot run as part of a parallel step")
        self._workflows[workflow.name] = workflow

    def remove_workflow(self, name: str) -> bool:
        return self._workflows.pop(name, None) is not None

    def workflows(self) -> List[Workflow]:
        return list(self._workflows.values())

    def get_workflow(self, name: str) -> Workflow:
        workflow = self._workflows.get(name)
        if workflow is None:
            raise UnknownWorkflowError(name)
        return workflow

    # -- task bookkeeping --------------------------------------------------

    def _new_task(self, request: str, strategy: str, options: Dict[str, Any], workflow: Optional[str] = None) -> Task:
        return Task(
            task_id=str(options.get("task_id") or uuid.uuid4()),
            request=request,
            strategy=strategy,
            options=options,
            created_at=self._clock(),
            workflow=workflow,
        )

    def _start(self, task: Task, budget: Optional[float]) -> None:
        task.transition(TaskStatus.RUNNING)
        task.start_time = self._clock()
        if budget is not None:
            task.deadline = task.start_time + budget
        self._active[task.task_id] = task
        task.concurrency_at_start = len(self._active)

    def _finish(self, task: Task, status: TaskStatus, error: Optional[str] = None) -> None:
        task.transition(status)
        task.end_time = self._clock()
        task.error = error
        self._active.pop(task.task_id, None)
        self._completed[task.task_id] = task
        while len(self._completed) > self.settings.completed_limit:
            self._completed.popitem(last=False)
        self._fold_stats(task)

    def _fold_stats(self, task: Task) -> None:
        stats = self.stats
        stats["total_tasks"] += 1
        stats["concurrent_peak"] = max(stats["concurrent_peak"], task.concurrency_at_start)
        for system, count in task.call_counts.items():
            stats["system_calls"][system] = stats["system_calls"].get(system, 0) + count
        if task.status is TaskStatus.COMPLETED:
            stats["completed_tasks"] += 1
            n = stats["completed_tasks"]
            stats["average_execution_time_ms"] = (
                stats["average_execution_time_ms"] * (n - 1) + task.execution_time_ms
            ) / n
            if task.workflow is not None:
                stats["workflows_executed"] += 1
        elif task.status is TaskStatus.FAILED:
            stats["failed_tasks"] += 1
        else:
            stats["cancelled_tasks"] += 1

    def _cancel_pending(self, task: Task, future: asyncio.Future) -> None:
        task.transition(TaskStatus.CANCELLED)
        task.end_time = self._clock()
        self._completed[task.task_id] = task
        self._fold_stats(task)
        if not future.done():
            future.set_exception(TaskCancelledError(task.task_id))
        self._publish("task_cancelled", task_id=task.task_id, status="pending")

    def cancel_task(self, task_id: str) -> bool:
        """Cancel an active or queued task.

        In-flight subsystem calls are left to finish; their results are
        discarded and the caller receives ``TaskCancelledError``.
        """
        task = self._active.get(task_id)
        if task is not None:
            self._finish(task, TaskStatus.CANCELLED, "cancelled")
            logger.info("Cancelled task %s", task_id)
            self._publish("task_cancelled", task_id=task_id, status="running")
            return True
        for index, (queued, _, future) in enumerate(self._queue):
            if queued.task_id == task_id:
                del self._queue[index]
                self._cancel_pending(queued, future)
                return True
        return False

    def get_active_tasks(self) -> List[Dict[str, Any]]:
        return [task.to_dict() for task in self._active.values()]

    def get_task(self, task_id: str) -> Optional[Task]:
        task = self._active.get(task_id) or self._completed.get(task_id)
        if task is not None:
            return task
        for queued, _, _ in self._queue:
            if queued.task_id == task_id:
                return queued
        return None

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def cleanup_completed(self) -> int:
        cutoff = self._clock() - self.settings.completed_retention_seconds
        stale = [
            tid for tid, task in self._completed.items()
            if task.end_time is not None and task.end_time < cutoff
        ]
        for tid in stale:
            del self._completed[tid]
        if stale:
            logger.debug("Cleaned up %d completed tasks", len(stale))
        return len(stale)

    # -- admission ---------------------------------------------------------

    def _has_capacity(self) -> bool:
        return len(self._active) < self.settings.max_concurrent_tasks

    async def _admit(self, task: Task, run: Runner) -> ExecutionResult:
        if self._has_capacity() and not self._queue:
            return await run(task)
        # Resolved by drain_queue, which runs the task on the caller's behalf.
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.append((task, run, future))
        logger.info("Task %s queued (%d waiting)", task.task_id, len(self._queue))
        self._publish("task_queued", task_id=task.task_id, queue_length=len(self._queue))
        try:
            return await future
        except asyncio.CancelledError:
            if any(queued.task_id == task.task_id for queued, _, _ in self._queue):
                self.cancel_task(task.task_id)
            raise

    def drain_queue(self) -> int:
        """Start queued tasks in FIFO order while capacity allows."""
        started = 0
        while self._queue and self._has_capacity():
            task, run, future = self._queue.popleft()
            if future.done():
                # The caller stopped waiting before the task could start.
                if task.status is TaskStatus.PENDING:
                    self._cancel_pending(task, future)
                continue
            # Reserve the slot before the runner gets scheduled.
            self._start(task, self._budget(task))
            runner = asyncio.ensure_future(self._resolve(run(task), future))
            self._runners.add(runner)
            runner.add_done_callback(self._runners.discard)
            started += 1
        return started

    @staticmethod
    async def _resolve(coro: Awaitable[ExecutionResult], future: asyncio.Future) -> None:
        try:
            result = await coro
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)

    def _budget(self, task: Task) -> Optional[float]:
        timeout = task.options.get("timeout")
        if timeout is None and task.workflow is not None:
            timeout = self._workflows[task.workflow].timeout
        return float(timeout) if timeout is not None else None

    def _ensure_started(self, task: Task) -> None:
        if task.status is TaskStatus.PENDING:
            self._start(task, self._budget(task))

    def _check_cancelled(self, task: Task) -> None:
        if task.status is TaskStatus.CANCELLED:
            raise TaskCancelledError(task.task_id)

    # -- subsystem calls ---------------------------------------------------

    def _call_timeout(self, task: Task, system: str) -> float:
        timeout = float(task.options.get("call_timeout") or self.settings.task_timeout_seconds)
        if task.deadline is None:
            return timeout
        remaining = task.deadline - self._clock()
        if remaining <= 0:
            raise SubsystemTimeout(system, 0.0)
        return min(timeout, remaining)

    async def _call(
        self,
        task: Task,
        system: str,
        text: str,
        context: Optional[Dict[str, Any]] = None,
        sources: Optional[List[Any]] = None,
    ) -> Any:
        self._check_cancelled(task)
        kind, backend = self.subsystems.resolve(system)
        timeout = self._call_timeout(task, system)
        context = dict(context or {})
        if kind == KNOWLEDGE:
            options = {"max_results": task.options.get("max_results", 5), **task.options.get("knowledge", {})}
            call = backend.retrieve(text, options)
        elif kind == REASONING:
            payload = {"text": text, "context": context, "sources": list(sources or [])}
            call = backend.process(payload, task.options.get("reasoning"))
        else:
            call = backend.process(text, context)

        task.call_counts[system] = task.call_counts.get(system, 0) + 1
        try:
            result = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise SubsystemTimeout(system, timeout) from exc
        if task.status is TaskStatus.RUNNING:
            task.results[system] = result
        return result

    async def _call_settled(self, task: Task, system: str, text: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            return {"system": system, "result": await self._call(task, system, text, context)}
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Subsystem %s failed: %s", system, exc)
            return {"system": system, "result": {"error": str(exc), "system": system}}

    # -- strategies --------------------------------------------------------

    async def _single(self, task: Task, targets: Sequence[str], context: Dict[str, Any]) -> Any:
        if len(targets) != 1:
            raise ValueError("single strategy takes exactly one target")
        return await self._call(task, targets[0], task.request, context)

    async def _sequential(self, task: Task, targets: Sequence[str], context: Dict[str, Any]) -> Dict[str, Any]:
        text = task.request
        step_context = dict(context)
        results: List[Dict[str, Any]] = []
        result: Any = None
        for system in targets:
            result = await self._call(task, system, text, step_context)
            results.append({"system": system, "result": result})
            step_context = {**context, "previous_result": result, "previous_system": system}
            if isinstance(result, str):
                text = result
            elif isinstance(result, Mapping) and isinstance(result.get("context"), str):
                text = result["context"]
        return {"type": Strategy.SEQUENTIAL.value, "results": results, "final_result": result}

    async def _parallel(self, task: Task, targets: Sequence[str], context: Dict[str, Any]) -> Dict[str, Any]:
        results = await asyncio.gather(*(self._call_settled(task, s, task.request, context) for s in targets))
        successful = sum(1 for r in results if not _is_error(r["result"]))
        return {"type": Strategy.PARALLEL.value, "results": list(results), "successful": successful}

    async def _hybrid(self, task: Task, targets: Sequence[str], context: Dict[str, Any]) -> Dict[str, Any]:
        knowledge = await self._call(task, KNOWLEDGE, task.request, context)
        sources = list(knowledge.get("sources") or knowledge.get("documents") or [])
        reasoning_context = {**context, "knowledge": knowledge.get("response") or knowledge.get("documents")}
        reasoning = await self._call(task, REASONING, task.request, reasoning_context, sources)
        k_conf = knowledge.get("confidence")
        r_conf = reasoning.get("confidence") if isinstance(reasoning, Mapping) else None
        final_answer, _ = extract_answer(reasoning)
        return {
            "type": Strategy.HYBRID.value,
            "knowledge_result": knowledge,
            "reasoning_result": reasoning,
            "final_answer": final_answer,
            "sources": sources,
            "confidence": min(
                k_conf if isinstance(k_conf, (int, float)) else 0.8,
                r_conf if isinstance(r_conf, (int, float)) else 0.8,
            ),
        }

    async def _consensus(self, task: Task, targets: Sequence[str], context: Dict[str, Any]) -> Dict[str, Any]:
        gathered = await self._parallel(task, targets, context)
        return consensus_vote(gathered["results"], len(targets))

    def _strategy(self, name: str) -> Callable[[Task, Sequence[str], Dict[str, Any]], Awaitable[Any]]:
        table = {
            Strategy.SINGLE.value: self._single,
            Strategy.SEQUENTIAL.value: self._sequential,
            Strategy.PARALLEL.value: self._parallel,
            Strategy.HYBRID.value: self._hybrid,
            Strategy.CONSENSUS.value: self._consensus,
        }
        handler = table.get(name)
        if handler is None:
            raise UnknownStrategyError(f"Unknown execution strategy: {name}")
        return handler

    def _plan(self, request: str, options: Dict[str, Any]) -> tuple[str, List[str], Optional[RoutingDecision]]:
        """Resolve ``(strategy, targets, routing decision)`` for a task."""
        strategy = options.get("strategy")
        targets = list(options.get("targets") or ([options["target"]] if options.get("target") else []))
        decision: Optional[RoutingDecision] = None
        supplied = options.pop("routing_decision", None)

        if strategy is None or (strategy == Strategy.SINGLE.value and not targets):
            if isinstance(supplied, RoutingDecision):
                decision = supplied
                routed = decision.target
            elif self.router is not None:
                decision = self.router.route(request, options.get("context") or {})
                routed = decision.target
            else:
                routed = Target.REASONING
            if strategy is None and routed is Target.HYBRID:
                strategy = Strategy.HYBRID.value
            else:
                strategy = strategy or Strategy.SINGLE.value
                targets = [REASONING if routed is Target.HYBRID else routed.value]

        if isinstance(strategy, Strategy):
            strategy = strategy.value
        self._strategy(strategy)
        if strategy == Strategy.HYBRID.value:
            targets = [KNOWLEDGE, REASONING]
        elif not targets:
            targets = self.subsystems.available()
        return strategy, targets, decision

    # -- entry points ------------------------------------------------------

    async def execute_task(self, request: str, options: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """Run ``request`` with the strategy named in ``options``.

        Options: ``strategy``, ``targets`` (or ``target``), ``context``,
        ``timeout`` (overall budget), ``call_timeout``, ``max_results``.
        Without a strategy the router picks one, unless ``routing_decision``
        already carries its answer.
        """
        options = dict(options or {})
        strategy, targets, decision = self._plan(request, options)
        options["targets"] = targets
        task = self._new_task(request, strategy, options)
        if decision is not None:
            task.options["routing"] = decision.to_dict()
        return await self._admit(task, self._run_task)

    async def _run_task(self, task: Task) -> ExecutionResult:
        self._ensure_started(task)
        handler = self._strategy(task.strategy)
        targets = task.options["targets"]
        logger.debug("Task %s: %s on %s", task.task_id, task.strategy, targets)
        try:
            result = await handler(task, targets, dict(task.options.get("context") or {}))
        except asyncio.CancelledError:
            if task.status is TaskStatus.RUNNING:
                self._finish(task, TaskStatus.CANCELLED, "cancelled")
            raise
        except Exception as exc:
            self._check_cancelled(task)
            self._finish(task, TaskStatus.FAILED, str(exc))
            logger.warning("Task %s failed: %s", task.task_id, exc)
            self._publish("task_failed", task_id=task.task_id, strategy=task.strategy, error=str(exc))
            raise
        self._check_cancelled(task)
        self._finish(task, TaskStatus.COMPLETED)
        metadata = {
            "execution_time_ms": task.execution_time_ms,
            "strategy": task.strategy,
            "targets": list(targets),
            "systems_used": sorted(task.results),
        }
        if "routing" in task.options:
            metadata["routing"] = task.options["routing"]
        self._publish("task_completed", task_id=task.task_id, **metadata)
        return ExecutionResult(task.task_id, result, metadata)

    async def execute_workflow(self, name: str, request: str, options: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """Run the named workflow step by step under its deadline.

        A failing step is recorded, marks the task failed and raises
        ``WorkflowStepFailure``; later steps never run.
        """
        workflow = self.get_workflow(name)
        task = self._new_task(request, "workflow", dict(options or {}), workflow=name)
        return await self._admit(task, self._run_workflow)

    async def _run_workflow(self, task: Task) -> ExecutionResult:
        self._ensure_started(task)
        workflow = self._workflows[task.workflow]
        logger.info("Workflow %s started (task %s)", workflow.name, task.task_id)
        context: Dict[str, Any] = dict(task.options.get("context") or {})
        context["step_results"] = []
        previous: Any = None

        for number, step in enumerate(workflow.steps, start=1):
            started = self._clock()
            try:
                result = await self._run_step(task, step, context)
            except asyncio.CancelledError:
                if task.status is TaskStatus.RUNNING:
                    self._finish(task, TaskStatus.CANCELLED, "cancelled")
                raise
            except Exception as exc:
                self._check_cancelled(task)
                task.steps.append(
                    StepRecord(number, step.label, step.action, (self._clock() - started) * 1000, False, error=str(exc))
                )
                self._finish(task, TaskStatus.FAILED, str(exc))
                logger.warning("Workflow %s failed at step %d (%s): %s", workflow.name, number, step.label, exc)
                self._publish(
                    "task_failed", task_id=task.task_id, workflow=workflow.name, step=number, error=str(exc)
                )
                raise WorkflowStepFailure(number, step.label, exc) from exc
            self._check_cancelled(task)
            task.steps.append(StepRecord(number, step.label, step.action, (self._clock() - started) * 1000, True, result))
            previous = result
            context["previous_result"] = result
            context["step_results"].append({"step": number, "system": step.label, "result": result})

        self._finish(task, TaskStatus.COMPLETED)
        metadata = {
            "execution_time_ms": task.execution_time_ms,
            "workflow": workflow.name,
            "steps_executed": len(task.steps),
            "steps": [s.to_dict() for s in task.steps],
            "systems_used": sorted(task.results),
        }
        logger.info("Workflow %s completed in %.1f ms", workflow.name, task.execution_time_ms)
        self._publish(
            "workflow_completed",
            task_id=task.task_id,
            workflow=workflow.name,
            execution_time_ms=task.execution_time_ms,
            steps_executed=len(task.steps),
        )
        return ExecutionResult(task.task_id, previous, metadata)

    async def _run_step(self, task: Task, step: WorkflowStep, context: Dict[str, Any]) -> Any:
        if task.deadline is not None and task.deadline - self._clock() <= 0:
            raise SubsystemTimeout(step.label, 0.0)
        step_context = {k: v for k, v in context.items() if k != "step_results"}

        if step.parallel:
            gathered = await self._parallel(task, step.systems, step_context)
            return gathered

        if step.system == ROUTER_STEP:
            if self.router is None:
                raise SubsystemUnavailable(ROUTER_STEP, "no router configured")
            decision = self.router.route(task.request, task.options.get("context") or {})
            context["routing_decision"] = decision
            return decision.to_dict()

        if step.system == DYNAMIC_STEP:
            decision = context.get("routing_decision")
            if not isinstance(decision, RoutingDecision):
                raise ValueError("dynamic step requires a preceding router step")
            if decision.target is Target.HYBRID:
                return await self._hybrid(task, (KNOWLEDGE, REASONING), step_context)
            return await self._call(task, decision.target.value, task.request, step_context)

        return await self._call(task, step.system, task.request, step_context)

    # -- read-only accessors -----------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "system_calls": dict(self.stats["system_calls"]),
            "active_tasks": len(self._active),
            "queued_tasks": len(self._queue),
            "completed_retained": len(self._completed),
            "workflows": len(self._workflows),
        }

    def get_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return [task.to_dict() for task in list(self._completed.values())[-limit:]]
