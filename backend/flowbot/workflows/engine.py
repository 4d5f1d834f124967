# /flowbot/workflows/engine.py

"""
Workflow interpreter.

One call to ``handle_event`` processes one inbound chat event for one
session (project + chat) while holding that session's lock:

- a waiting execution is resumed when the event satisfies its wait,
  ignored (optionally re-prompting) when it does not;
- otherwise the active flow version's triggers are matched and a new
  execution starts at the first matching trigger;
- nodes are then executed one step at a time until the flow suspends,
  terminates, fails or reaches the per-event step limit.

Every step is persisted (step log + execution state, as one unit) before
the next node runs, so ``current_node_id`` always names the last logged
step. Domain failures (``WorkflowError``) end the execution as failed;
any other exception propagates and leaves the last persisted state intact.
"""

import time
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Optional, TypedDict

import structlog

from flowbot.models.execution import (
    EventKind,
    Execution,
    ExecutionStatus,
    InboundEvent,
    RestartOptions,
    StepLog,
    StepStatus,
)
from flowbot.models.flow import FlowVersion
from flowbot.models.nodes import FALLBACK_HANDLE, BaseNode, EntryTriggerNode
from flowbot.services.query_executor import QueryExecutor
from flowbot.services.repositories import ExecutionRepository, FlowRepository
from flowbot.services.user_variables import UserVariablesService
from flowbot.services.webhooks import WebhookClient
from flowbot.utils.clock import utcnow
from flowbot.utils.metrics import (
    event_latency_histogram,
    executions_finished_counter,
    executions_started_counter,
    ignored_events_counter,
    steps_counter,
)
from flowbot.workflows.cache import VersionCache
from flowbot.workflows.context import ExecutionContext
from flowbot.workflows.exceptions import (
    ActionFailure,
    ExecutionNotFound,
    InvalidRestart,
    MissingEdge,
    StepLimitExceeded,
    VersionNotFound,
    WorkflowError,
)
from flowbot.workflows.graph import FlowGraph
from flowbot.workflows.handlers.base import ConditionHandler, TriggerHandler, WaitingMixin
from flowbot.workflows.handlers.registry import HandlerRegistry
from flowbot.workflows.results import Advance, Failed, StepResult, Suspend, Terminate
from flowbot.workflows.sessions import SessionLocks, session_key

logger = structlog.get_logger(__name__)


class EngineResult(TypedDict):
    """Outcome of processing one event (or one timeout / restart)."""
    handled: bool
    reason: Optional[str]
    execution_id: Optional[str]
    status: Optional[str]
    steps: int


class WorkflowEngine:
    def __init__(
        self,
        flows: FlowRepository,
        executions: ExecutionRepository,
        registry: HandlerRegistry,
        queries: QueryExecutor,
        user_variables: UserVariablesService,
        locks: SessionLocks,
        cache: VersionCache,
        max_steps: int = 200,
        max_node_visits: int = 100,
        clock: Callable[[], datetime] = utcnow,
        webhooks: Optional[WebhookClient] = None,
    ):
        self.flows = flows
        self.executions = executions
        self.registry = registry
        self.queries = queries
        self.user_variables = user_variables
        self.locks = locks
        self.cache = cache
        self.max_steps = max_steps
        self.max_node_visits = min(max_node_visits, max_steps)
        self.clock = clock
        self.webhooks = webhooks

    # ---------------- Public API ---------------- #

    async def handle_event(self, project_id: str, chat_id: str, event: InboundEvent) -> EngineResult:
        if event.kind in (EventKind.TIMEOUT, EventKind.RESTART):
            raise ValueError(f"'{event.kind.value}' events are raised by the runtime, not delivered")
        log = logger.bind(project_id=project_id, chat_id=chat_id, event_kind=event.kind.value)
        with event_latency_histogram.time():
            async with self.locks.hold(session_key(project_id, chat_id)):
                return await self._handle_locked(project_id, chat_id, event, log)

    async def handle_timeout(self, execution_id: str) -> EngineResult:
        """Wakes a waiting execution whose deadline has passed (called by the sweep job)."""
        execution = await self.executions.get(execution_id)
        if execution is None:
            return self._ignored("execution_not_found", logger)
        log = logger.bind(project_id=execution.project_id, chat_id=execution.chat_id, execution_id=execution.id)
        async with self.locks.hold(session_key(execution.project_id, execution.chat_id)):
            execution = await self.executions.get(execution_id)
            if (
                execution is None
                or execution.status != ExecutionStatus.WAITING
                or execution.wait_deadline is None
                or execution.wait_deadline > self.clock()
            ):
                return self._ignored("not_due", log, execution)

            loaded = await self._load_waiting_node(execution, log)
            if isinstance(loaded, dict):
                return loaded
            graph, node, handler = loaded
            event = InboundEvent(kind=EventKind.TIMEOUT)
            context = await self._context(execution, graph, event, log)
            log.info("wait_timed_out", node_id=node.id, wait_type=execution.wait_type)
            self._mark_running(execution)
            result = await handler.on_timeout(node, context)
            return await self._run(execution, graph, event, node.id, log, first_result=result)

    async def restart(self, execution_id: str, options: RestartOptions) -> EngineResult:
        """
        Re-runs an execution from the entry trigger, from ``options.from_node_id``
        or (``skip_completed``) from the node where it stopped.
        Step numbering continues; earlier step logs are kept.
        """
        execution = await self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(f"Execution '{execution_id}' not found")
        log = logger.bind(project_id=execution.project_id, chat_id=execution.chat_id, execution_id=execution.id)

        async with self.locks.hold(session_key(execution.project_id, execution.chat_id)):
            execution = await self.executions.get(execution_id)
            graph = await self._graph_for(execution)

            if options.from_node_id:
                if graph.node(options.from_node_id) is None:
                    raise InvalidRestart(f"Node '{options.from_node_id}' does not exist in version {execution.version}")
                start = options.from_node_id
            elif options.skip_completed and execution.current_node_id:
                start = execution.current_node_id
            else:
                start = graph.entry_node_id or execution.trigger_node_id
            if not start:
                raise InvalidRestart("Execution has no entry node to restart from")

            other = await self.executions.find_active(execution.project_id, execution.chat_id)
            if other is not None and other.id != execution.id:
                await self._cancel(other, "Superseded by restart of another execution", log)

            self._mark_running(execution)
            execution.error = None
            execution.error_type = None
            execution.finished_at = None
            execution.next_node_id = start
            if options.reset_variables:
                execution.variables = self._initial_variables(graph.model, execution.chat_id)
            await self.executions.save(execution)
            log.info("execution_restarted", start_node_id=start, reset_variables=options.reset_variables)
            return await self._run(execution, graph, InboundEvent(kind=EventKind.RESTART), start, log)

    async def cancel(self, execution_id: str, reason: str = "Cancelled by operator") -> Execution:
        execution = await self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(f"Execution '{execution_id}' not found")
        async with self.locks.hold(session_key(execution.project_id, execution.chat_id)):
            execution = await self.executions.get(execution_id)
            if not execution.status.is_terminal:
                await self._cancel(execution, reason, logger.bind(execution_id=execution_id))
            return execution

    async def active_graph(self, project_id: str) -> Optional[FlowGraph]:
        async def load() -> Optional[FlowGraph]:
            version = await self.flows.get_active_version(project_id)
            return FlowGraph(version) if version else None
        return await self.cache.get_or_load(project_id, load)

    # ---------------- Event routing ---------------- #

    async def _handle_locked(self, project_id: str, chat_id: str, event: InboundEvent, log) -> EngineResult:
        active = await self.active_graph(project_id)
        execution = await self.executions.find_active(project_id, chat_id)

        if execution is not None:
            log = log.bind(execution_id=execution.id)
            preempting = self._match_trigger(active, event) if active and event.kind == EventKind.COMMAND else None
            if preempting is None:
                return await self._continue(execution, event, log)
            await self._cancel(execution, f"Superseded by command {event.command}", log)

        if active is None:
            return self._ignored("no_active_flow", log)
        trigger = self._match_trigger(active, event)
        if trigger is None:
            return self._ignored("no_matching_trigger", log)

        execution = await self._start(active, trigger, chat_id, event, log)
        log = log.bind(execution_id=execution.id)
        try:
            first = active.next_node_id(trigger.id, None)
        except MissingEdge as e:
            return await self._fail_at(execution, trigger, e, log, steps=0)
        return await self._run(execution, active, event, first, log)

    def _match_trigger(self, graph: FlowGraph, event: InboundEvent) -> Optional[BaseNode]:
        """First matching trigger in declaration order; catch-all entry triggers are tried last."""
        specific, catch_all = [], []
        for node in graph.triggers():
            (catch_all if isinstance(node, EntryTriggerNode) else specific).append(node)
        for node in specific + catch_all:
            handler = self.registry.get(node.type)
            if isinstance(handler, TriggerHandler) and handler.matches(node, event):
                return node
        return None

    async def _continue(self, execution: Execution, event: InboundEvent, log) -> EngineResult:
        if execution.status == ExecutionStatus.RUNNING:
            # A previous invocation stopped between steps; carry on from the persisted position
            log.warning("continuing_interrupted_execution", next_node_id=execution.next_node_id)
            try:
                graph = await self._graph_for(execution)
            except VersionNotFound as e:
                return await self._fail_without_node(execution, e, log)
            self._remember_event(execution, event)
            return await self._run(execution, graph, event, execution.next_node_id, log)

        loaded = await self._load_waiting_node(execution, log)
        if isinstance(loaded, dict):
            return loaded
        graph, node, handler = loaded
        context = await self._context(execution, graph, event, log)

        if not handler.accepts(node, event):
            if handler.falls_back_on_mismatch(node) and graph.has_handle(node.id, FALLBACK_HANDLE):
                log.info("wait_mismatch_fallback", node_id=node.id, wait_type=execution.wait_type)
                self._mark_running(execution)
                self._remember_event(execution, event)
                return await self._run(execution, graph, event, node.id, log,
                                       first_result=handler.fallback(), first_status=StepStatus.SKIPPED)
            reply = handler.mismatch_reply(node)
            if reply:
                try:
                    await context.send_message(await context.render(reply), node_id=node.id)
                except ActionFailure as e:
                    log.warning("reprompt_failed", node_id=node.id, error=e.message)
            return self._ignored("wait_mismatch", log, execution)

        self._mark_running(execution)
        self._remember_event(execution, event)
        result = await handler.resume(node, context, event)
        return await self._run(execution, graph, event, node.id, log, first_result=result)

    # ---------------- Interpreter loop ---------------- #

    async def _run(self, execution: Execution, graph: FlowGraph, event: InboundEvent, node_id: Optional[str], log,
                   first_result: Optional[StepResult] = None, first_status: Optional[StepStatus] = None) -> EngineResult:
        context = await self._context(execution, graph, event, log)
        visits: Counter = Counter()
        steps = 0
        pending = first_result

        while True:
            if node_id is None:
                # Reached only when the trigger itself has no successor
                execution.status = ExecutionStatus.COMPLETED
                execution.finished_at = self.clock()
                execution.next_node_id = None
                last = graph.node(execution.current_node_id or "")
                if last is None:
                    execution.updated_at = execution.finished_at
                    await self.executions.save(execution)
                    return self._finished(execution, steps, log)
                steps += 1
                await self._record(execution, last, StepStatus.COMPLETED, "terminate", log,
                                   message="No outgoing connection")
                return self._finished(execution, steps, log)

            node = graph.node(node_id)
            if node is None:
                error = MissingEdge(execution.current_node_id or node_id, None, detail=f"a connection to missing node '{node_id}'")
                return await self._fail_without_node(execution, error, log, steps=steps)

            if pending is None and (steps >= self.max_steps or visits[node_id] >= self.max_node_visits):
                limit = (f"Step limit of {self.max_steps} reached" if steps >= self.max_steps
                         else f"Node '{node_id}' visited {self.max_node_visits} times in one event")
                return await self._fail_at(execution, node, StepLimitExceeded(limit, node_id=node_id), log, steps)

            visits[node_id] += 1
            started = time.perf_counter()
            if pending is not None:
                result, status_override, pending = pending, first_status, None
            else:
                result, status_override = await self._execute_node(node, context), None
            duration_ms = (time.perf_counter() - started) * 1000
            steps += 1

            if isinstance(result, Advance):
                try:
                    if result.target is not None:
                        if graph.node(result.target) is None:
                            raise MissingEdge(node.id, None, detail=f"a jump to missing node '{result.target}'")
                        next_id = result.target
                    else:
                        next_id = graph.next_node_id(node.id, result.handle)
                except MissingEdge as e:
                    return await self._fail_at(execution, node, e, log, steps, duration_ms, counted=True)

                status = status_override or (StepStatus.ERROR if result.error else StepStatus.COMPLETED)
                execution.current_node_id = node.id
                execution.next_node_id = next_id
                if next_id is None:
                    execution.status = ExecutionStatus.COMPLETED
                    execution.finished_at = self.clock()
                await self._record(execution, node, status, "advance", log, handle=result.handle,
                                   message=result.error, data=result.data, duration_ms=duration_ms)
                if next_id is None:
                    return self._finished(execution, steps, log)
                node_id = next_id
                continue

            if isinstance(result, Suspend):
                execution.status = ExecutionStatus.WAITING
                execution.current_node_id = node.id
                execution.next_node_id = None
                execution.wait_type = result.wait_type
                execution.wait_payload = dict(result.payload)
                execution.wait_deadline = result.deadline
                await self._record(execution, node, StepStatus.COMPLETED, "suspend", log,
                                   data={"wait_type": result.wait_type.value}, duration_ms=duration_ms)
                log.info("execution_waiting", node_id=node.id, wait_type=result.wait_type.value)
                return self._result(execution, steps)

            if isinstance(result, Terminate):
                execution.current_node_id = node.id
                execution.next_node_id = None
                execution.status = ExecutionStatus.COMPLETED if result.success else ExecutionStatus.FAILED
                execution.finished_at = self.clock()
                if not result.success:
                    execution.error = result.message or "Flow ended unsuccessfully"
                    execution.error_type = "terminated"
                await self._record(execution, node, StepStatus.COMPLETED, "terminate", log,
                                   message=result.message, duration_ms=duration_ms)
                return self._finished(execution, steps, log)

            if isinstance(result, Failed):
                return await self._fail_at(execution, node, result.error, log, steps, duration_ms, counted=True)

            raise TypeError(f"Handler for {node.type} returned {result!r}")

    async def _execute_node(self, node: BaseNode, context: ExecutionContext) -> StepResult:
        try:
            handler = self.registry.get(node.type)
            if isinstance(handler, ConditionHandler):
                label = handler.evaluate(node, await context.scope())
                return Advance(handle=label, data={"outcome": label})
            if isinstance(handler, TriggerHandler):
                return await handler.execute(node, context)
            return await handler.run(node, context)
        except WorkflowError as e:
            if e.node_id is None:
                e.node_id = node.id
            return Failed(e)

    # ---------------- State transitions ---------------- #

    async def _start(self, graph: FlowGraph, trigger: BaseNode, chat_id: str, event: InboundEvent, log) -> Execution:
        version: FlowVersion = graph.model
        now = self.clock()
        execution = Execution(
            started_at=now,
            updated_at=now,
            project_id=version.project_id,
            chat_id=chat_id,
            flow_id=version.flow_id,
            version_id=version.id,
            version=version.version,
            trigger_node_id=trigger.id,
            current_node_id=trigger.id,
            variables=self._initial_variables(version, chat_id, event),
        )
        execution.user_id = await self.user_variables.resolve_user_id(version.project_id, chat_id, None)
        self._remember_event(execution, event)
        await self.executions.create(execution)
        executions_started_counter.labels(project_id=version.project_id).inc()
        log.info("execution_started", execution_id=execution.id, trigger_node_id=trigger.id, version=version.version)
        return execution

    async def _cancel(self, execution: Execution, reason: str, log) -> None:
        execution.status = ExecutionStatus.CANCELLED
        execution.finished_at = execution.updated_at = self.clock()
        execution.error = reason
        execution.error_type = "cancelled"
        execution.next_node_id = None
        execution.clear_wait()
        await self.executions.save(execution)
        executions_finished_counter.labels(status=ExecutionStatus.CANCELLED.value).inc()
        log.info("execution_cancelled", execution_id=execution.id, reason=reason)

    def _mark_running(self, execution: Execution) -> None:
        execution.status = ExecutionStatus.RUNNING
        execution.clear_wait()

    async def _fail_at(self, execution: Execution, node: BaseNode, error: WorkflowError, log, steps: int,
                       duration_ms: float = 0.0, counted: bool = False) -> EngineResult:
        """Logs a failed step for ``node`` and ends the execution as failed."""
        self._mark_failed(execution, error)
        execution.current_node_id = node.id
        await self._record(execution, node, StepStatus.ERROR, "error", log, message=error.message,
                           data={"error_type": error.code}, duration_ms=duration_ms)
        log.error("execution_failed", node_id=node.id, error_type=error.code, error=error.message)
        return self._finished(execution, steps if counted else steps + 1, log)

    async def _fail_without_node(self, execution: Execution, error: WorkflowError, log, steps: int = 0) -> EngineResult:
        """Failure where no node can be resolved (missing version or node). Still logged as a step."""
        self._mark_failed(execution, error)
        node_id = error.node_id or execution.current_node_id or execution.trigger_node_id or "unknown"
        await self._record_raw(execution, node_id, "unknown", None, StepStatus.ERROR, "error", log,
                               message=error.message, data={"error_type": error.code})
        log.error("execution_failed", node_id=node_id, error_type=error.code, error=error.message)
        return self._finished(execution, steps + 1, log)

    def _mark_failed(self, execution: Execution, error: WorkflowError) -> None:
        execution.status = ExecutionStatus.FAILED
        execution.error = error.message
        execution.error_type = error.code
        execution.finished_at = self.clock()
        execution.next_node_id = None
        execution.clear_wait()

    async def _record(self, execution: Execution, node: BaseNode, status: StepStatus, outcome: str, log,
                      handle: Optional[str] = None, message: Optional[str] = None,
                      data: Optional[Dict[str, Any]] = None, duration_ms: float = 0.0) -> None:
        await self._record_raw(execution, node.id, node.type, node.label or None, status, outcome, log,
                               handle=handle, message=message, data=data, duration_ms=duration_ms)

    async def _record_raw(self, execution: Execution, node_id: str, node_type: str, label: Optional[str],
                          status: StepStatus, outcome: str, log, handle: Optional[str] = None,
                          message: Optional[str] = None, data: Optional[Dict[str, Any]] = None,
                          duration_ms: float = 0.0) -> None:
        execution.step_count += 1
        execution.updated_at = self.clock()
        step = StepLog(
            execution_id=execution.id,
            step=execution.step_count,
            node_id=node_id,
            node_type=node_type,
            node_label=label,
            status=status,
            outcome=outcome,
            handle=handle,
            message=message,
            data=data or {},
            duration_ms=round(duration_ms, 3),
            created_at=execution.updated_at,
        )
        await self.executions.record_step(execution, step)
        steps_counter.labels(node_type=node_type, status=status.value).inc()
        log.debug("step_recorded", step=step.step, node_id=node_id, outcome=outcome, status=status.value)

    # ---------------- Helpers ---------------- #

    async def _graph_for(self, execution: Execution) -> FlowGraph:
        """The graph of the exact version an execution started on."""
        active = await self.active_graph(execution.project_id)
        if active is not None and active.model.id == execution.version_id:
            return active

        async def load() -> Optional[FlowGraph]:
            version = await self.flows.get_version(execution.version_id)
            return FlowGraph(version) if version else None

        graph = await self.cache.get_or_load(f"version:{execution.version_id}", load)
        if graph is None:
            raise VersionNotFound(f"Flow version '{execution.version_id}' not found")
        return graph

    async def _load_waiting_node(self, execution: Execution, log):
        """Resolves the node a waiting execution is parked on, failing the execution if it cannot."""
        try:
            graph = await self._graph_for(execution)
        except VersionNotFound as e:
            return await self._fail_without_node(execution, e, log)
        node = graph.node(execution.current_node_id or "")
        if node is None:
            error = MissingEdge(execution.current_node_id or "unknown", None, detail="no node to resume")
            return await self._fail_without_node(execution, error, log)
        try:
            handler = self.registry.get(node.type)
        except WorkflowError as e:
            return await self._fail_at(execution, node, e, log, steps=0)
        if not isinstance(handler, WaitingMixin):
            error = WorkflowError(f"Node '{node.id}' ({node.type}) cannot be resumed", node_id=node.id)
            return await self._fail_at(execution, node, error, log, steps=0)
        return graph, node, handler

    async def _context(self, execution: Execution, graph: FlowGraph, event: InboundEvent, log) -> ExecutionContext:
        return ExecutionContext(
            execution=execution,
            graph=graph,
            event=event,
            queries=self.queries,
            user_variables=self.user_variables,
            project_variables=await self.flows.get_project_variables(execution.project_id),
            log=log,
            clock=self.clock,
            webhooks=self.webhooks,
        )

    @staticmethod
    def _initial_variables(version, chat_id: str, event: Optional[InboundEvent] = None) -> Dict[str, Any]:
        variables = {name: declaration.default for name, declaration in version.variables.items()}
        variables["chat.id"] = chat_id
        if event is not None:
            for key in ("username", "first_name", "last_name"):
                value = getattr(event, key)
                if value:
                    variables[f"chat.{key}"] = value
        return variables

    @staticmethod
    def _remember_event(execution: Execution, event: InboundEvent) -> None:
        variables = execution.variables
        variables["event.kind"] = event.kind.value
        if event.text is not None:
            variables["event.text"] = event.text
        if event.command:
            variables["command.name"] = event.command
            variables["command.args"] = event.command_args or ""
        if event.callback_data is not None:
            variables["event.callback_data"] = event.callback_data

    def _ignored(self, reason: str, log, execution: Optional[Execution] = None) -> EngineResult:
        ignored_events_counter.labels(reason=reason).inc()
        log.info("event_ignored", reason=reason)
        return {
            "handled": False,
            "reason": reason,
            "execution_id": execution.id if execution else None,
            "status": execution.status.value if execution else None,
            "steps": 0,
        }

    def _finished(self, execution: Execution, steps: int, log) -> EngineResult:
        executions_finished_counter.labels(status=execution.status.value).inc()
        log.info("execution_finished", status=execution.status.value, step_count=execution.step_count)
        return self._result(execution, steps)

    @staticmethod
    def _result(execution: Execution, steps: int) -> EngineResult:
        return {
            "handled": True,
            "reason": None,
            "execution_id": execution.id,
            "status": execution.status.value,
            "steps": steps,
        }
