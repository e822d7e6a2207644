"""Workflow execution runtime.

Runs a workflow document node by node in topological order:
- Every node type maps to one executor (explicit ExecutorRegistry, injected)
- Executors report progress through a StatusChannel (initial -> loading ->
  success | error) and wrap side effects in named durable steps
- Step results are persisted per run, so retrying a run id resumes from the
  first incomplete step instead of repeating external calls
- The first failing node halts the run; unreached nodes stay ``initial``
"""

from __future__ import annotations

import asyncio
import copy
import functools
import inspect
import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from pydantic import ValidationError

from flowcore.core.graph_schema import Node, NodeConfig, NodeType, WorkflowDocument
from flowcore.core.models import ExecutionStatus, RunResult, RunStatus
from flowcore.core.state import Database, safe_json_dumps
from flowcore.core.templates import find_unresolved, resolve, resolve_value

if TYPE_CHECKING:
    from flowcore.core.config import EngineConfig

logger = logging.getLogger(__name__)

ConfigT = TypeVar("ConfigT", bound=NodeConfig)


# ========== Errors ==========


class NonRetriableError(Exception):
    """Fault that re-running the same configuration can never fix.

    Raised for missing or invalid configuration and for preconditions an
    executor can prove will not pass without human correction.
    """

    pass


class UnknownNodeTypeError(NonRetriableError):
    """No executor registered for a node type."""

    pass


class DuplicateStepKeyError(NonRetriableError):
    """Step key reused within one node execution."""

    pass


class InvalidStatusTransition(Exception):
    """Status published out of order (e.g. success without loading)."""

    pass


class WorkflowStopped(Exception):
    """Raised by a stop-workflow node: ends the run early without failing it."""

    def __init__(self, reason: str | None = None, output: Any = None):
        self.reason = reason
        self.output = output
        self.context: dict[str, Any] | None = None  # Filled in by node_executor
        super().__init__(reason or "Workflow stopped")


# ========== Status channel ==========

# Re-entering loading from a terminal status is a new attempt of the same run
ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.INITIAL: frozenset({ExecutionStatus.LOADING}),
    ExecutionStatus.LOADING: frozenset({ExecutionStatus.SUCCESS, ExecutionStatus.ERROR}),
    ExecutionStatus.SUCCESS: frozenset({ExecutionStatus.LOADING}),
    ExecutionStatus.ERROR: frozenset({ExecutionStatus.LOADING}),
}

StatusObserver = Callable[[str, ExecutionStatus], Any]


class StatusChannel:
    """Publishes node statuses to any number of observers.

    Delivery is fire-and-forget: an observer that raises is logged and skipped,
    it never fails the node. Transitions are checked so the visible history
    can never skip ``loading``.
    """

    def __init__(self, observers: list[StatusObserver] | None = None):
        self._observers: list[StatusObserver] = list(observers or [])
        self._latest: dict[str, ExecutionStatus] = {}
        self.history: list[tuple[str, ExecutionStatus]] = []

    def subscribe(self, observer: StatusObserver) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: StatusObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def status_of(self, node_id: str) -> ExecutionStatus:
        return self._latest.get(node_id, ExecutionStatus.INITIAL)

    async def publish(self, node_id: str, status: ExecutionStatus) -> None:
        previous = self.status_of(node_id)
        if status not in ALLOWED_TRANSITIONS[previous]:
            raise InvalidStatusTransition(
                f"Node '{node_id}': cannot go from '{previous.value}' to '{status.value}'"
            )
        self._latest[node_id] = status
        self.history.append((node_id, status))

        for observer in list(self._observers):
            try:
                result = observer(node_id, status)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Status observer failed for node {node_id}: {e}")


@dataclass
class NodeStatusPublisher:
    """Status channel bound to one node."""

    channel: StatusChannel
    node_id: str

    @property
    def current(self) -> ExecutionStatus:
        return self.channel.status_of(self.node_id)

    async def publish(self, status: ExecutionStatus) -> None:
        await self.channel.publish(self.node_id, status)


class DatabaseStatusRecorder:
    """Observer appending every published status to the run's status log."""

    def __init__(self, db: Database, run_id: str, attempt: int = 1):
        self.db = db
        self.run_id = run_id
        self.attempt = attempt

    async def __call__(self, node_id: str, status: ExecutionStatus) -> None:
        await asyncio.to_thread(self.db.record_status, self.run_id, node_id, status, self.attempt)


# ========== Durable steps ==========


class StepRunner(Protocol):
    """Durable-step primitive: ``run`` executes ``fn`` at most once per key and run."""

    async def run(self, step_key: str, fn: Callable[[], Any]) -> Any: ...


async def _call(fn: Callable[[], Any]) -> Any:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


class InMemoryStepRunner:
    """Memoizes step results in process memory (tests, one-shot runs).

    Results are JSON-normalized so a replay returns exactly what the first
    execution returned.
    """

    def __init__(self) -> None:
        self.results: dict[str, Any] = {}
        self.executed: list[str] = []

    async def run(self, step_key: str, fn: Callable[[], Any]) -> Any:
        if step_key in self.results:
            logger.debug(f"Step '{step_key}' replayed from memory")
            return copy.deepcopy(self.results[step_key])
        value = json.loads(safe_json_dumps(await _call(fn)))
        self.results[step_key] = value
        self.executed.append(step_key)
        return copy.deepcopy(value)


class DurableStepRunner:
    """Persists step results in the state database, keyed by run id."""

    def __init__(self, db: Database, run_id: str):
        self.db = db
        self.run_id = run_id

    async def run(self, step_key: str, fn: Callable[[], Any]) -> Any:
        found, value = await asyncio.to_thread(self.db.get_step_result, self.run_id, step_key)
        if found:
            logger.debug(f"Step '{step_key}' of run {self.run_id} replayed from database")
            return value

        payload = safe_json_dumps(await _call(fn))
        await asyncio.to_thread(self.db.save_step_result, self.run_id, step_key, payload)
        return json.loads(payload)


class ScopedStepRunner:
    """Step runner handed to one node execution.

    Prefixes keys with the node scope so two nodes may both use
    ``"create-contact"``, and rejects a key reused within the same execution.
    """

    def __init__(self, inner: StepRunner, scope: str):
        self.inner = inner
        self.scope = scope
        self._used: set[str] = set()

    async def run(self, step_key: str, fn: Callable[[], Any]) -> Any:
        if step_key in self._used:
            raise DuplicateStepKeyError(f"Step key '{step_key}' used twice in '{self.scope}'")
        self._used.add(step_key)
        return await self.inner.run(f"{self.scope}:{step_key}", fn)

    def nested(self, prefix: str) -> StepRunner:
        """Unscoped runner for a sub-workflow; its nodes add their own scopes."""
        return _PrefixedStepRunner(self.inner, f"{self.scope}/{prefix}")


class _PrefixedStepRunner:
    def __init__(self, inner: StepRunner, prefix: str):
        self.inner = inner
        self.prefix = prefix

    async def run(self, step_key: str, fn: Callable[[], Any]) -> Any:
        return await self.inner.run(f"{self.prefix}/{step_key}", fn)


# ========== Executor contract ==========


@dataclass
class ExecutorServices:
    """Collaborators executors may call; all optional."""

    record_store: Any = None  # flowcore.executors.records.RecordStore
    workflow_loader: Callable[[str], Any] | None = None  # bundle id -> WorkflowDocument | None


@dataclass(frozen=True)
class WorkflowRef:
    workflow_id: str
    workflow_name: str
    is_bundle: bool = False

    @classmethod
    def of(cls, document: WorkflowDocument) -> WorkflowRef:
        return cls(document.id, document.name, document.is_bundle)


@dataclass
class ExecutorInput:
    """Everything one executor invocation receives.

    ``workflow`` is the document the node belongs to; ``parent_workflow`` is
    set only inside a bundle and names the workflow that invoked it.
    ``bundle_stack`` lists the ids of the bundles currently executing, outermost
    first.
    """

    node: Node
    context: Mapping[str, Any]
    step: ScopedStepRunner
    status: NodeStatusPublisher
    run_id: str
    runner: WorkflowRunner
    workflow: WorkflowRef
    services: ExecutorServices = field(default_factory=ExecutorServices)
    trigger_data: dict[str, Any] | None = None
    parent_workflow: WorkflowRef | None = None
    bundle_stack: tuple[str, ...] = ()

    @property
    def data(self) -> dict[str, Any]:
        return self.node.data

    @property
    def node_id(self) -> str:
        return self.node.id

    @property
    def node_type(self) -> NodeType:
        return self.node.type

    @property
    def variable_name(self) -> str | None:
        return self.node.variable_name

    def config_as(self, model: type[ConfigT]) -> ConfigT:
        """Node data validated as ``model``; invalid configuration is non-retriable."""
        try:
            return model.model_validate(self.data)
        except ValidationError as e:
            raise NonRetriableError(f"Node '{self.node_id}' has invalid configuration: {e}") from e

    def _check_bindings(self, label: str, template: str) -> None:
        missing = find_unresolved(template, self.context)
        if missing:
            raise NonRetriableError(
                f"{label} references unavailable variable(s): {', '.join(missing)}"
            )

    def resolve(self, label: str, template: str | None) -> str | None:
        """Resolve an optional field; blank stays None, unresolved variables are fatal."""
        if template is None or template == "":
            return None
        self._check_bindings(label, template)
        return resolve(template, self.context) or None

    def require(self, label: str, template: str | None) -> str:
        """Resolve a required field; empty or unresolved is non-retriable."""
        if not template:
            raise NonRetriableError(f"{label} is required.")
        value = self.resolve(label, template)
        if value is None or not value.strip():
            raise NonRetriableError(f"{label} resolved to an empty value.")
        return value

    def resolve_value(self, label: str, template: str) -> Any:
        self._check_bindings(label, template)
        return resolve_value(template, self.context)


NodeExecutor = Callable[[ExecutorInput], Awaitable[dict[str, Any]]]


def merge_output(
    context: Mapping[str, Any], variable_name: str | None, output: Any
) -> dict[str, Any]:
    """New context with ``output`` published under ``variable_name``."""
    merged = dict(context)
    if variable_name:
        merged[variable_name] = output
    return merged


def node_executor(
    body: Callable[[ExecutorInput], Awaitable[Any]],
) -> NodeExecutor:
    """Wrap an executor body with the status and merge discipline.

    The body validates its configuration, performs side effects through
    ``inp.step.run``, and returns the node's output value. The wrapper:
    1. publishes ``loading`` before the body runs
    2. publishes ``error`` and re-raises on any exception
    3. merges the output under ``variableName`` into a new context
    4. publishes ``success``

    A body may publish ``error`` itself before raising; the wrapper then
    leaves the status alone and re-raises the original exception.
    """

    @functools.wraps(body)
    async def executor(inp: ExecutorInput) -> dict[str, Any]:
        await inp.status.publish(ExecutionStatus.LOADING)
        try:
            output = await body(inp)
        except WorkflowStopped as stop:
            stop.context = merge_output(inp.context, inp.variable_name, stop.output)
            if inp.status.current == ExecutionStatus.LOADING:
                await inp.status.publish(ExecutionStatus.SUCCESS)
            raise
        except Exception:
            if inp.status.current == ExecutionStatus.LOADING:
                await inp.status.publish(ExecutionStatus.ERROR)
            raise

        new_context = merge_output(inp.context, inp.variable_name, output)
        await inp.status.publish(ExecutionStatus.SUCCESS)
        return new_context

    return executor


class ExecutorRegistry:
    """Explicit node type -> executor map, injected into the runner."""

    def __init__(self, executors: Mapping[NodeType, NodeExecutor] | None = None):
        self._executors: dict[NodeType, NodeExecutor] = dict(executors or {})

    def register(self, node_type: NodeType, executor: NodeExecutor) -> None:
        self._executors[node_type] = executor

    def has(self, node_type: NodeType) -> bool:
        return node_type in self._executors

    def get(self, node_type: NodeType) -> NodeExecutor:
        try:
            return self._executors[node_type]
        except KeyError:
            raise UnknownNodeTypeError(
                f"No executor registered for node type '{node_type.value}'"
            ) from None


# ========== Runner ==========


@dataclass
class _RunState:
    context: dict[str, Any]
    reachable: set[str]
    executed: list[str] = field(default_factory=list)
    failed_node: str | None = None
    stopped: bool = False


class WorkflowRunner:
    """
    Executes workflow documents.

    Key Features:
    - True topological order: a node runs only after all of its producers
    - Independent nodes of one generation may run concurrently (max_parallel)
    - Branching nodes (IF_ELSE) select outgoing edges by ``sourceHandle``
    - Same run id = resume: durable steps already recorded are not repeated
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        db: Database | None = None,
        services: ExecutorServices | None = None,
        observers: list[StatusObserver] | None = None,
        max_parallel: int = 1,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.registry = registry
        self.db = db
        self.services = services or ExecutorServices()
        self.observers = list(observers or [])
        self.max_parallel = max_parallel
        # Step results of runs without a database, kept until the run finishes
        self._memory_steps: dict[str, InMemoryStepRunner] = {}

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        registry: ExecutorRegistry,
        services: ExecutorServices | None = None,
        observers: list[StatusObserver] | None = None,
    ) -> WorkflowRunner:
        return cls(
            registry,
            db=Database(config.db_path),
            services=services,
            observers=observers,
            max_parallel=config.max_parallel,
        )

    async def execute(
        self,
        document: WorkflowDocument,
        trigger_data: dict[str, Any] | None = None,
        run_id: str | None = None,
        initial_context: Mapping[str, Any] | None = None,
        channel: StatusChannel | None = None,
        step_runner: StepRunner | None = None,
    ) -> RunResult:
        """
        Run ``document`` once.

        Args:
            document: Workflow to execute (validated against the registry first)
            trigger_data: Payload published by trigger nodes
            run_id: Reuse to retry a failed run; completed steps are replayed
            initial_context: Variables visible to every node
            channel: Status channel (a fresh one per call by default)
            step_runner: Overrides the database/in-memory step runner

        Returns:
            RunResult with the final context and the status of every node

        Raises:
            WorkflowValidationError: If the document cannot run with this registry
            Exception: Whatever the failing node raised; the run is recorded as failed
        """
        document.ensure_valid(self.registry)

        run_id = run_id or str(uuid.uuid4())
        channel = channel or StatusChannel()
        for observer in self.observers:
            channel.subscribe(observer)

        attempt = 1
        recorder = None
        if self.db is not None:
            attempt = await asyncio.to_thread(
                self.db.start_run, run_id, document.id, document.name
            )
            recorder = DatabaseStatusRecorder(self.db, run_id, attempt)
            channel.subscribe(recorder)

        if step_runner is None:
            step_runner = (
                DurableStepRunner(self.db, run_id)
                if self.db is not None
                else self._memory_steps.setdefault(run_id, InMemoryStepRunner())
            )

        logger.info(f"Run {run_id} started for workflow '{document.name}' (attempt {attempt})")
        state = self._initial_state(document, initial_context)
        try:
            await self._run_graph(
                document,
                state,
                run_id=run_id,
                channel=channel,
                steps=step_runner,
                trigger_data=trigger_data,
            )
        except Exception as e:
            logger.error(f"Run {run_id} failed at node {state.failed_node}: {e}")
            if self.db is not None:
                await asyncio.to_thread(
                    self.db.finish_run,
                    run_id,
                    RunStatus.FAILED,
                    str(e),
                    state.failed_node,
                    state.context,
                )
            raise
        finally:
            for observer in [*self.observers, recorder]:
                if observer is not None:
                    channel.unsubscribe(observer)

        status = RunStatus.STOPPED if state.stopped else RunStatus.COMPLETED
        self._memory_steps.pop(run_id, None)
        if self.db is not None:
            await asyncio.to_thread(
                self.db.finish_run, run_id, status, None, None, state.context
            )
        logger.info(f"Run {run_id} {status.value} ({len(state.executed)} node(s) executed)")

        return RunResult(
            run_id=run_id,
            status=status,
            context=state.context,
            statuses={n.id: channel.status_of(n.id) for n in document.nodes},
            executed=state.executed,
        )

    async def execute_nested(
        self,
        document: WorkflowDocument,
        parent: ExecutorInput,
        context: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Run a sub-workflow inside ``parent``'s execution; returns its final context.

        Nested nodes share the parent's run, status channel and step store,
        scoped under the parent node id.

        Raises:
            NonRetriableError: If the bundle is already executing in this chain
        """
        if document.id in parent.bundle_stack or document.id == parent.workflow.workflow_id:
            raise NonRetriableError(f"Bundle workflow {document.id} invokes itself")
        document.ensure_valid(self.registry)
        state = self._initial_state(document, context)
        await self._run_graph(
            document,
            state,
            run_id=parent.run_id,
            channel=parent.status.channel,
            steps=parent.step.nested(document.id),
            trigger_data=None,
            parent_workflow=parent.workflow,
            status_prefix=f"{parent.status.node_id}/",
            bundle_stack=(*parent.bundle_stack, document.id),
        )
        if state.stopped:
            logger.info(f"Bundle '{document.name}' stopped early")
        return state.context

    @staticmethod
    def _initial_state(
        document: WorkflowDocument, initial_context: Mapping[str, Any] | None
    ) -> _RunState:
        # Entry points: nodes nothing feeds into (the trigger)
        targets = {e.target for e in document.edges}
        return _RunState(
            context=dict(initial_context or {}),
            reachable={n.id for n in document.nodes if n.id not in targets},
        )

    async def _run_graph(
        self,
        document: WorkflowDocument,
        state: _RunState,
        run_id: str,
        channel: StatusChannel,
        steps: StepRunner,
        trigger_data: dict[str, Any] | None,
        parent_workflow: WorkflowRef | None = None,
        status_prefix: str = "",
        bundle_stack: tuple[str, ...] = (),
    ) -> None:
        workflow = WorkflowRef.of(document)
        for generation in document.topological_generations():
            ready = [node_id for node_id in generation if node_id in state.reachable]

            for start in range(0, len(ready), self.max_parallel):
                batch = ready[start : start + self.max_parallel]
                snapshot = dict(state.context)

                outcomes = await asyncio.gather(
                    *[
                        self._execute_node(
                            document.get_node(node_id),
                            snapshot,
                            run_id=run_id,
                            channel=channel,
                            steps=steps,
                            trigger_data=trigger_data,
                            workflow=workflow,
                            parent_workflow=parent_workflow,
                            status_prefix=status_prefix,
                            bundle_stack=bundle_stack,
                        )
                        for node_id in batch
                    ],
                    return_exceptions=True,
                )

                for node_id, outcome in zip(batch, outcomes):
                    if isinstance(outcome, WorkflowStopped):
                        state.executed.append(node_id)
                        self._merge(state, snapshot, outcome.context or snapshot)
                        state.stopped = True
                    elif isinstance(outcome, BaseException):
                        state.failed_node = f"{status_prefix}{node_id}"
                        raise outcome
                    else:
                        state.executed.append(node_id)
                        self._merge(state, snapshot, outcome)
                        self._follow_edges(document, node_id, outcome, state)

                if state.stopped:
                    return

    async def _execute_node(
        self,
        node: Node,
        snapshot: dict[str, Any],
        run_id: str,
        channel: StatusChannel,
        steps: StepRunner,
        trigger_data: dict[str, Any] | None,
        workflow: WorkflowRef,
        parent_workflow: WorkflowRef | None,
        status_prefix: str,
        bundle_stack: tuple[str, ...] = (),
    ) -> dict[str, Any]:
        executor = self.registry.get(node.type)
        inp = ExecutorInput(
            node=node,
            context=MappingProxyType(snapshot),
            step=ScopedStepRunner(steps, node.id),
            status=NodeStatusPublisher(channel, f"{status_prefix}{node.id}"),
            run_id=run_id,
            runner=self,
            workflow=workflow,
            services=self.services,
            trigger_data=trigger_data if node.type.is_trigger else None,
            parent_workflow=parent_workflow,
            bundle_stack=bundle_stack,
        )

        try:
            result = await executor(inp)
        except WorkflowStopped:
            raise
        except Exception as e:
            logger.error(f"Node {node.id} ({node.type.value}) failed: {e}")
            raise

        if not isinstance(result, Mapping):
            raise NonRetriableError(
                f"Executor for '{node.type.value}' returned {type(result).__name__}, "
                "expected a context mapping"
            )
        dropped = set(snapshot) - set(result)
        if dropped:
            raise NonRetriableError(
                f"Node '{node.id}' removed context variable(s): {', '.join(sorted(dropped))}"
            )
        return dict(result)

    @staticmethod
    def _merge(state: _RunState, snapshot: dict[str, Any], result: Mapping[str, Any]) -> None:
        """Merge only what a node added or replaced relative to its snapshot."""
        for key, value in result.items():
            if key not in snapshot or snapshot[key] is not value:
                state.context[key] = value

    @staticmethod
    def _follow_edges(
        document: WorkflowDocument, node_id: str, result: Mapping[str, Any], state: _RunState
    ) -> None:
        node = document.get_node(node_id)
        branch = None
        if node is not None and node.variable_name:
            output = result.get(node.variable_name)
            if isinstance(output, Mapping):
                branch = output.get("branchToFollow")

        for edge in document.outgoing(node_id):
            if edge.source_handle is None or branch is None or edge.source_handle == branch:
                state.reachable.add(edge.target)
