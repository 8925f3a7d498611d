"""Convergence engine: executes an execution plan against a provider.

Each node is owned by exactly one asyncio task that drives it through

    Pending -> Creating -> Created     (terminal success, handle attached)
    Pending -> Creating -> Failed      (permanent error, retries exhausted,
                                        or cancellation)

Waves run strictly in sequence. All nodes of a wave are dispatched
concurrently and the next wave is released by a counting gate only after
every task of the current wave has reported. If any node of a wave fails,
later waves are never dispatched and nothing is rolled back: destruction
is the separate destroy() operation, invoked deliberately by the caller.

Retry uses exponential backoff with jitter. Polling while a resource
is provisioning backs off exponentially up to a capped interval and a
capped total wait; both waits are interruptible by abort().
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import ConvergenceConfig, ReverifyPolicy
from .dependency import ExecutionPlan, resolve_plan
from .errors import (
    PermanentProviderError,
    ProvisioningCancelled,
    ProvisioningFailure,
    TransientProviderError,
    UnresolvedReferenceError,
)
from .graph import NodeState, ProviderHandle, ResourceGraph, ResourceNode, ResourceRef
from .payloads import diff_properties, render_payload
from .provider import LiveResource, OperationStatus, Provider, ProvisioningState

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fraction of the backoff added as random jitter
JITTER_RATIO = 0.2


class NodeAction(str, Enum):
    """What the engine did (or would do) for a node."""

    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"
    DELETE = "delete"


class Operation(str, Enum):
    APPLY = "apply"
    DESTROY = "destroy"


@dataclass(frozen=True)
class NodeReport:
    """Final per-node outcome of a run."""

    ref: ResourceRef
    state: NodeState
    attempted: bool
    attempts: int = 0
    action: NodeAction | None = None
    error_kind: str | None = None
    error_message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.ref.kind.value,
            "key": self.ref.key,
            "state": self.state.value,
            "attempted": self.attempted,
            "attempts": self.attempts,
            "action": self.action.value if self.action else None,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
        }


@dataclass
class RunResult:
    """Result of an apply or destroy run."""

    operation: Operation
    waves_total: int
    waves_completed: int = 0
    aborted: bool = False
    reports: list[NodeReport] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def failed(self) -> list[NodeReport]:
        return [r for r in self.reports if r.state == NodeState.FAILED]

    @property
    def never_attempted(self) -> list[NodeReport]:
        return [r for r in self.reports if not r.attempted]

    @property
    def success(self) -> bool:
        return not self.failed and not self.aborted and self.waves_completed == self.waves_total

    def calls_for(self, action: NodeAction) -> int:
        return sum(1 for r in self.reports if r.action == action)


@dataclass(frozen=True)
class PlannedAction:
    """Preview of the action apply() would take for a node."""

    ref: ResourceRef
    wave: int
    action: NodeAction
    drifted_fields: tuple[str, ...] = ()


class WaveGate:
    """Counting gate released once every task of a wave has reported."""

    def __init__(self, count: int) -> None:
        self._remaining = count
        self._released = asyncio.Event()
        if count <= 0:
            self._released.set()

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def released(self) -> bool:
        return self._released.is_set()

    def arrive(self) -> None:
        """Report one task as terminal (Created or Failed)."""
        self._remaining -= 1
        if self._remaining <= 0:
            self._released.set()

    async def wait(self) -> None:
        await self._released.wait()


class ConvergenceEngine:
    """Drives a resource graph to its declared state through a provider.

    All node state lives in the ResourceGraph passed to each call; the engine
    itself only holds the provider, the policy and the abort flag.
    """

    def __init__(self, provider: Provider, config: ConvergenceConfig | None = None) -> None:
        self._provider = provider
        self._config = config or ConvergenceConfig.from_env()
        self._abort_event = asyncio.Event()

    @property
    def config(self) -> ConvergenceConfig:
        return self._config

    def abort(self) -> None:
        """Stop dispatching waves and interrupt every backoff and poll wait."""
        logger.warning("Abort requested")
        self._abort_event.set()

    # =========================================================================
    # Apply
    # =========================================================================

    async def apply(self, graph: ResourceGraph, plan: ExecutionPlan | None = None) -> RunResult:
        """Converge every node of the graph, wave by wave.

        Raises:
            ConfigurationError: If the graph cannot be resolved into a plan.
                Raised before any provider call.
        """
        plan = plan or resolve_plan(graph)
        self._abort_event.clear()
        return await self._run_waves(graph, list(plan), Operation.APPLY, self._converge)

    async def _run_waves(
        self,
        graph: ResourceGraph,
        waves: list[tuple[ResourceNode, ...]],
        operation: Operation,
        handler: Callable[[ResourceGraph, ResourceNode], Awaitable[NodeAction]],
    ) -> RunResult:
        result = RunResult(operation=operation, waves_total=len(waves))
        dispatched: set[ResourceRef] = set()
        actions: dict[ResourceRef, NodeAction] = {}

        logger.info(
            f"Starting {operation.value}",
            extra={"wave_count": len(waves), "node_count": len(graph)},
        )

        for index, wave in enumerate(waves):
            if self._abort_event.is_set():
                result.aborted = True
                break

            gate = WaveGate(len(wave))
            dispatched.update(node.ref for node in wave)
            tasks = [
                asyncio.create_task(self._run_node(graph, node, gate, handler, actions))
                for node in wave
            ]
            try:
                await gate.wait()
            except asyncio.CancelledError:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            await asyncio.gather(*tasks)

            failed = [node for node in wave if node.state == NodeState.FAILED]
            if failed:
                logger.error(
                    f"Wave failed, halting {operation.value}",
                    extra={"wave": index, "failed": [str(n.ref) for n in failed]},
                )
                break
            result.waves_completed += 1
            logger.info("Wave completed", extra={"wave": index, "node_count": len(wave)})

        if self._abort_event.is_set():
            result.aborted = True

        ordered = [node for wave in waves for node in wave]
        result.reports = [self._report(node, node.ref in dispatched, actions) for node in ordered]
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _run_node(
        self,
        graph: ResourceGraph,
        node: ResourceNode,
        gate: WaveGate,
        handler: Callable[[ResourceGraph, ResourceNode], Awaitable[NodeAction]],
        actions: dict[ResourceRef, NodeAction],
    ) -> None:
        """Run one node to a terminal state; always reports to the gate."""
        try:
            actions[node.ref] = await handler(graph, node)
        except (ProvisioningFailure, ProvisioningCancelled) as e:
            node.mark_failed(e)
            logger.error(
                "Node failed",
                extra={"node": str(node.ref), "error": str(e), "error_type": type(e).__name__},
            )
        except asyncio.CancelledError:
            node.mark_failed(ProvisioningCancelled(f"{node.ref}: cancelled by caller"))
            raise
        except Exception as e:
            # Unclassified errors are recorded on the node, never dropped
            logger.exception("Node failed unexpectedly", extra={"node": str(node.ref)})
            node.mark_failed(ProvisioningFailure(f"{node.ref}: unexpected error: {e}", cause=e))
        finally:
            gate.arrive()

    async def _converge(self, graph: ResourceGraph, node: ResourceNode) -> NodeAction:
        """Bring one node to Created, issuing create/update only when needed."""
        payload = render_payload(node, graph.resolve_references(node))

        if node.state == NodeState.CREATED:
            if self._config.reverify_policy == ReverifyPolicy.TRUST:
                logger.debug("Trusting created node", extra={"node": str(node.ref)})
                return NodeAction.NOOP
            live = await self._read(node)
            if (
                live is not None
                and live.provisioning_state == ProvisioningState.SUCCEEDED
                and not diff_properties(node.kind, payload, live.properties)
            ):
                return NodeAction.NOOP
        else:
            node.state = NodeState.CREATING
            live = await self._read(node)
            if (
                live is not None
                and live.provisioning_state == ProvisioningState.SUCCEEDED
                and not diff_properties(node.kind, payload, live.properties)
            ):
                # Existing live resource already matches: adopt it
                node.mark_created(live.handle)
                logger.info("Adopted existing resource", extra={"node": str(node.ref)})
                return NodeAction.NOOP

        action = NodeAction.CREATE if live is None else NodeAction.UPDATE
        node.state = NodeState.CREATING
        logger.info(
            "Dispatching node",
            extra={"node": str(node.ref), "action": action.value, "resource_name": node.name},
        )
        handle = await self._create_with_retry(node, payload)
        node.mark_created(handle)
        logger.info(
            "Node created",
            extra={"node": str(node.ref), "resource_id": handle.resource_id},
        )
        return action

    async def _create_with_retry(self, node: ResourceNode, payload: dict[str, Any]) -> ProviderHandle:
        """Create or update with exponential backoff retry on transient errors.

        Raises:
            ProvisioningFailure: On a permanent error or when retries are exhausted.
            ProvisioningCancelled: If aborted or the poll wait cap is exceeded.
        """
        last_error: TransientProviderError | None = None

        for attempt in range(1, self._config.max_attempts + 1):
            node.attempts += 1
            try:
                return await self._create_once(node, payload)
            except PermanentProviderError as e:
                raise ProvisioningFailure(f"{node.ref}: {e}", cause=e) from e
            except TransientProviderError as e:
                last_error = e
                if attempt < self._config.max_attempts:
                    wait_time = self._backoff(attempt)
                    logger.warning(
                        "Create failed, retrying",
                        extra={
                            "node": str(node.ref),
                            "attempt": attempt,
                            "max_attempts": self._config.max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await self._pause(wait_time, node)

        raise ProvisioningFailure(
            f"{node.ref}: transient retries exhausted after {self._config.max_attempts} attempts: "
            f"{last_error}",
            cause=last_error,
        )

    async def _create_once(self, node: ResourceNode, payload: dict[str, Any]) -> ProviderHandle:
        response = await self._provider.create_or_update(node.kind, node.name, payload)

        match response.status:
            case OperationStatus.SUCCEEDED if response.handle is not None:
                return response.handle
            case OperationStatus.SUCCEEDED | OperationStatus.ACCEPTED:
                return await self._wait_until_provisioned(node)
            case _:
                raise response.error or PermanentProviderError(
                    f"{node.ref}: provider reported failure without detail"
                )

    async def _wait_until_provisioned(self, node: ResourceNode) -> ProviderHandle:
        """Poll until the live resource reaches a terminal provisioning state."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.max_poll_wait_seconds
        delay = self._config.poll_interval_seconds

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProvisioningCancelled(
                    f"{node.ref}: still provisioning after "
                    f"{self._config.max_poll_wait_seconds:.0f}s"
                )
            jittered = delay + random.uniform(0, delay * JITTER_RATIO)
            await self._pause(min(jittered, remaining), node)

            live = await self._provider.get(node.kind, node.name)
            if live is not None:
                if live.provisioning_state == ProvisioningState.SUCCEEDED:
                    return live.handle
                if live.provisioning_state.terminal:
                    raise live.error or PermanentProviderError(
                        f"{node.ref}: provisioning ended in state "
                        f"{live.provisioning_state.value}"
                    )

            logger.debug(
                "Still provisioning",
                extra={
                    "node": str(node.ref),
                    "state": live.provisioning_state.value if live else "NotFound",
                },
            )
            delay = min(delay * 2, self._config.max_poll_interval_seconds)

    async def _read(self, node: ResourceNode) -> LiveResource | None:
        return await self._call_with_retry(
            node, "get", lambda: self._provider.get(node.kind, node.name)
        )

    async def _call_with_retry(
        self, node: ResourceNode, operation: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        """Run a provider call, retrying transient errors with backoff."""
        for attempt in range(1, self._config.max_attempts + 1):
            try:
                return await call()
            except PermanentProviderError as e:
                raise ProvisioningFailure(f"{node.ref}: {operation} failed: {e}", cause=e) from e
            except TransientProviderError as e:
                if attempt == self._config.max_attempts:
                    raise ProvisioningFailure(
                        f"{node.ref}: {operation} retries exhausted: {e}", cause=e
                    ) from e
                wait_time = self._backoff(attempt)
                logger.warning(
                    f"Provider {operation} failed, retrying",
                    extra={"node": str(node.ref), "attempt": attempt, "error": str(e)},
                )
                await self._pause(wait_time, node)
        raise AssertionError("unreachable: max_attempts is at least 1")

    def _backoff(self, attempt: int) -> float:
        backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
        jitter = random.uniform(0, backoff * JITTER_RATIO)
        return backoff + jitter

    async def _pause(self, seconds: float, node: ResourceNode) -> None:
        """Sleep unless abort() is called first.

        Raises:
            ProvisioningCancelled: If an abort was requested.
        """
        if self._abort_event.is_set():
            raise ProvisioningCancelled(f"{node.ref}: aborted")
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=max(seconds, 0.0))
        except TimeoutError:
            return
        raise ProvisioningCancelled(f"{node.ref}: aborted")

    # =========================================================================
    # Plan preview
    # =========================================================================

    async def plan(
        self, graph: ResourceGraph, plan: ExecutionPlan | None = None
    ) -> list[PlannedAction]:
        """Preview what apply() would do, without mutating the graph.

        References to nodes that do not exist yet are resolved against live
        handles read earlier in the preview; a node whose referents are not
        live is reported as a create (or update if it already exists).
        """
        plan = plan or resolve_plan(graph)
        preview_handles: dict[ResourceRef, ProviderHandle] = {}
        actions: list[PlannedAction] = []

        for index, wave in enumerate(plan):
            for node in wave:
                live = await self._read(node)
                if live is not None:
                    preview_handles[node.ref] = live.handle

                try:
                    resolved = {
                        role: preview_handles.get(ref) or graph.resolve(ref)
                        for role, ref in node.references.items()
                    }
                except UnresolvedReferenceError:
                    resolved = None

                if live is None:
                    actions.append(PlannedAction(node.ref, index, NodeAction.CREATE))
                    continue
                if resolved is None:
                    actions.append(PlannedAction(node.ref, index, NodeAction.UPDATE))
                    continue

                drifted = diff_properties(
                    node.kind, render_payload(node, resolved), live.properties
                )
                if live.provisioning_state != ProvisioningState.SUCCEEDED:
                    drifted.append("provisioning_state")
                action = NodeAction.UPDATE if drifted else NodeAction.NOOP
                actions.append(PlannedAction(node.ref, index, action, tuple(drifted)))

        logger.info(
            "Plan computed",
            extra={
                action.value: sum(1 for a in actions if a.action == action)
                for action in (NodeAction.CREATE, NodeAction.UPDATE, NodeAction.NOOP)
            },
        )
        return actions

    async def refresh(
        self, graph: ResourceGraph, plan: ExecutionPlan | None = None
    ) -> list[ResourceRef]:
        """Attach live handles to nodes whose resources already exist.

        Nothing is created or updated. Used before validation and projection
        in a process that did not run apply() itself.

        Returns:
            References of nodes with no succeeded live resource.
        """
        plan = plan or resolve_plan(graph)
        missing: list[ResourceRef] = []
        for wave in plan:
            for node in wave:
                live = await self._read(node)
                if live is not None and live.provisioning_state == ProvisioningState.SUCCEEDED:
                    node.mark_created(live.handle)
                else:
                    missing.append(node.ref)
        return missing

    # =========================================================================
    # Destroy
    # =========================================================================

    async def destroy(self, graph: ResourceGraph, plan: ExecutionPlan | None = None) -> RunResult:
        """Delete every node in reverse wave order.

        Never called implicitly. Deletion is idempotent: a resource that is
        already gone counts as deleted. Destroyed nodes return to Pending.
        A failed wave halts the run so that nothing a surviving resource
        depends on is removed.
        """
        plan = plan or resolve_plan(graph)
        self._abort_event.clear()
        return await self._run_waves(
            graph, list(reversed(list(plan))), Operation.DESTROY, self._delete
        )

    async def _delete(self, graph: ResourceGraph, node: ResourceNode) -> NodeAction:
        node.attempts += 1
        status = await self._call_with_retry(
            node, "delete", lambda: self._provider.delete(node.kind, node.name)
        )
        if status == OperationStatus.FAILED:
            raise ProvisioningFailure(f"{node.ref}: provider reported delete failure")

        if status == OperationStatus.ACCEPTED:
            await self._wait_until_deleted(node)

        node.reset()
        logger.info("Node deleted", extra={"node": str(node.ref)})
        return NodeAction.DELETE

    async def _wait_until_deleted(self, node: ResourceNode) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.max_poll_wait_seconds
        delay = self._config.poll_interval_seconds

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProvisioningCancelled(f"{node.ref}: still deleting after max wait")
            await self._pause(min(delay, remaining), node)
            if await self._read(node) is None:
                return
            delay = min(delay * 2, self._config.max_poll_interval_seconds)

    # =========================================================================
    # Reporting
    # =========================================================================

    def _report(
        self, node: ResourceNode, attempted: bool, actions: dict[ResourceRef, NodeAction]
    ) -> NodeReport:
        error_kind: str | None = None
        if isinstance(node.error, ProvisioningFailure):
            error_kind = node.error.cause_kind
        elif node.error is not None:
            error_kind = type(node.error).__name__

        return NodeReport(
            ref=node.ref,
            state=node.state,
            attempted=attempted,
            attempts=node.attempts,
            action=actions.get(node.ref),
            error_kind=error_kind,
            error_message=str(node.error) if node.error is not None else None,
        )

    def _log_result(self, result: RunResult) -> None:
        """Log run result with structured data."""
        extra: dict[str, Any] = {
            "operation": result.operation.value,
            "duration_seconds": result.duration_seconds,
            "waves_total": result.waves_total,
            "waves_completed": result.waves_completed,
            "aborted": result.aborted,
            "nodes_created": result.calls_for(NodeAction.CREATE),
            "nodes_updated": result.calls_for(NodeAction.UPDATE),
            "nodes_unchanged": result.calls_for(NodeAction.NOOP),
        }
        if result.failed:
            extra["failed"] = [r.as_dict() for r in result.failed]
            logger.error("Run failed", extra=extra)
        else:
            logger.info("Run result", extra=extra)
