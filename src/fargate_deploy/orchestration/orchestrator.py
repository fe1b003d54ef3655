"""
Provisioning Orchestrator
Converges live AWS state to the resource graph: plan, apply and destroy.

Levels of the graph run one after another; resources inside a level run on a
thread pool bounded by ``max_concurrency``. Every resource is looked up by its
logical name before anything is created, which makes apply idempotent and lets
a failed or cancelled run be resumed by running it again.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from fargate_deploy.aws.base import Action, Changes, Resource, ResourceContext
from fargate_deploy.aws.utils import AWSClientManager
from fargate_deploy.config.deployment import DeploymentConfig
from fargate_deploy.config.settings import Settings, get_settings
from fargate_deploy.exceptions import ConflictError, DeployError
from fargate_deploy.orchestration.deployment_state import DeploymentStateManager, create_deployment_id
from fargate_deploy.orchestration.graph import ResourceGraph
from fargate_deploy.orchestration.stack import build_resource_graph
from fargate_deploy.utils.decorators import log_execution_time

logger = logging.getLogger(__name__)

MUTATING_ACTIONS = (Action.CREATE, Action.UPDATE, Action.DELETE)


@dataclass
class ResourceChange:
    """What happened (or would happen) to one resource."""
    name: str
    kind: str
    action: Action
    changes: Changes = field(default_factory=dict)
    physical_id: Optional[str] = None
    message: Optional[str] = None

    def describe(self) -> str:
        line = f"{self.action.value:<8} {self.kind} {self.name}"
        if self.physical_id:
            line += f" ({self.physical_id})"
        if self.changes:
            line += f": {', '.join(sorted(self.changes))}"
        if self.message:
            line += f" - {self.message}"
        return line


@dataclass
class Plan:
    changes: List[ResourceChange]

    @property
    def has_changes(self) -> bool:
        return any(c.action is not Action.NOOP for c in self.changes)

    @property
    def conflicts(self) -> List[ResourceChange]:
        return [c for c in self.changes if c.action is Action.CONFLICT]

    def by_action(self, action: Action) -> List[ResourceChange]:
        return [c for c in self.changes if c.action is action]


@dataclass
class ApplyResult:
    """Outcome of apply. ``credentials`` holds secrets created in this run; never log it."""
    deployment_id: str
    changes: List[ResourceChange]
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    credentials: Dict[str, Dict[str, str]] = field(default_factory=dict, repr=False)
    cancelled: bool = False

    @property
    def mutations(self) -> List[ResourceChange]:
        return [c for c in self.changes if c.action in MUTATING_ACTIONS]


@dataclass
class DestroyResult:
    deployment_id: str
    changes: List[ResourceChange]
    cancelled: bool = False

    @property
    def deleted(self) -> List[ResourceChange]:
        return [c for c in self.changes if c.action is Action.DELETE]


class Orchestrator:
    """Runs plan/apply/destroy for one deployment config."""

    def __init__(self, config: DeploymentConfig, settings: Optional[Settings] = None,
                 clients: Optional[AWSClientManager] = None,
                 journal: Optional[DeploymentStateManager] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.config = config
        self.settings = settings or get_settings()
        self.clients = clients or AWSClientManager(self.settings, region=config.region)
        self.journal = journal or DeploymentStateManager(self.settings.state_file)
        self.cancel_event = cancel_event or threading.Event()

    def new_context(self) -> ResourceContext:
        return ResourceContext(self.config, self.settings, self.clients)

    def cancel(self) -> None:
        """Stop scheduling further resources. Work already done is kept."""
        logger.warning("⚠️ Cancellation requested; finishing in-flight resources")
        self.cancel_event.set()

    # Plan

    @log_execution_time("plan")
    def plan(self, graph: Optional[ResourceGraph] = None) -> Plan:
        """Read live state and report what apply would do, without mutating anything."""
        graph = graph or build_resource_graph(self.config)
        ctx = self.new_context()
        planned: Dict[str, ResourceChange] = {}

        for level in graph.levels():
            for resource in level:
                planned[resource.name] = self._plan_node(ctx, resource, planned)
        return Plan(changes=[planned[name] for name in graph.names])

    def _plan_node(self, ctx: ResourceContext, resource: Resource,
                   planned: Dict[str, ResourceChange]) -> ResourceChange:
        live = resource.read(ctx)
        if live is None:
            return ResourceChange(resource.name, resource.kind, Action.CREATE)

        ctx.set_outputs(resource.name, live)
        physical_id = resource.physical_id(live)
        pending = sorted(d for d in resource.depends_on if planned[d].action is Action.CREATE)
        if pending:
            return ResourceChange(resource.name, resource.kind, Action.UPDATE,
                                  changes={'dependencies': (None, pending)}, physical_id=physical_id,
                                  message="depends on resources still to be created")
        try:
            changes = resource.diff(ctx, live)
        except ConflictError as e:
            return ResourceChange(resource.name, resource.kind, Action.CONFLICT,
                                  physical_id=physical_id, message=e.message)
        action = Action.UPDATE if changes else Action.NOOP
        return ResourceChange(resource.name, resource.kind, action, changes=changes, physical_id=physical_id)

    # Apply

    @log_execution_time("apply")
    def apply(self, graph: Optional[ResourceGraph] = None) -> ApplyResult:
        """Create missing resources, update drifted ones, leave matching ones alone."""
        graph = graph or build_resource_graph(self.config)
        levels = graph.levels()
        ctx = self.new_context()
        deployment_id = create_deployment_id("apply")
        self.journal.start_deployment(deployment_id, "apply", self.config.app_name,
                                      [(r.name, r.kind) for r in graph])

        changes = self._run_levels(levels, lambda resource: self._apply_node(ctx, resource))
        cancelled = self.cancel_event.is_set()
        if cancelled:
            self.journal.cancel_deployment()
        else:
            self.journal.complete_deployment()

        result = ApplyResult(
            deployment_id=deployment_id,
            changes=[changes[name] for name in graph.names if name in changes],
            outputs=ctx.outputs(),
            credentials=ctx.credentials(),
            cancelled=cancelled,
        )
        logger.info(f"Apply finished: {len(result.mutations)} mutations, "
                    f"{len(result.changes) - len(result.mutations)} unchanged")
        return result

    def _apply_node(self, ctx: ResourceContext, resource: Resource) -> ResourceChange:
        live = resource.read(ctx)
        if live is None:
            outputs = resource.create(ctx)
            action, changes = Action.CREATE, {}
        else:
            changes = resource.diff(ctx, live)
            if changes:
                outputs = resource.update(ctx, live, changes)
                action = Action.UPDATE
            else:
                outputs, action = live, Action.NOOP

        ctx.set_outputs(resource.name, outputs)
        physical_id = resource.physical_id(outputs)
        if action is Action.NOOP:
            logger.debug(f"{resource.name}: up to date")
        else:
            logger.info(f"✅ {resource.name}: {action.value} ({physical_id})")
        return ResourceChange(resource.name, resource.kind, action, changes=changes, physical_id=physical_id)

    # Destroy

    @log_execution_time("destroy")
    def destroy(self, graph: Optional[ResourceGraph] = None) -> DestroyResult:
        """Delete every existing resource of the graph, dependents first."""
        graph = graph or build_resource_graph(self.config)
        levels = graph.levels()
        ctx = self.new_context()
        deployment_id = create_deployment_id("destroy")
        self.journal.start_deployment(deployment_id, "destroy", self.config.app_name,
                                      [(r.name, r.kind) for r in graph])

        # Lookups of dependents need their dependencies' ids, so read forward first
        live_state: Dict[str, Optional[Dict[str, Any]]] = {}
        for level in levels:
            for resource in level:
                live = resource.read(ctx)
                live_state[resource.name] = live
                if live is not None:
                    ctx.set_outputs(resource.name, live)

        changes = self._run_levels(
            list(reversed(levels)),
            lambda resource: self._destroy_node(ctx, resource, live_state[resource.name]),
        )
        cancelled = self.cancel_event.is_set()
        if cancelled:
            self.journal.cancel_deployment()
        else:
            self.journal.complete_deployment()

        result = DestroyResult(
            deployment_id=deployment_id,
            changes=[changes[name] for name in reversed(graph.names) if name in changes],
            cancelled=cancelled,
        )
        logger.info(f"Destroy finished: {len(result.deleted)} resources deleted")
        return result

    def _destroy_node(self, ctx: ResourceContext, resource: Resource,
                      live: Optional[Dict[str, Any]]) -> ResourceChange:
        if live is None:
            return ResourceChange(resource.name, resource.kind, Action.SKIP, message="not found")
        resource.delete(ctx, live)
        ctx.drop_outputs(resource.name)
        physical_id = resource.physical_id(live)
        logger.info(f"🗑️ {resource.name}: deleted ({physical_id})")
        return ResourceChange(resource.name, resource.kind, Action.DELETE, physical_id=physical_id)

    # Execution

    def _run_levels(self, levels: List[List[Resource]],
                    operation: Callable[[Resource], ResourceChange]) -> Dict[str, ResourceChange]:
        """Run ``operation`` level by level. The first failure stops the run after its level drains."""
        results: Dict[str, ResourceChange] = {}
        results_lock = threading.Lock()
        failures: List[DeployError] = []

        def run(resource: Resource) -> None:
            if self.cancel_event.is_set() or failures:
                return
            self.journal.start_resource(resource.name)
            try:
                change = operation(resource)
            except DeployError as e:
                self.journal.fail_resource(resource.name, e.message)
                with results_lock:
                    failures.append(e)
                return
            except Exception as e:
                self.journal.fail_resource(resource.name, str(e))
                raise
            self.journal.complete_resource(resource.name, change.action.value, change.physical_id)
            with results_lock:
                results[resource.name] = change

        for index, level in enumerate(levels):
            if self.cancel_event.is_set():
                logger.warning(f"⚠️ Cancelled before level {index + 1}/{len(levels)}")
                break
            logger.info(f"📋 Level {index + 1}/{len(levels)}: {', '.join(r.name for r in level)}")
            workers = max(1, min(self.settings.max_concurrency, len(level)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resource") as pool:
                futures = [pool.submit(run, resource) for resource in level]
                try:
                    for future in futures:
                        future.result()
                except KeyboardInterrupt:
                    # Queued resources see the event and return without running
                    self.cancel()
                    self.journal.cancel_deployment()
                    raise
                except Exception as e:
                    self.journal.fail_deployment(str(e))
                    raise
            if failures:
                error = failures[0]
                self.journal.fail_deployment(f"{error.step}: {error.message}")
                raise error
        return results
