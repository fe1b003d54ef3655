"""
Deployment State Journal
Records per-run and per-resource progress of apply/destroy runs.

The journal is informational: live AWS state is always re-read, so a lost or
stale journal never changes what a run does.
"""
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)


class DeploymentStatus(Enum):
    """Status of a run or of one resource within it."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ResourceState:
    """State of a single resource in a run."""
    name: str
    kind: str
    status: str = DeploymentStatus.PENDING.value
    action: Optional[str] = None
    physical_id: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None

    def finish(self, status: DeploymentStatus) -> None:
        self.status = status.value
        self.completed_at = time.time()
        if self.started_at:
            self.duration_seconds = self.completed_at - self.started_at


@dataclass
class DeploymentState:
    """One apply or destroy run."""
    deployment_id: str
    operation: str
    app_name: str
    started_at: float
    resources: Dict[str, ResourceState] = field(default_factory=dict)
    status: str = DeploymentStatus.IN_PROGRESS.value
    completed_at: Optional[float] = None
    total_duration: Optional[float] = None
    error_message: Optional[str] = None


class DeploymentStateManager:
    """Writes the journal file. Safe to call from worker threads."""

    def __init__(self, state_file: str = ".deployment_state.json"):
        self.state_file = Path(state_file)
        self.state: Optional[DeploymentState] = None
        self._lock = threading.RLock()

    def start_deployment(self, deployment_id: str, operation: str, app_name: str,
                         resources: Iterable[Tuple[str, str]]) -> DeploymentState:
        """Start tracking a run over ``(name, kind)`` resources."""
        with self._lock:
            self.state = DeploymentState(
                deployment_id=deployment_id,
                operation=operation,
                app_name=app_name,
                started_at=time.time(),
            )
            for name, kind in resources:
                self.state.resources[name] = ResourceState(name=name, kind=kind)
            self._save_state()

        logger.info(f"🚀 Started {operation} tracking: {deployment_id}")
        return self.state

    def _resource(self, name: str) -> ResourceState:
        if not self.state:
            raise ValueError("No active deployment")
        return self.state.resources[name]

    def start_resource(self, name: str) -> None:
        with self._lock:
            resource = self._resource(name)
            resource.status = DeploymentStatus.IN_PROGRESS.value
            resource.started_at = time.time()
            self._save_state()

    def complete_resource(self, name: str, action: str, physical_id: Optional[str] = None) -> None:
        with self._lock:
            resource = self._resource(name)
            resource.action = action
            resource.physical_id = physical_id
            resource.finish(DeploymentStatus.COMPLETED)
            self._save_state()

    def fail_resource(self, name: str, error_message: str) -> None:
        with self._lock:
            resource = self._resource(name)
            resource.error_message = error_message
            resource.finish(DeploymentStatus.FAILED)
            self._save_state()

        logger.error(f"❌ Resource failed: {name} - {error_message}")

    def _finish(self, status: DeploymentStatus, error_message: Optional[str] = None) -> None:
        if not self.state:
            raise ValueError("No active deployment")
        self.state.status = status.value
        self.state.error_message = error_message
        self.state.completed_at = time.time()
        self.state.total_duration = self.state.completed_at - self.state.started_at
        self._save_state()

    def complete_deployment(self) -> None:
        with self._lock:
            self._finish(DeploymentStatus.COMPLETED)
        logger.info(f"🎉 {self.state.operation} completed: {self.state.deployment_id} "
                    f"in {self.state.total_duration:.1f}s")

    def fail_deployment(self, error_message: str) -> None:
        with self._lock:
            self._finish(DeploymentStatus.FAILED, error_message)

    def cancel_deployment(self) -> None:
        with self._lock:
            self._finish(DeploymentStatus.CANCELLED, "cancelled by user")
        logger.warning(f"⚠️ {self.state.operation} cancelled: {self.state.deployment_id}")

    def load_state(self) -> Optional[DeploymentState]:
        """Load the last run from the journal file, if any."""
        if not self.state_file.exists():
            return None
        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)

            data['resources'] = {
                name: ResourceState(**resource) for name, resource in data.get('resources', {}).items()
            }
            self.state = DeploymentState(**data)
            logger.debug(f"📋 Loaded deployment state: {self.state.deployment_id}")
            return self.state
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"⚠️ Failed to load deployment state from {self.state_file}: {e}")
            return None

    def _save_state(self) -> None:
        if not self.state:
            return
        try:
            with open(self.state_file, 'w') as f:
                json.dump(asdict(self.state), f, indent=2)
        except OSError as e:
            logger.error(f"❌ Failed to save deployment state: {e}")

    def cleanup_state_file(self) -> None:
        if self.state_file.exists():
            self.state_file.unlink()
            logger.info(f"🗑️ Cleaned up state file: {self.state_file}")

    def get_status_summary(self) -> Dict[str, Any]:
        if not self.state:
            return {"status": "no_deployment"}

        completed = sum(1 for r in self.state.resources.values()
                        if r.status == DeploymentStatus.COMPLETED.value)
        return {
            "deployment_id": self.state.deployment_id,
            "operation": self.state.operation,
            "app_name": self.state.app_name,
            "status": self.state.status,
            "progress": f"{completed}/{len(self.state.resources)}",
            "duration": self.state.total_duration,
            "started_at": self.state.started_at,
            "error": self.state.error_message,
            "resources": {
                name: {
                    "status": r.status,
                    "action": r.action,
                    "physical_id": r.physical_id,
                    "duration": r.duration_seconds,
                    "error": r.error_message,
                } for name, r in self.state.resources.items()
            },
        }


def create_deployment_id(operation: str) -> str:
    return f"{operation}-{int(time.time())}"
