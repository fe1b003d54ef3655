"""Common shape of a managed AWS resource and the context it is applied in."""
import json
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote

from fargate_deploy.aws.utils import AWSClientManager, EVENTUAL_CONSISTENCY_CODES, call_aws, paginate
from fargate_deploy.config.deployment import DeploymentConfig
from fargate_deploy.config.settings import Settings

logger = logging.getLogger(__name__)

Changes = Dict[str, Tuple[Any, Any]]


class Action(Enum):
    """What apply/plan/destroy did (or would do) to one resource."""
    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"
    DELETE = "delete"
    SKIP = "skip"
    CONFLICT = "conflict"


class ResourceContext:
    """Shared state for one run: config, clients and the outputs of applied resources.

    Outputs are written by worker threads, so access goes through a lock.
    """

    def __init__(self, config: DeploymentConfig, settings: Settings,
                 clients: Optional[AWSClientManager] = None):
        self.config = config
        self.settings = settings
        self.clients = clients or AWSClientManager(settings, region=config.region)
        self._outputs: Dict[str, Dict[str, Any]] = {}
        self._credentials: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()
        self._account_lock = threading.Lock()
        self._account_id: Optional[str] = None

    def client(self, service_name: str) -> Any:
        return self.clients.get_client(service_name)

    @property
    def region(self) -> str:
        return self.config.region

    @property
    def account_id(self) -> str:
        with self._account_lock:
            if self._account_id is None:
                self._account_id = self.clients.account_id()
            return self._account_id

    def read(self, step: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Describe/list call: retried on throttling only."""
        return call_aws(step, func, *args,
                        max_attempts=self.settings.provider_max_attempts,
                        delay=self.settings.provider_retry_delay, **kwargs)

    def mutate(self, step: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Create/update/delete call: also retried on eventual-consistency errors."""
        return call_aws(step, func, *args,
                        max_attempts=self.settings.provider_max_attempts,
                        delay=self.settings.provider_retry_delay,
                        retry_codes=EVENTUAL_CONSISTENCY_CODES, **kwargs)

    def paginate(self, step: str, client: Any, operation: str, result_key: str, **kwargs) -> List[Any]:
        return paginate(step, client, operation, result_key,
                        max_attempts=self.settings.provider_max_attempts,
                        delay=self.settings.provider_retry_delay, **kwargs)

    def set_outputs(self, name: str, outputs: Dict[str, Any]) -> None:
        with self._lock:
            self._outputs[name] = dict(outputs)

    def drop_outputs(self, name: str) -> None:
        with self._lock:
            self._outputs.pop(name, None)

    def output(self, name: str, key: str, default: Any = None) -> Any:
        """Output of an upstream resource; ``default`` when it does not exist yet."""
        with self._lock:
            return self._outputs.get(name, {}).get(key, default)

    def outputs(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: dict(values) for name, values in self._outputs.items()}

    def emit_credentials(self, name: str, credentials: Dict[str, str]) -> None:
        """Hand a secret to the caller. Never stored in outputs or the journal."""
        with self._lock:
            self._credentials[name] = dict(credentials)

    def credentials(self) -> Dict[str, Dict[str, str]]:
        with self._lock:
            return {name: dict(values) for name, values in self._credentials.items()}

    def tags(self, name: str) -> Dict[str, str]:
        """Tags for one resource. ``LogicalName`` makes lookups unambiguous."""
        return {**self.config.resource_tags(),
                "Name": f"{self.config.app_name}-{name}",
                "LogicalName": name}


class Resource:
    """A single AWS resource with a stable logical name.

    Subclasses implement ``read`` (live state or None), ``create``, ``delete``
    and optionally ``diff``/``update``. ``read`` must find the resource by its
    logical name or tags, never by a remembered id, so interrupted runs can be
    resumed without creating duplicates.
    """
    kind = "resource"

    def __init__(self, name: str, depends_on: Iterable[str] = ()):
        self.name = name
        self.depends_on: List[str] = list(depends_on)

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name}>"

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        raise NotImplementedError

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        """Mutable differences between declared and live state.

        Raise ``ConflictError`` for differences that cannot be updated in place.
        """
        return {}

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        raise NotImplementedError(f"{self.kind} {self.name} cannot be updated in place")

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        raise NotImplementedError

    def physical_id(self, live: Dict[str, Any]) -> Optional[str]:
        return live.get('arn') or live.get('id') or live.get('name')


def policy_document(statements: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"Version": "2012-10-17", "Statement": statements}


def decode_policy(document: Any) -> Dict[str, Any]:
    """IAM returns policy documents either decoded or URL-encoded JSON."""
    if isinstance(document, str):
        return json.loads(unquote(document))
    return document
