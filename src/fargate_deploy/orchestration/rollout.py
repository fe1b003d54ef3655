"""
Deployment Trigger
Rolls the service onto the image named in an ``imagedefinitions.json`` manifest
and waits until the new deployment is stable behind the load balancer.
"""
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from fargate_deploy.aws.base import ResourceContext
from fargate_deploy.aws.ecs_services import describe_service
from fargate_deploy.aws.ecs_task_definitions import container_image, registration_request
from fargate_deploy.aws.utils import AWSClientManager
from fargate_deploy.build.artifacts import read_manifest
from fargate_deploy.config.deployment import DeploymentConfig
from fargate_deploy.config.settings import Settings, get_settings
from fargate_deploy.exceptions import ConfigError, ProviderError, RolloutTimeoutError
from fargate_deploy.models import ImageDefinition
from fargate_deploy.utils.decorators import log_execution_time

logger = logging.getLogger(__name__)

STEP = "deploy"


@dataclass
class RolloutResult:
    service_name: str
    image_uri: str
    task_definition_arn: str
    previous_task_definition_arn: Optional[str]
    registered: bool
    duration_seconds: float


class DeploymentTrigger:
    """Points the service at a new image and waits for a stable rollout.

    A rollout that does not stabilise raises ``RolloutTimeoutError`` and is
    left as it is: the load balancer keeps routing to the last healthy tasks
    and the service is never reverted from here.
    """

    def __init__(self, config: DeploymentConfig, settings: Optional[Settings] = None,
                 clients: Optional[AWSClientManager] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.settings = settings or get_settings()
        self.ctx = ResourceContext(config, self.settings,
                                   clients or AWSClientManager(self.settings, region=config.region))
        self.sleep = sleep
        self.clock = clock
        self._check_targets = True

    def _service(self) -> Dict[str, Any]:
        service = describe_service(self.ctx, STEP, self.config.cluster_name, self.config.service_name)
        if service is None:
            raise ProviderError(STEP, f"service {self.config.service_name} not found in "
                                      f"{self.config.cluster_name}; run apply first")
        return service

    @log_execution_time("deployment rollout")
    def deploy(self, manifest: Union[str, Path, ImageDefinition]) -> RolloutResult:
        definition = manifest if isinstance(manifest, ImageDefinition) else read_manifest(manifest)
        if definition.name != self.config.container_name:
            raise ConfigError(f"manifest names container {definition.name!r}, "
                              f"service runs {self.config.container_name!r}", step="manifest")

        started = self.clock()
        ecs = self.ctx.client('ecs')
        service = self._service()
        current_arn = service['taskDefinition']
        task_definition = self.ctx.read(STEP, ecs.describe_task_definition,
                                        taskDefinition=current_arn)['taskDefinition']

        if container_image(task_definition, self.config.container_name) == definition.imageUri:
            logger.info(f"Service already runs {definition.imageUri}; waiting for it to be stable")
            target_arn, registered = current_arn, False
        else:
            try:
                request = registration_request(task_definition, self.config.container_name, definition.imageUri)
            except KeyError:
                raise ConfigError(f"task definition {current_arn} has no container "
                                  f"{self.config.container_name!r}", step=STEP)
            registered_def = self.ctx.mutate(STEP, ecs.register_task_definition, **request)['taskDefinition']
            target_arn, registered = registered_def['taskDefinitionArn'], True
            logger.info(f"Registered {registered_def['family']}:{registered_def['revision']} "
                        f"with {definition.imageUri}")

            self.ctx.mutate(STEP, ecs.update_service, cluster=self.config.cluster_name,
                            service=self.config.service_name, taskDefinition=target_arn)
            logger.info(f"🚀 Updated {self.config.service_name} to {target_arn}")

        self.wait_for_rollout(target_arn)
        return RolloutResult(
            service_name=self.config.service_name,
            image_uri=definition.imageUri,
            task_definition_arn=target_arn,
            previous_task_definition_arn=current_arn if registered else None,
            registered=registered,
            duration_seconds=self.clock() - started,
        )

    def wait_for_rollout(self, task_definition_arn: str) -> None:
        """Poll until the service runs only ``task_definition_arn`` with every target healthy."""
        timeout = self.settings.rollout_timeout
        deadline = self.clock() + timeout
        while True:
            service = self._service()
            stable, detail = self.rollout_status(service, task_definition_arn)
            if stable:
                logger.info(f"✅ {self.config.service_name} is stable on {task_definition_arn}")
                return
            if self.clock() >= deadline:
                raise RolloutTimeoutError(self.config.service_name, timeout, detail)
            logger.info(f"⏳ {detail} - waiting...")
            self.sleep(self.settings.rollout_poll_interval)

    def rollout_status(self, service: Dict[str, Any], task_definition_arn: str):
        """``(stable, detail)`` for one service description."""
        deployments: List[Dict[str, Any]] = service.get('deployments', [])
        for deployment in deployments:
            if deployment.get('taskDefinition') == task_definition_arn and deployment.get('rolloutState') == 'FAILED':
                raise RolloutTimeoutError(
                    self.config.service_name, self.settings.rollout_timeout,
                    f"rollout failed: {deployment.get('rolloutStateReason', 'unknown reason')}"
                )

        primary = next((d for d in deployments if d.get('status') == 'PRIMARY'), None)
        if primary is None:
            return False, "no primary deployment yet"
        if primary.get('taskDefinition') != task_definition_arn:
            return False, f"primary deployment runs {primary.get('taskDefinition')}"
        if len(deployments) > 1:
            return False, f"{len(deployments) - 1} older deployment(s) still draining"
        desired = primary.get('desiredCount', 0)
        running = primary.get('runningCount', 0)
        if running != desired:
            return False, f"{running}/{desired} tasks running"
        if primary.get('rolloutState', 'COMPLETED') != 'COMPLETED':
            return False, f"rollout state {primary.get('rolloutState')}"

        healthy, detail = self.targets_healthy(service, desired)
        if not healthy:
            return False, detail
        return True, f"{running}/{desired} tasks running and healthy"

    def targets_healthy(self, service: Dict[str, Any], desired: int):
        if not self._check_targets:
            return True, "target health not checked"
        load_balancers = service.get('loadBalancers', [])
        if not load_balancers:
            return True, "no load balancer"

        elbv2 = self.ctx.client('elbv2')
        try:
            response = self.ctx.read(STEP, elbv2.describe_target_health,
                                     TargetGroupArn=load_balancers[0]['targetGroupArn'])
        except ProviderError as e:
            if e.code in ('AccessDenied', 'AccessDeniedException'):
                logger.warning("⚠️ Not allowed to read target health; relying on ECS deployment state")
                self._check_targets = False
                return True, "target health not checked"
            raise

        states = [t.get('TargetHealth', {}).get('State') for t in response.get('TargetHealthDescriptions', [])]
        healthy = sum(1 for s in states if s == 'healthy')
        if healthy < desired or healthy != len(states):
            return False, f"{healthy}/{len(states)} targets healthy"
        return True, f"{healthy} targets healthy"
