"""
ECS Task Definition Builder
Builds the Fargate task definition for the application container.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fargate_deploy.aws.base import Resource, ResourceContext
from fargate_deploy.aws.utils import to_ecs_tags
from fargate_deploy.exceptions import ProviderError

logger = logging.getLogger(__name__)

# delete_task_definitions accepts at most this many revisions per call
DELETE_BATCH_SIZE = 10

# Fields accepted by register_task_definition, in describe_task_definition output.
REGISTERABLE_FIELDS = (
    'family',
    'taskRoleArn',
    'executionRoleArn',
    'networkMode',
    'containerDefinitions',
    'volumes',
    'placementConstraints',
    'requiresCompatibilities',
    'cpu',
    'memory',
    'pidMode',
    'ipcMode',
    'proxyConfiguration',
    'inferenceAccelerators',
    'ephemeralStorage',
    'runtimePlatform',
)


@dataclass
class TaskDefinitionConfig:
    """Configuration for the Fargate task definition."""
    family: str
    container_name: str
    image: str
    container_port: int
    cpu: str
    memory: str
    execution_role_arn: str
    log_group: str
    region: str
    environment: Dict[str, str] = field(default_factory=dict)
    requires_compatibilities: List[str] = field(default_factory=lambda: ['FARGATE'])

    def to_request(self) -> Dict[str, Any]:
        return {
            'family': self.family,
            'networkMode': 'awsvpc',
            'requiresCompatibilities': self.requires_compatibilities,
            'cpu': self.cpu,
            'memory': self.memory,
            'executionRoleArn': self.execution_role_arn,
            'containerDefinitions': [
                {
                    'name': self.container_name,
                    'image': self.image,
                    'essential': True,
                    'portMappings': [
                        {
                            'containerPort': self.container_port,
                            'protocol': 'tcp'
                        }
                    ],
                    'environment': [
                        {'name': k, 'value': v} for k, v in sorted(self.environment.items())
                    ],
                    'logConfiguration': {
                        'logDriver': 'awslogs',
                        'options': {
                            'awslogs-group': self.log_group,
                            'awslogs-region': self.region,
                            'awslogs-stream-prefix': 'ecs'
                        }
                    }
                }
            ],
        }


def registration_request(task_definition: Dict[str, Any], container_name: str,
                         image: str) -> Dict[str, Any]:
    """Copy a described task definition with one container's image replaced.

    Raises KeyError when the container is not part of the task definition.
    """
    request = {k: task_definition[k] for k in REGISTERABLE_FIELDS if task_definition.get(k) is not None}
    containers = [dict(c) for c in request.get('containerDefinitions', [])]
    for container in containers:
        if container['name'] == container_name:
            container['image'] = image
            break
    else:
        raise KeyError(container_name)
    request['containerDefinitions'] = containers
    return request


def container_image(task_definition: Dict[str, Any], container_name: str) -> Optional[str]:
    for container in task_definition.get('containerDefinitions', []):
        if container['name'] == container_name:
            return container.get('image')
    return None


class TaskDefinitionResource(Resource):
    """Task definition family for the service.

    Only registered when the family has no active revision. Later revisions
    come from the deployment step (or any external deployer) and are left
    alone, so the live definition may diverge from the declared one.
    """
    kind = "ecs_task_definition"

    def __init__(self, name: str = "task-definition", repository: str = "repository",
                 execution_role: str = "execution-role", log_group: str = "log-group"):
        super().__init__(name, depends_on=[repository, execution_role, log_group])
        self.repository = repository
        self.execution_role = execution_role
        self.log_group = log_group

    def build_config(self, ctx: ResourceContext) -> TaskDefinitionConfig:
        config = ctx.config
        return TaskDefinitionConfig(
            family=config.task_family,
            container_name=config.container_name,
            image=f"{ctx.output(self.repository, 'uri')}:{config.service.image_tag}",
            container_port=config.service.container_port,
            cpu=str(config.service.cpu),
            memory=str(config.service.memory),
            execution_role_arn=ctx.output(self.execution_role, 'arn'),
            log_group=ctx.output(self.log_group, 'name', config.log_group_name),
            region=ctx.region,
        )

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        ecs = ctx.client('ecs')
        try:
            response = ctx.read(self.name, ecs.describe_task_definition,
                                taskDefinition=ctx.config.task_family)
        except ProviderError as e:
            if e.code in ('ClientException', 'ResourceNotFoundException'):
                return None
            raise
        task_def = response['taskDefinition']
        if task_def.get('status') != 'ACTIVE':
            return None
        return {
            'arn': task_def['taskDefinitionArn'],
            'family': task_def['family'],
            'revision': task_def['revision'],
            'image': container_image(task_def, ctx.config.container_name),
        }

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        ecs = ctx.client('ecs')
        request = self.build_config(ctx).to_request()
        response = ctx.mutate(self.name, ecs.register_task_definition,
                              tags=to_ecs_tags(ctx.tags(self.name)), **request)
        task_def = response['taskDefinition']
        logger.info(f"Registered task definition: {task_def['family']}:{task_def['revision']}")
        return {
            'arn': task_def['taskDefinitionArn'],
            'family': task_def['family'],
            'revision': task_def['revision'],
            'image': container_image(task_def, ctx.config.container_name),
        }

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        ecs = ctx.client('ecs')
        for arn in self._revisions(ctx, live['family'], 'ACTIVE'):
            ctx.mutate(self.name, ecs.deregister_task_definition, taskDefinition=arn)
        logger.info(f"Deregistered task definition family: {live['family']}")

        # Deregistered revisions keep their tags until they are deleted
        inactive = self._revisions(ctx, live['family'], 'INACTIVE')
        for start in range(0, len(inactive), DELETE_BATCH_SIZE):
            batch = inactive[start:start + DELETE_BATCH_SIZE]
            response = ctx.mutate(self.name, ecs.delete_task_definitions, taskDefinitions=batch)
            failures = response.get('failures', [])
            if failures:
                reasons = ", ".join(f"{f.get('arn')}: {f.get('reason')}" for f in failures)
                raise ProviderError(self.name, f"could not delete task definitions: {reasons}")
        logger.info(f"Deleted {len(inactive)} task definition revision(s) of {live['family']}")

    def _revisions(self, ctx: ResourceContext, family: str, status: str) -> List[str]:
        ecs = ctx.client('ecs')
        arns = ctx.paginate(self.name, ecs, 'list_task_definitions', 'taskDefinitionArns',
                        familyPrefix=family, status=status)
        # familyPrefix also matches longer family names
        return [arn for arn in arns if arn.rsplit('/', 1)[-1].rsplit(':', 1)[0] == family]
