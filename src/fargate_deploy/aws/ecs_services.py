"""ECS Fargate service behind the load balancer."""
import logging
import time
from typing import Any, Dict, List, Optional

from fargate_deploy.aws.base import Changes, Resource, ResourceContext
from fargate_deploy.aws.utils import to_ecs_tags
from fargate_deploy.exceptions import ProviderError

logger = logging.getLogger(__name__)

HEALTH_CHECK_GRACE_PERIOD = 60


def describe_service(ctx: ResourceContext, step: str, cluster: str, service: str) -> Optional[Dict[str, Any]]:
    """Live service description, or None when the cluster or service is gone."""
    ecs = ctx.client('ecs')
    try:
        response = ctx.read(step, ecs.describe_services, cluster=cluster, services=[service])
    except ProviderError as e:
        if e.code == 'ClusterNotFoundException':
            return None
        raise
    services = response.get('services', [])
    if not services or services[0].get('status') == 'INACTIVE':
        return None
    return services[0]


class ServiceResource(Resource):
    """The Fargate service.

    The service's task definition is never compared: deployments move it
    forward out-of-band and apply must not revert them. Only the replica
    count is converged.
    """
    kind = "ecs_service"

    def __init__(self, name: str = "service", cluster: str = "cluster",
                 task_definition: str = "task-definition", target_group: str = "target-group",
                 listener: str = "listener", security_group: str = "service-sg",
                 subnets: List[str] = (), route_table: str = "public-route-table"):
        super().__init__(name, depends_on=[cluster, task_definition, target_group, listener,
                                           security_group, route_table, *subnets])
        self.cluster = cluster
        self.task_definition = task_definition
        self.target_group = target_group
        self.security_group = security_group
        self.subnets = list(subnets)

    def _live(self, service: Dict[str, Any], cluster: str) -> Dict[str, Any]:
        return {
            'name': service['serviceName'],
            'arn': service['serviceArn'],
            'cluster': cluster,
            'desired_count': service.get('desiredCount'),
            'task_definition': service.get('taskDefinition'),
        }

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        cluster = ctx.config.cluster_name
        service = describe_service(ctx, self.name, cluster, ctx.config.service_name)
        if service is None or service.get('status') != 'ACTIVE':
            return None
        return self._live(service, cluster)

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        declared = ctx.config.service.desired_count
        if live['desired_count'] != declared:
            return {'desired_count': (live['desired_count'], declared)}
        return {}

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        ecs = ctx.client('ecs')
        declared = ctx.config.service.desired_count
        ctx.mutate(self.name, ecs.update_service, cluster=live['cluster'],
                   service=live['name'], desiredCount=declared)
        logger.info(f"Scaled service {live['name']} to {declared} tasks")
        return {**live, 'desired_count': declared}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        ecs = ctx.client('ecs')
        config = ctx.config
        response = ctx.mutate(
            self.name, ecs.create_service,
            cluster=config.cluster_name,
            serviceName=config.service_name,
            taskDefinition=ctx.output(self.task_definition, 'arn'),
            desiredCount=config.service.desired_count,
            launchType='FARGATE',
            networkConfiguration={
                'awsvpcConfiguration': {
                    'subnets': [ctx.output(s, 'id') for s in self.subnets],
                    'securityGroups': [ctx.output(self.security_group, 'id')],
                    'assignPublicIp': 'ENABLED'
                }
            },
            loadBalancers=[
                {
                    'targetGroupArn': ctx.output(self.target_group, 'arn'),
                    'containerName': config.container_name,
                    'containerPort': config.service.container_port
                }
            ],
            healthCheckGracePeriodSeconds=HEALTH_CHECK_GRACE_PERIOD,
            deploymentConfiguration={
                'deploymentCircuitBreaker': {'enable': True, 'rollback': True},
                'maximumPercent': 200,
                'minimumHealthyPercent': 100,
            },
            propagateTags='SERVICE',
            tags=to_ecs_tags(ctx.tags(self.name)),
        )
        service = response['service']
        logger.info(f"Created ECS service: {service['serviceName']}")
        return self._live(service, config.cluster_name)

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        ecs = ctx.client('ecs')
        if live['desired_count']:
            ctx.mutate(self.name, ecs.update_service, cluster=live['cluster'],
                       service=live['name'], desiredCount=0)
        ctx.mutate(self.name, ecs.delete_service, cluster=live['cluster'],
                   service=live['name'], force=True)
        self._wait_until_gone(ctx, live)
        logger.info(f"Deleted ECS service: {live['name']}")

    def _wait_until_gone(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        """Block while the service drains so the cluster and target group can be removed."""
        deadline = time.time() + ctx.settings.rollout_timeout
        while True:
            service = describe_service(ctx, self.name, live['cluster'], live['name'])
            if service is None:
                return
            if time.time() >= deadline:
                raise ProviderError(self.name, f"service still {service.get('status')} after "
                                               f"{ctx.settings.rollout_timeout:.0f}s")
            logger.info(f"Waiting for service {live['name']} to drain ({service.get('status')})...")
            time.sleep(ctx.settings.rollout_poll_interval)
