"""ECS cluster and the CloudWatch log group its tasks write to."""
import logging
from typing import Any, Dict, Optional

from fargate_deploy.aws.base import Changes, Resource, ResourceContext
from fargate_deploy.aws.utils import to_ecs_tags
from fargate_deploy.exceptions import ProviderError

logger = logging.getLogger(__name__)

LOG_RETENTION_DAYS = 30


class ClusterResource(Resource):
    """Fargate-only ECS cluster with container insights."""
    kind = "ecs_cluster"

    def __init__(self, name: str = "cluster"):
        super().__init__(name)

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        ecs = ctx.client('ecs')
        try:
            response = ctx.read(self.name, ecs.describe_clusters, clusters=[ctx.config.cluster_name])
        except ProviderError as e:
            if e.code == 'ClusterNotFoundException':
                return None
            raise
        clusters = [c for c in response.get('clusters', []) if c.get('status') == 'ACTIVE']
        if not clusters:
            return None
        cluster = clusters[0]
        return {'name': cluster['clusterName'], 'arn': cluster['clusterArn']}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        ecs = ctx.client('ecs')
        response = ctx.mutate(
            self.name, ecs.create_cluster,
            clusterName=ctx.config.cluster_name,
            tags=to_ecs_tags(ctx.tags(self.name)),
            settings=[{'name': 'containerInsights', 'value': 'enabled'}],
        )
        cluster = response['cluster']
        logger.info(f"Created ECS cluster: {cluster['clusterName']}")
        return {'name': cluster['clusterName'], 'arn': cluster['clusterArn']}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        ecs = ctx.client('ecs')
        ctx.mutate(self.name, ecs.delete_cluster, cluster=live['name'])
        logger.info(f"Deleted ECS cluster: {live['name']}")


class LogGroupResource(Resource):
    """CloudWatch log group for container output."""
    kind = "log_group"

    def __init__(self, name: str = "log-group", retention_days: int = LOG_RETENTION_DAYS):
        super().__init__(name)
        self.retention_days = retention_days

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        logs = ctx.client('logs')
        group_name = ctx.config.log_group_name
        response = ctx.read(self.name, logs.describe_log_groups, logGroupNamePrefix=group_name)
        for group in response.get('logGroups', []):
            if group['logGroupName'] == group_name:
                return {'name': group_name, 'arn': group.get('arn'),
                        'retention_days': group.get('retentionInDays')}
        return None

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        if live['retention_days'] != self.retention_days:
            return {'retention_days': (live['retention_days'], self.retention_days)}
        return {}

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        logs = ctx.client('logs')
        ctx.mutate(self.name, logs.put_retention_policy,
                   logGroupName=live['name'], retentionInDays=self.retention_days)
        return {**live, 'retention_days': self.retention_days}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        logs = ctx.client('logs')
        group_name = ctx.config.log_group_name
        ctx.mutate(self.name, logs.create_log_group, logGroupName=group_name, tags=ctx.tags(self.name))
        ctx.mutate(self.name, logs.put_retention_policy,
                   logGroupName=group_name, retentionInDays=self.retention_days)
        logger.info(f"Created log group: {group_name}")
        return self.read(ctx) or {'name': group_name, 'arn': None, 'retention_days': self.retention_days}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        logs = ctx.client('logs')
        ctx.mutate(self.name, logs.delete_log_group, logGroupName=live['name'])
        logger.info(f"Deleted log group: {live['name']}")
