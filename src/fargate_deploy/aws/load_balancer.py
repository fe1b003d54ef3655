"""
Application Load Balancer
Internet-facing ALB, IP target group for the Fargate tasks and the HTTP listener.
"""
import logging
import time
from typing import Any, Dict, List, Optional

from fargate_deploy.aws.base import Changes, Resource, ResourceContext
from fargate_deploy.aws.utils import to_ec2_tags
from fargate_deploy.exceptions import ConflictError, ProviderError

logger = logging.getLogger(__name__)


def load_balancer_name(ctx: ResourceContext) -> str:
    return f"{ctx.config.app_name}-alb"


def target_group_name(ctx: ResourceContext) -> str:
    return f"{ctx.config.app_name}-tg"


class LoadBalancerResource(Resource):
    """The ALB. Subnets and security groups can be swapped, the scheme cannot."""
    kind = "load_balancer"

    def __init__(self, name: str = "load-balancer", subnets: List[str] = (),
                 security_group: str = "alb-sg", internet_gateway: str = "internet-gateway"):
        super().__init__(name, depends_on=[security_group, internet_gateway, *subnets])
        self.subnets = list(subnets)
        self.security_group = security_group

    def _declared_subnets(self, ctx: ResourceContext) -> List[str]:
        return sorted(ctx.output(s, 'id') for s in self.subnets)

    def _live(self, lb: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'arn': lb['LoadBalancerArn'],
            'name': lb['LoadBalancerName'],
            'dns_name': lb.get('DNSName'),
            'scheme': lb.get('Scheme'),
            'subnet_ids': sorted(z['SubnetId'] for z in lb.get('AvailabilityZones', [])),
            'security_group_ids': sorted(lb.get('SecurityGroups', [])),
        }

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        elbv2 = ctx.client('elbv2')
        try:
            response = ctx.read(self.name, elbv2.describe_load_balancers, Names=[load_balancer_name(ctx)])
        except ProviderError as e:
            if e.code in ('LoadBalancerNotFound', 'LoadBalancerNotFoundException'):
                return None
            raise
        if not response['LoadBalancers']:
            return None
        return self._live(response['LoadBalancers'][0])

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        if live['scheme'] != 'internet-facing':
            raise ConflictError(self.name, 'scheme', 'internet-facing', live['scheme'])
        changes: Changes = {}
        subnets = self._declared_subnets(ctx)
        if live['subnet_ids'] != subnets:
            changes['subnet_ids'] = (live['subnet_ids'], subnets)
        groups = [ctx.output(self.security_group, 'id')]
        if live['security_group_ids'] != groups:
            changes['security_group_ids'] = (live['security_group_ids'], groups)
        return changes

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        elbv2 = ctx.client('elbv2')
        result = dict(live)
        if 'subnet_ids' in changes:
            result['subnet_ids'] = self._declared_subnets(ctx)
            ctx.mutate(self.name, elbv2.set_subnets, LoadBalancerArn=live['arn'], Subnets=result['subnet_ids'])
        if 'security_group_ids' in changes:
            result['security_group_ids'] = [ctx.output(self.security_group, 'id')]
            ctx.mutate(self.name, elbv2.set_security_groups,
                       LoadBalancerArn=live['arn'], SecurityGroups=result['security_group_ids'])
        logger.info(f"Updated load balancer {live['name']}: {', '.join(changes)}")
        return result

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        elbv2 = ctx.client('elbv2')
        response = ctx.mutate(
            self.name, elbv2.create_load_balancer,
            Name=load_balancer_name(ctx),
            Subnets=self._declared_subnets(ctx),
            SecurityGroups=[ctx.output(self.security_group, 'id')],
            Scheme='internet-facing',
            Type='application',
            IpAddressType='ipv4',
            Tags=to_ec2_tags(ctx.tags(self.name)),
        )
        lb = response['LoadBalancers'][0]
        logger.info(f"Created load balancer: {lb['LoadBalancerName']} ({lb.get('DNSName')})")
        return self._live(lb)

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        elbv2 = ctx.client('elbv2')
        ctx.mutate(self.name, elbv2.delete_load_balancer, LoadBalancerArn=live['arn'])

        # Subnets and security groups stay in use until the ALB is fully gone
        deadline = time.time() + ctx.settings.rollout_timeout
        while self.read(ctx) is not None:
            if time.time() >= deadline:
                raise ProviderError(self.name, f"load balancer still present after "
                                               f"{ctx.settings.rollout_timeout:.0f}s")
            logger.info(f"Waiting for load balancer {live['name']} to be deleted...")
            time.sleep(ctx.settings.rollout_poll_interval)
        logger.info(f"Deleted load balancer: {live['name']}")


class TargetGroupResource(Resource):
    """IP target group the service registers its tasks in.

    Port, protocol and VPC are fixed at creation; the health check is converged.
    """
    kind = "target_group"

    def __init__(self, name: str = "target-group", vpc: str = "vpc"):
        super().__init__(name, depends_on=[vpc])
        self.vpc = vpc

    @staticmethod
    def _declared_health_check(ctx: ResourceContext) -> Dict[str, Any]:
        hc = ctx.config.service.health_check
        return {
            'path': hc.path,
            'interval_seconds': hc.interval_seconds,
            'timeout_seconds': hc.timeout_seconds,
            'healthy_threshold': hc.healthy_threshold,
            'unhealthy_threshold': hc.unhealthy_threshold,
            'matcher': hc.matcher,
        }

    @staticmethod
    def _live(tg: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'arn': tg['TargetGroupArn'],
            'name': tg['TargetGroupName'],
            'port': tg.get('Port'),
            'protocol': tg.get('Protocol'),
            'vpc_id': tg.get('VpcId'),
            'health_check': {
                'path': tg.get('HealthCheckPath'),
                'interval_seconds': tg.get('HealthCheckIntervalSeconds'),
                'timeout_seconds': tg.get('HealthCheckTimeoutSeconds'),
                'healthy_threshold': tg.get('HealthyThresholdCount'),
                'unhealthy_threshold': tg.get('UnhealthyThresholdCount'),
                'matcher': tg.get('Matcher', {}).get('HttpCode'),
            },
        }

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        elbv2 = ctx.client('elbv2')
        try:
            response = ctx.read(self.name, elbv2.describe_target_groups, Names=[target_group_name(ctx)])
        except ProviderError as e:
            if e.code in ('TargetGroupNotFound', 'TargetGroupNotFoundException'):
                return None
            raise
        if not response['TargetGroups']:
            return None
        return self._live(response['TargetGroups'][0])

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        port = ctx.config.service.container_port
        if live['port'] != port:
            raise ConflictError(self.name, 'port', port, live['port'])
        if live['protocol'] != 'HTTP':
            raise ConflictError(self.name, 'protocol', 'HTTP', live['protocol'])
        vpc_id = ctx.output(self.vpc, 'id')
        if live['vpc_id'] != vpc_id:
            raise ConflictError(self.name, 'vpc_id', vpc_id, live['vpc_id'])

        declared = self._declared_health_check(ctx)
        changes: Changes = {}
        for key, value in declared.items():
            if live['health_check'].get(key) != value:
                changes[f"health_check.{key}"] = (live['health_check'].get(key), value)
        return changes

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        elbv2 = ctx.client('elbv2')
        hc = ctx.config.service.health_check
        ctx.mutate(
            self.name, elbv2.modify_target_group,
            TargetGroupArn=live['arn'],
            HealthCheckEnabled=True,
            HealthCheckProtocol='HTTP',
            HealthCheckPath=hc.path,
            HealthCheckIntervalSeconds=hc.interval_seconds,
            HealthCheckTimeoutSeconds=hc.timeout_seconds,
            HealthyThresholdCount=hc.healthy_threshold,
            UnhealthyThresholdCount=hc.unhealthy_threshold,
            Matcher={'HttpCode': hc.matcher},
        )
        logger.info(f"Updated health check on target group {live['name']}")
        return {**live, 'health_check': self._declared_health_check(ctx)}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        elbv2 = ctx.client('elbv2')
        hc = ctx.config.service.health_check
        response = ctx.mutate(
            self.name, elbv2.create_target_group,
            Name=target_group_name(ctx),
            Protocol='HTTP',
            Port=ctx.config.service.container_port,
            VpcId=ctx.output(self.vpc, 'id'),
            TargetType='ip',
            HealthCheckEnabled=True,
            HealthCheckProtocol='HTTP',
            HealthCheckPort='traffic-port',
            HealthCheckPath=hc.path,
            HealthCheckIntervalSeconds=hc.interval_seconds,
            HealthCheckTimeoutSeconds=hc.timeout_seconds,
            HealthyThresholdCount=hc.healthy_threshold,
            UnhealthyThresholdCount=hc.unhealthy_threshold,
            Matcher={'HttpCode': hc.matcher},
            Tags=to_ec2_tags(ctx.tags(self.name)),
        )
        tg = response['TargetGroups'][0]
        logger.info(f"Created target group: {tg['TargetGroupName']}")
        return self._live(tg)

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        elbv2 = ctx.client('elbv2')
        ctx.mutate(self.name, elbv2.delete_target_group, TargetGroupArn=live['arn'])
        logger.info(f"Deleted target group: {live['name']}")


class ListenerResource(Resource):
    """HTTP listener forwarding the listener port to the target group."""
    kind = "listener"

    def __init__(self, name: str = "listener", load_balancer: str = "load-balancer",
                 target_group: str = "target-group"):
        super().__init__(name, depends_on=[load_balancer, target_group])
        self.load_balancer = load_balancer
        self.target_group = target_group

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        lb_arn = ctx.output(self.load_balancer, 'arn')
        if not lb_arn:
            return None
        elbv2 = ctx.client('elbv2')
        response = ctx.read(self.name, elbv2.describe_listeners, LoadBalancerArn=lb_arn)
        port = ctx.config.service.listener_port
        for listener in response.get('Listeners', []):
            if listener.get('Port') != port:
                continue
            forward = [a.get('TargetGroupArn') for a in listener.get('DefaultActions', [])
                       if a.get('Type') == 'forward']
            return {
                'arn': listener['ListenerArn'],
                'port': port,
                'target_group_arn': forward[0] if forward else None,
            }
        return None

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        tg_arn = ctx.output(self.target_group, 'arn')
        if live['target_group_arn'] != tg_arn:
            return {'target_group_arn': (live['target_group_arn'], tg_arn)}
        return {}

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        elbv2 = ctx.client('elbv2')
        tg_arn = ctx.output(self.target_group, 'arn')
        ctx.mutate(self.name, elbv2.modify_listener, ListenerArn=live['arn'],
                   DefaultActions=[{'Type': 'forward', 'TargetGroupArn': tg_arn}])
        logger.info(f"Listener on port {live['port']} now forwards to {tg_arn}")
        return {**live, 'target_group_arn': tg_arn}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        elbv2 = ctx.client('elbv2')
        port = ctx.config.service.listener_port
        tg_arn = ctx.output(self.target_group, 'arn')
        response = ctx.mutate(
            self.name, elbv2.create_listener,
            LoadBalancerArn=ctx.output(self.load_balancer, 'arn'),
            Protocol='HTTP',
            Port=port,
            DefaultActions=[{'Type': 'forward', 'TargetGroupArn': tg_arn}],
            Tags=to_ec2_tags(ctx.tags(self.name)),
        )
        listener = response['Listeners'][0]
        logger.info(f"Created listener on port {port}")
        return {'arn': listener['ListenerArn'], 'port': port, 'target_group_arn': tg_arn}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        elbv2 = ctx.client('elbv2')
        ctx.mutate(self.name, elbv2.delete_listener, ListenerArn=live['arn'])
        logger.info(f"Deleted listener: {live['arn']}")
