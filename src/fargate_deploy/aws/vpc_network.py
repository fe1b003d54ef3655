"""VPC network resources: VPC, internet gateway, public subnets, route table, security groups."""
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from fargate_deploy.aws.base import Changes, Resource, ResourceContext
from fargate_deploy.aws.utils import to_ec2_tags
from fargate_deploy.exceptions import ConflictError, ProviderError
from fargate_deploy.models import SubnetSpec

logger = logging.getLogger(__name__)

ANYWHERE = "0.0.0.0/0"

# (protocol, from_port, to_port, source) where source is "cidr:<block>" or "sg:<resource name>"
Rule = Tuple[str, int, int, str]


def _tag_filters(ctx: ResourceContext, name: str) -> List[Dict[str, Any]]:
    return [
        {'Name': 'tag:Project', 'Values': [ctx.config.app_name]},
        {'Name': 'tag:LogicalName', 'Values': [name]},
    ]


def _tag_specification(ctx: ResourceContext, resource_type: str, name: str) -> List[Dict[str, Any]]:
    return [{'ResourceType': resource_type, 'Tags': to_ec2_tags(ctx.tags(name))}]


def wait_for_network_interfaces(ctx: ResourceContext, step: str, filter_name: str, value: str) -> None:
    """Block until no network interface matches ``filter_name=value``.

    ALB and Fargate interfaces are released some minutes after their owner is
    reported gone; the subnet or security group cannot be deleted before that.
    """
    ec2 = ctx.client('ec2')
    deadline = time.time() + ctx.settings.rollout_timeout
    while True:
        response = ctx.read(step, ec2.describe_network_interfaces,
                            Filters=[{'Name': filter_name, 'Values': [value]}])
        interfaces = response.get('NetworkInterfaces', [])
        if not interfaces:
            return
        if time.time() >= deadline:
            ids = ", ".join(i['NetworkInterfaceId'] for i in interfaces)
            raise ProviderError(step, f"{value} still used by network interfaces after "
                                      f"{ctx.settings.rollout_timeout:.0f}s: {ids}",
                                code='DependencyViolation')
        logger.info(f"Waiting for {len(interfaces)} network interface(s) to release {value}...")
        time.sleep(ctx.settings.rollout_poll_interval)


class VpcResource(Resource):
    """The VPC. Its CIDR block cannot change once created."""
    kind = "vpc"

    def __init__(self, name: str = "vpc"):
        super().__init__(name)

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        ec2 = ctx.client('ec2')
        response = ctx.read(self.name, ec2.describe_vpcs, Filters=_tag_filters(ctx, self.name))
        vpcs = [v for v in response['Vpcs'] if v.get('State') != 'deleted']
        if not vpcs:
            return None
        vpc = vpcs[0]
        return {'id': vpc['VpcId'], 'cidr_block': vpc['CidrBlock']}

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        declared = ctx.config.network.cidr_block
        if live['cidr_block'] != declared:
            raise ConflictError(self.name, 'cidr_block', declared, live['cidr_block'])
        return {}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        ec2 = ctx.client('ec2')
        cidr_block = ctx.config.network.cidr_block
        response = ctx.mutate(
            self.name, ec2.create_vpc,
            CidrBlock=cidr_block,
            TagSpecifications=_tag_specification(ctx, 'vpc', self.name),
        )
        vpc_id = response['Vpc']['VpcId']

        # Enable DNS hostnames and resolution
        ctx.mutate(self.name, ec2.modify_vpc_attribute, VpcId=vpc_id, EnableDnsSupport={'Value': True})
        ctx.mutate(self.name, ec2.modify_vpc_attribute, VpcId=vpc_id, EnableDnsHostnames={'Value': True})

        logger.info(f"Created VPC: {vpc_id}")
        return {'id': vpc_id, 'cidr_block': cidr_block}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        ec2 = ctx.client('ec2')
        ctx.mutate(self.name, ec2.delete_vpc, VpcId=live['id'])
        logger.info(f"Deleted VPC: {live['id']}")


class InternetGatewayResource(Resource):
    """Internet gateway attached to the VPC."""
    kind = "internet_gateway"

    def __init__(self, name: str = "internet-gateway", vpc: str = "vpc"):
        super().__init__(name, depends_on=[vpc])
        self.vpc = vpc

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        ec2 = ctx.client('ec2')
        response = ctx.read(self.name, ec2.describe_internet_gateways, Filters=_tag_filters(ctx, self.name))
        if not response['InternetGateways']:
            return None
        igw = response['InternetGateways'][0]
        attached = [a['VpcId'] for a in igw.get('Attachments', []) if a.get('State') in ('available', 'attached')]
        return {'id': igw['InternetGatewayId'], 'vpc_id': attached[0] if attached else None}

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        vpc_id = ctx.output(self.vpc, 'id')
        if live['vpc_id'] != vpc_id:
            return {'vpc_id': (live['vpc_id'], vpc_id)}
        return {}

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        ec2 = ctx.client('ec2')
        vpc_id = ctx.output(self.vpc, 'id')
        if live['vpc_id']:
            ctx.mutate(self.name, ec2.detach_internet_gateway,
                       InternetGatewayId=live['id'], VpcId=live['vpc_id'])
        ctx.mutate(self.name, ec2.attach_internet_gateway, InternetGatewayId=live['id'], VpcId=vpc_id)
        logger.info(f"Attached internet gateway {live['id']} to {vpc_id}")
        return {**live, 'vpc_id': vpc_id}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        ec2 = ctx.client('ec2')
        vpc_id = ctx.output(self.vpc, 'id')
        response = ctx.mutate(
            self.name, ec2.create_internet_gateway,
            TagSpecifications=_tag_specification(ctx, 'internet-gateway', self.name),
        )
        igw_id = response['InternetGateway']['InternetGatewayId']
        ctx.mutate(self.name, ec2.attach_internet_gateway, InternetGatewayId=igw_id, VpcId=vpc_id)

        logger.info(f"Created and attached internet gateway: {igw_id}")
        return {'id': igw_id, 'vpc_id': vpc_id}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        ec2 = ctx.client('ec2')
        if live['vpc_id']:
            ctx.mutate(self.name, ec2.detach_internet_gateway,
                       InternetGatewayId=live['id'], VpcId=live['vpc_id'])
        ctx.mutate(self.name, ec2.delete_internet_gateway, InternetGatewayId=live['id'])
        logger.info(f"Deleted internet gateway: {live['id']}")


class SubnetResource(Resource):
    """One subnet. Zone and CIDR are fixed; public IP mapping can be changed."""
    kind = "subnet"

    def __init__(self, name: str, spec: SubnetSpec, vpc: str = "vpc"):
        super().__init__(name, depends_on=[vpc])
        self.spec = spec
        self.vpc = vpc

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        vpc_id = ctx.output(self.vpc, 'id')
        if not vpc_id:
            return None
        ec2 = ctx.client('ec2')
        response = ctx.read(
            self.name, ec2.describe_subnets,
            Filters=_tag_filters(ctx, self.name) + [{'Name': 'vpc-id', 'Values': [vpc_id]}],
        )
        if not response['Subnets']:
            return None
        subnet = response['Subnets'][0]
        return {
            'id': subnet['SubnetId'],
            'zone': subnet['AvailabilityZone'],
            'cidr_block': subnet['CidrBlock'],
            'public': bool(subnet.get('MapPublicIpOnLaunch')),
        }

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        if live['cidr_block'] != self.spec.cidr_block:
            raise ConflictError(self.name, 'cidr_block', self.spec.cidr_block, live['cidr_block'])
        if live['zone'] != self.spec.zone:
            raise ConflictError(self.name, 'zone', self.spec.zone, live['zone'])
        if live['public'] != self.spec.public:
            return {'public': (live['public'], self.spec.public)}
        return {}

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        ec2 = ctx.client('ec2')
        ctx.mutate(self.name, ec2.modify_subnet_attribute,
                   SubnetId=live['id'], MapPublicIpOnLaunch={'Value': self.spec.public})
        return {**live, 'public': self.spec.public}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        ec2 = ctx.client('ec2')
        response = ctx.mutate(
            self.name, ec2.create_subnet,
            VpcId=ctx.output(self.vpc, 'id'),
            CidrBlock=self.spec.cidr_block,
            AvailabilityZone=self.spec.zone,
            TagSpecifications=_tag_specification(ctx, 'subnet', self.name),
        )
        subnet_id = response['Subnet']['SubnetId']
        if self.spec.public:
            ctx.mutate(self.name, ec2.modify_subnet_attribute,
                       SubnetId=subnet_id, MapPublicIpOnLaunch={'Value': True})

        logger.info(f"Created subnet {self.name}: {subnet_id} ({self.spec.cidr_block}, {self.spec.zone})")
        return {'id': subnet_id, 'zone': self.spec.zone, 'cidr_block': self.spec.cidr_block,
                'public': self.spec.public}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        ec2 = ctx.client('ec2')
        wait_for_network_interfaces(ctx, self.name, 'subnet-id', live['id'])
        ctx.mutate(self.name, ec2.delete_subnet, SubnetId=live['id'])
        logger.info(f"Deleted subnet: {live['id']}")


class RouteTableResource(Resource):
    """Public route table: default route to the internet gateway, associated with the public subnets."""
    kind = "route_table"

    def __init__(self, name: str, subnets: List[str], vpc: str = "vpc",
                 internet_gateway: str = "internet-gateway"):
        super().__init__(name, depends_on=[vpc, internet_gateway, *subnets])
        self.vpc = vpc
        self.internet_gateway = internet_gateway
        self.subnets = list(subnets)

    def _declared_subnet_ids(self, ctx: ResourceContext) -> Set[str]:
        return {ctx.output(s, 'id') for s in self.subnets if ctx.output(s, 'id')}

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        vpc_id = ctx.output(self.vpc, 'id')
        if not vpc_id:
            return None
        ec2 = ctx.client('ec2')
        response = ctx.read(
            self.name, ec2.describe_route_tables,
            Filters=_tag_filters(ctx, self.name) + [{'Name': 'vpc-id', 'Values': [vpc_id]}],
        )
        if not response['RouteTables']:
            return None
        table = response['RouteTables'][0]
        default_route = next(
            (r for r in table.get('Routes', []) if r.get('DestinationCidrBlock') == ANYWHERE), None
        )
        associations = {
            a['SubnetId']: a['RouteTableAssociationId']
            for a in table.get('Associations', [])
            if a.get('SubnetId') and not a.get('Main')
        }
        return {
            'id': table['RouteTableId'],
            'gateway_id': default_route.get('GatewayId') if default_route else None,
            'associations': associations,
        }

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        changes: Changes = {}
        igw_id = ctx.output(self.internet_gateway, 'id')
        if live['gateway_id'] != igw_id:
            changes['gateway_id'] = (live['gateway_id'], igw_id)
        declared = self._declared_subnet_ids(ctx)
        associated = set(live['associations'])
        if declared != associated:
            changes['associations'] = (sorted(associated), sorted(declared))
        return changes

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        ec2 = ctx.client('ec2')
        igw_id = ctx.output(self.internet_gateway, 'id')
        if 'gateway_id' in changes:
            if live['gateway_id']:
                ctx.mutate(self.name, ec2.replace_route, RouteTableId=live['id'],
                           DestinationCidrBlock=ANYWHERE, GatewayId=igw_id)
            else:
                ctx.mutate(self.name, ec2.create_route, RouteTableId=live['id'],
                           DestinationCidrBlock=ANYWHERE, GatewayId=igw_id)

        associations = dict(live['associations'])
        if 'associations' in changes:
            declared = self._declared_subnet_ids(ctx)
            for subnet_id in set(associations) - declared:
                ctx.mutate(self.name, ec2.disassociate_route_table, AssociationId=associations.pop(subnet_id))
            for subnet_id in declared - set(associations):
                response = ctx.mutate(self.name, ec2.associate_route_table,
                                      SubnetId=subnet_id, RouteTableId=live['id'])
                associations[subnet_id] = response['AssociationId']
        return {'id': live['id'], 'gateway_id': igw_id, 'associations': associations}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        ec2 = ctx.client('ec2')
        response = ctx.mutate(
            self.name, ec2.create_route_table,
            VpcId=ctx.output(self.vpc, 'id'),
            TagSpecifications=_tag_specification(ctx, 'route-table', self.name),
        )
        table_id = response['RouteTable']['RouteTableId']
        igw_id = ctx.output(self.internet_gateway, 'id')

        # 0.0.0.0/0 -> Internet Gateway
        ctx.mutate(self.name, ec2.create_route, RouteTableId=table_id,
                   DestinationCidrBlock=ANYWHERE, GatewayId=igw_id)

        associations = {}
        for subnet_id in sorted(self._declared_subnet_ids(ctx)):
            assoc = ctx.mutate(self.name, ec2.associate_route_table, SubnetId=subnet_id, RouteTableId=table_id)
            associations[subnet_id] = assoc['AssociationId']

        logger.info(f"Created route table: {table_id}")
        return {'id': table_id, 'gateway_id': igw_id, 'associations': associations}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        ec2 = ctx.client('ec2')
        for association_id in live['associations'].values():
            ctx.mutate(self.name, ec2.disassociate_route_table, AssociationId=association_id)
        ctx.mutate(self.name, ec2.delete_route_table, RouteTableId=live['id'])
        logger.info(f"Deleted route table: {live['id']}")


class SecurityGroupResource(Resource):
    """Security group whose ingress rules are converged to the declared set.

    ``rules`` is called at apply time so rules can reference other groups by
    logical name (``sg:<name>``); those groups become dependencies.
    """
    kind = "security_group"

    def __init__(self, name: str, description: str, rules: Callable[[ResourceContext], List[Rule]],
                 vpc: str = "vpc", source_groups: Tuple[str, ...] = ()):
        super().__init__(name, depends_on=[vpc, *source_groups])
        self.description = description
        self.rules = rules
        self.vpc = vpc

    def group_name(self, ctx: ResourceContext) -> str:
        return f"{ctx.config.app_name}-{self.name}"

    def _resolve(self, ctx: ResourceContext, rule: Rule) -> Tuple[str, int, int, str]:
        protocol, from_port, to_port, source = rule
        if source.startswith("sg:"):
            group_id = ctx.output(source[3:], 'id')
            return protocol, from_port, to_port, f"sg:{group_id}"
        return protocol, from_port, to_port, source

    def _declared_rules(self, ctx: ResourceContext) -> Set[Tuple[str, int, int, str]]:
        return {self._resolve(ctx, rule) for rule in self.rules(ctx)}

    @staticmethod
    def _live_rules(permissions: List[Dict[str, Any]]) -> Set[Tuple[str, int, int, str]]:
        rules = set()
        for perm in permissions:
            protocol = perm.get('IpProtocol')
            from_port = perm.get('FromPort', -1)
            to_port = perm.get('ToPort', -1)
            for ip_range in perm.get('IpRanges', []):
                rules.add((protocol, from_port, to_port, f"cidr:{ip_range['CidrIp']}"))
            for pair in perm.get('UserIdGroupPairs', []):
                rules.add((protocol, from_port, to_port, f"sg:{pair['GroupId']}"))
        return rules

    @staticmethod
    def _permission(rule: Tuple[str, int, int, str]) -> Dict[str, Any]:
        protocol, from_port, to_port, source = rule
        permission: Dict[str, Any] = {'IpProtocol': protocol, 'FromPort': from_port, 'ToPort': to_port}
        if source.startswith("sg:"):
            permission['UserIdGroupPairs'] = [{'GroupId': source[3:]}]
        else:
            permission['IpRanges'] = [{'CidrIp': source[5:]}]
        return permission

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        vpc_id = ctx.output(self.vpc, 'id')
        if not vpc_id:
            return None
        ec2 = ctx.client('ec2')
        response = ctx.read(
            self.name, ec2.describe_security_groups,
            Filters=[
                {'Name': 'group-name', 'Values': [self.group_name(ctx)]},
                {'Name': 'vpc-id', 'Values': [vpc_id]},
            ],
        )
        if not response['SecurityGroups']:
            return None
        group = response['SecurityGroups'][0]
        return {
            'id': group['GroupId'],
            'name': group['GroupName'],
            'rules': sorted(self._live_rules(group.get('IpPermissions', []))),
        }

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        declared = self._declared_rules(ctx)
        current = set(tuple(r) for r in live['rules'])
        if declared != current:
            return {'rules': (sorted(current), sorted(declared))}
        return {}

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        ec2 = ctx.client('ec2')
        declared = self._declared_rules(ctx)
        current = set(tuple(r) for r in live['rules'])

        stale = current - declared
        if stale:
            ctx.mutate(self.name, ec2.revoke_security_group_ingress,
                       GroupId=live['id'], IpPermissions=[self._permission(r) for r in sorted(stale)])
        missing = declared - current
        if missing:
            ctx.mutate(self.name, ec2.authorize_security_group_ingress,
                       GroupId=live['id'], IpPermissions=[self._permission(r) for r in sorted(missing)])

        logger.info(f"Updated security group {self.name}: +{len(missing)} -{len(stale)} rules")
        return {**live, 'rules': sorted(declared)}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        ec2 = ctx.client('ec2')
        name = self.group_name(ctx)
        response = ctx.mutate(
            self.name, ec2.create_security_group,
            GroupName=name,
            Description=self.description,
            VpcId=ctx.output(self.vpc, 'id'),
            TagSpecifications=_tag_specification(ctx, 'security-group', self.name),
        )
        group_id = response['GroupId']

        declared = self._declared_rules(ctx)
        if declared:
            ctx.mutate(self.name, ec2.authorize_security_group_ingress,
                       GroupId=group_id, IpPermissions=[self._permission(r) for r in sorted(declared)])

        logger.info(f"Created security group {name}: {group_id}")
        return {'id': group_id, 'name': name, 'rules': sorted(declared)}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        ec2 = ctx.client('ec2')
        wait_for_network_interfaces(ctx, self.name, 'group-id', live['id'])
        ctx.mutate(self.name, ec2.delete_security_group, GroupId=live['id'])
        logger.info(f"Deleted security group: {live['id']}")
