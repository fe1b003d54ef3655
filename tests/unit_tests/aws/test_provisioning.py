"""Full external-mode stack against moto."""
import boto3
import pytest

from fargate_deploy.aws.base import Action
from fargate_deploy.aws.iam_roles import DEPLOYER_PERMISSION_SETS, statement_ids
from fargate_deploy.exceptions import ConflictError
from fargate_deploy.orchestration.deployment_state import DeploymentStateManager
from fargate_deploy.orchestration.orchestrator import Orchestrator
from fargate_deploy.orchestration.stack import PIPELINE_RESOURCES
from tests.consts import TEST_APP_NAME, TEST_REGION

PROJECT_FILTER = [{'Name': 'tag:Project', 'Values': [TEST_APP_NAME]}]


@pytest.fixture
def orchestrator(external_config, settings, clients):
    return Orchestrator(external_config, settings, clients=clients,
                        journal=DeploymentStateManager(settings.state_file))


@pytest.fixture
def applied(orchestrator):
    return orchestrator.apply()


def test_first_apply_creates_everything(applied):
    assert applied.changes
    assert all(c.action is Action.CREATE for c in applied.changes)
    assert not any(c.name in PIPELINE_RESOURCES for c in applied.changes)
    assert applied.outputs['load-balancer']['dns_name']
    assert set(applied.credentials) == {'deployer'}
    assert applied.credentials['deployer']['user_name'] == f"{TEST_APP_NAME}-deployer"


def test_second_apply_changes_nothing(applied, orchestrator):
    second = orchestrator.apply()

    assert second.mutations == []
    assert second.credentials == {}
    assert len(second.changes) == len(applied.changes)


def test_plan_before_and_after_apply(orchestrator):
    before = orchestrator.plan()
    assert all(c.action is Action.CREATE for c in before.changes)

    orchestrator.apply()
    after = orchestrator.plan()

    assert not after.has_changes
    assert after.conflicts == []


def test_network_is_tagged_and_isolated(applied):
    ec2 = boto3.client('ec2', region_name=TEST_REGION)

    vpcs = ec2.describe_vpcs(Filters=PROJECT_FILTER)['Vpcs']
    assert len(vpcs) == 1
    tags = {t['Key']: t['Value'] for t in vpcs[0]['Tags']}
    assert tags['LogicalName'] == 'vpc'
    assert tags['ManagedBy'] == 'fargate-deploy'

    subnets = ec2.describe_subnets(Filters=PROJECT_FILTER)['Subnets']
    assert sorted(s['CidrBlock'] for s in subnets) == ['10.0.1.0/24', '10.0.2.0/24']
    assert len({s['AvailabilityZone'] for s in subnets}) == 2

    alb_sg_id = applied.outputs['alb-sg']['id']
    service_sg = ec2.describe_security_groups(GroupIds=[applied.outputs['service-sg']['id']])['SecurityGroups'][0]
    permissions = service_sg['IpPermissions']
    assert len(permissions) == 1
    assert permissions[0]['FromPort'] == 3000
    assert [p['GroupId'] for p in permissions[0]['UserIdGroupPairs']] == [alb_sg_id]
    assert permissions[0].get('IpRanges', []) == []


def test_service_runs_behind_load_balancer(applied):
    ecs = boto3.client('ecs', region_name=TEST_REGION)

    service = ecs.describe_services(cluster=f"{TEST_APP_NAME}-cluster",
                                    services=[f"{TEST_APP_NAME}-service"])['services'][0]
    assert service['desiredCount'] == 1
    assert service['launchType'] == 'FARGATE'
    assert service['loadBalancers'][0]['targetGroupArn'] == applied.outputs['target-group']['arn']
    assert service['loadBalancers'][0]['containerPort'] == 3000

    task_definition = ecs.describe_task_definition(taskDefinition=f"{TEST_APP_NAME}-task")['taskDefinition']
    container = task_definition['containerDefinitions'][0]
    assert container['image'] == f"{applied.outputs['repository']['uri']}:latest"
    assert task_definition['executionRoleArn'] == applied.outputs['execution-role']['arn']


def test_deployer_holds_exactly_the_declared_permission_sets(applied):
    iam = boto3.client('iam')

    document = iam.get_user_policy(UserName=f"{TEST_APP_NAME}-deployer",
                                   PolicyName=f"{TEST_APP_NAME}-deployer-policy")['PolicyDocument']
    expected = [sid for sids in DEPLOYER_PERMISSION_SETS.values() for sid in sids]
    assert sorted(statement_ids(document)) == sorted(expected)
    assert len(iam.list_access_keys(UserName=f"{TEST_APP_NAME}-deployer")['AccessKeyMetadata']) == 1
    assert iam.list_attached_user_policies(UserName=f"{TEST_APP_NAME}-deployer")['AttachedPolicies'] == []
    for statement in document['Statement']:
        actions = statement['Action'] if isinstance(statement['Action'], list) else [statement['Action']]
        assert '*' not in actions
        assert not any(a.endswith(':*') for a in actions)


def test_apply_converges_drift(applied, orchestrator):
    ecs = boto3.client('ecs', region_name=TEST_REGION)
    logs = boto3.client('logs', region_name=TEST_REGION)
    ecs.update_service(cluster=f"{TEST_APP_NAME}-cluster", service=f"{TEST_APP_NAME}-service", desiredCount=3)
    logs.put_retention_policy(logGroupName=f"/ecs/{TEST_APP_NAME}", retentionInDays=7)

    plan = orchestrator.plan()
    updates = {c.name: c.changes for c in plan.by_action(Action.UPDATE)}
    assert updates == {
        'service': {'desired_count': (3, 1)},
        'log-group': {'retention_days': (7, 30)},
    }

    result = orchestrator.apply()
    assert sorted(c.name for c in result.mutations) == ['log-group', 'service']
    service = ecs.describe_services(cluster=f"{TEST_APP_NAME}-cluster",
                                    services=[f"{TEST_APP_NAME}-service"])['services'][0]
    assert service['desiredCount'] == 1


def test_removed_security_group_rule_is_restored(applied, orchestrator):
    ec2 = boto3.client('ec2', region_name=TEST_REGION)
    ec2.revoke_security_group_ingress(
        GroupId=applied.outputs['alb-sg']['id'],
        IpPermissions=[{'IpProtocol': 'tcp', 'FromPort': 80, 'ToPort': 80, 'IpRanges': [{'CidrIp': '0.0.0.0/0'}]}],
    )

    result = orchestrator.apply()

    assert [c.name for c in result.mutations] == ['alb-sg']
    group = ec2.describe_security_groups(GroupIds=[applied.outputs['alb-sg']['id']])['SecurityGroups'][0]
    assert group['IpPermissions'][0]['IpRanges'][0]['CidrIp'] == '0.0.0.0/0'


def test_deleted_access_key_is_replaced(applied, orchestrator):
    iam = boto3.client('iam')
    user = f"{TEST_APP_NAME}-deployer"
    key_id = applied.credentials['deployer']['aws_access_key_id']
    iam.delete_access_key(UserName=user, AccessKeyId=key_id)

    result = orchestrator.apply()

    assert [c.name for c in result.mutations] == ['deployer']
    assert result.credentials['deployer']['aws_access_key_id'] != key_id


def test_conflicting_target_group_stops_apply(orchestrator):
    ec2 = boto3.client('ec2', region_name=TEST_REGION)
    elbv2 = boto3.client('elbv2', region_name=TEST_REGION)
    other_vpc = ec2.create_vpc(CidrBlock='172.16.0.0/16')['Vpc']['VpcId']
    elbv2.create_target_group(Name=f"{TEST_APP_NAME}-tg", Protocol='HTTP', Port=8080,
                              VpcId=other_vpc, TargetType='ip')

    with pytest.raises(ConflictError) as exc_info:
        orchestrator.apply()

    assert exc_info.value.step == 'target-group'
    assert exc_info.value.field == 'port'
    assert ecs_clusters() == [f"{TEST_APP_NAME}-cluster"]
    assert orchestrator.journal.state.status == 'failed'


def ecs_clusters():
    ecs = boto3.client('ecs', region_name=TEST_REGION)
    arns = ecs.list_clusters()['clusterArns']
    if not arns:
        return []
    return [c['clusterName'] for c in ecs.describe_clusters(clusters=arns)['clusters'] if c['status'] == 'ACTIVE']


def test_destroy_removes_every_managed_resource(applied, orchestrator):
    result = orchestrator.destroy()

    assert {c.name for c in result.deleted} == {c.name for c in applied.changes}
    deleted_order = [c.name for c in result.changes]
    assert deleted_order.index('service') < deleted_order.index('cluster')
    assert deleted_order.index('load-balancer') < deleted_order.index('alb-sg')
    assert deleted_order.index('public-subnet-1') < deleted_order.index('vpc')

    ec2 = boto3.client('ec2', region_name=TEST_REGION)
    assert ec2.describe_vpcs(Filters=PROJECT_FILTER)['Vpcs'] == []
    assert ec2.describe_subnets(Filters=PROJECT_FILTER)['Subnets'] == []
    assert ec2.describe_internet_gateways(Filters=PROJECT_FILTER)['InternetGateways'] == []
    assert boto3.client('ecr', region_name=TEST_REGION).describe_repositories()['repositories'] == []
    assert boto3.client('elbv2', region_name=TEST_REGION).describe_load_balancers()['LoadBalancers'] == []
    assert ecs_clusters() == []
    iam = boto3.client('iam')
    assert not any(u['UserName'].startswith(TEST_APP_NAME) for u in iam.list_users()['Users'])
    assert not any(r['RoleName'].startswith(TEST_APP_NAME) for r in iam.list_roles()['Roles'])


def test_destroy_twice_skips_everything(applied, orchestrator):
    orchestrator.destroy()

    second = orchestrator.destroy()

    assert second.deleted == []
    assert all(c.action is Action.SKIP for c in second.changes)


def test_destroy_leaves_nothing_tagged_with_the_app(applied, orchestrator):
    ecs = boto3.client('ecs', region_name=TEST_REGION)
    family = f"{TEST_APP_NAME}-task"
    # A revision registered by a later rollout
    current = ecs.describe_task_definition(taskDefinition=family)['taskDefinition']
    ecs.register_task_definition(
        family=family,
        networkMode=current['networkMode'],
        requiresCompatibilities=current['requiresCompatibilities'],
        cpu=current['cpu'],
        memory=current['memory'],
        executionRoleArn=current['executionRoleArn'],
        containerDefinitions=[{'name': TEST_APP_NAME, 'essential': True,
                               'image': f"{applied.outputs['repository']['uri']}:a1b2c3d"}],
    )

    orchestrator.destroy()

    for status in ('ACTIVE', 'INACTIVE'):
        assert ecs.list_task_definitions(familyPrefix=family, status=status)['taskDefinitionArns'] == []
    logs = boto3.client('logs', region_name=TEST_REGION)
    assert logs.describe_log_groups(logGroupNamePrefix=f"/ecs/{TEST_APP_NAME}")['logGroups'] == []
    assert boto3.client('elbv2', region_name=TEST_REGION).describe_target_groups()['TargetGroups'] == []
    ec2 = boto3.client('ec2', region_name=TEST_REGION)
    assert ec2.describe_security_groups(Filters=PROJECT_FILTER)['SecurityGroups'] == []
