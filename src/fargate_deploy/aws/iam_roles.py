"""IAM roles for ECS/CodeBuild/CodePipeline and the scoped deployer user for external CI."""
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from fargate_deploy.aws.base import Changes, Resource, ResourceContext, decode_policy, policy_document
from fargate_deploy.aws.utils import to_ec2_tags
from fargate_deploy.exceptions import ProviderError

logger = logging.getLogger(__name__)

PolicyBuilder = Callable[[ResourceContext], Dict[str, Any]]

# Permission sets granted to the external deployer, keyed by statement Sid.
DEPLOYER_PERMISSION_SETS = {
    "registry": ("RegistryAuth", "RegistryPushPull"),
    "compute": ("ComputeServiceDeploy", "ComputeTaskDefinitions"),
    "execution_role": ("PassExecutionRole",),
}

ECR_PULL_ACTIONS = [
    "ecr:BatchCheckLayerAvailability",
    "ecr:GetDownloadUrlForLayer",
    "ecr:BatchGetImage",
]

ECR_PUSH_ACTIONS = [
    "ecr:InitiateLayerUpload",
    "ecr:UploadLayerPart",
    "ecr:CompleteLayerUpload",
    "ecr:PutImage",
]


def _repository_arn(ctx: ResourceContext) -> str:
    return f"arn:aws:ecr:{ctx.region}:{ctx.account_id}:repository/{ctx.config.repository_name}"


def _execution_role_arn(ctx: ResourceContext) -> str:
    return f"arn:aws:iam::{ctx.account_id}:role/{ctx.config.execution_role_name}"


def _service_arn(ctx: ResourceContext) -> str:
    return (f"arn:aws:ecs:{ctx.region}:{ctx.account_id}:service/"
            f"{ctx.config.cluster_name}/{ctx.config.service_name}")


def assume_role_document(service_principal: str) -> Dict[str, Any]:
    return policy_document([{
        "Effect": "Allow",
        "Principal": {"Service": service_principal},
        "Action": "sts:AssumeRole",
    }])


def execution_role_policy(ctx: ResourceContext) -> Dict[str, Any]:
    """What ECS needs to pull the image and ship container logs."""
    return policy_document([
        {
            "Sid": "RegistryAuth",
            "Effect": "Allow",
            "Action": ["ecr:GetAuthorizationToken"],
            "Resource": "*",
        },
        {
            "Sid": "ImagePull",
            "Effect": "Allow",
            "Action": ECR_PULL_ACTIONS,
            "Resource": _repository_arn(ctx),
        },
        {
            "Sid": "ContainerLogs",
            "Effect": "Allow",
            "Action": ["logs:CreateLogStream", "logs:PutLogEvents"],
            "Resource": f"arn:aws:logs:{ctx.region}:{ctx.account_id}:log-group:{ctx.config.log_group_name}:*",
        },
    ])


def deployer_policy(ctx: ResourceContext) -> Dict[str, Any]:
    """Registry push/pull, service update/describe and PassRole on the execution role. Nothing else.

    ``ecr:GetAuthorizationToken`` and the task-definition actions do not support
    resource-level permissions, so those two statements use ``*``.
    """
    return policy_document([
        {
            "Sid": "RegistryAuth",
            "Effect": "Allow",
            "Action": ["ecr:GetAuthorizationToken"],
            "Resource": "*",
        },
        {
            "Sid": "RegistryPushPull",
            "Effect": "Allow",
            "Action": ECR_PULL_ACTIONS + ECR_PUSH_ACTIONS,
            "Resource": _repository_arn(ctx),
        },
        {
            "Sid": "ComputeServiceDeploy",
            "Effect": "Allow",
            "Action": ["ecs:UpdateService", "ecs:DescribeServices"],
            "Resource": _service_arn(ctx),
        },
        {
            "Sid": "ComputeTaskDefinitions",
            "Effect": "Allow",
            "Action": ["ecs:RegisterTaskDefinition", "ecs:DescribeTaskDefinition"],
            "Resource": "*",
        },
        {
            "Sid": "PassExecutionRole",
            "Effect": "Allow",
            "Action": ["iam:PassRole"],
            "Resource": _execution_role_arn(ctx),
        },
    ])


class ServiceRoleResource(Resource):
    """An IAM role assumed by an AWS service, with one inline policy."""
    kind = "iam_role"

    def __init__(self, name: str, role_name: Callable[[ResourceContext], str], service_principal: str,
                 inline_policy: PolicyBuilder, depends_on=()):
        super().__init__(name, depends_on=depends_on)
        self.role_name = role_name
        self.service_principal = service_principal
        self.inline_policy = inline_policy

    def policy_name(self, ctx: ResourceContext) -> str:
        return f"{self.role_name(ctx)}-policy"

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        iam = ctx.client('iam')
        role_name = self.role_name(ctx)
        try:
            role = ctx.read(self.name, iam.get_role, RoleName=role_name)['Role']
        except ProviderError as e:
            if e.code == 'NoSuchEntity':
                return None
            raise

        try:
            response = ctx.read(self.name, iam.get_role_policy,
                                RoleName=role_name, PolicyName=self.policy_name(ctx))
            policy = decode_policy(response['PolicyDocument'])
        except ProviderError as e:
            if e.code != 'NoSuchEntity':
                raise
            policy = None

        return {'name': role_name, 'arn': role['Arn'], 'policy': policy}

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        declared = self.inline_policy(ctx)
        if live['policy'] != declared:
            return {'policy': (live['policy'], declared)}
        return {}

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        iam = ctx.client('iam')
        declared = self.inline_policy(ctx)
        ctx.mutate(self.name, iam.put_role_policy, RoleName=live['name'],
                   PolicyName=self.policy_name(ctx), PolicyDocument=json.dumps(declared))
        logger.info(f"Updated inline policy of role {live['name']}")
        return {**live, 'policy': declared}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        iam = ctx.client('iam')
        role_name = self.role_name(ctx)
        response = ctx.mutate(
            self.name, iam.create_role,
            RoleName=role_name,
            AssumeRolePolicyDocument=json.dumps(assume_role_document(self.service_principal)),
            Description=f"{self.service_principal} role for {ctx.config.app_name}",
            Tags=to_ec2_tags(ctx.tags(self.name)),
        )
        declared = self.inline_policy(ctx)
        ctx.mutate(self.name, iam.put_role_policy, RoleName=role_name,
                   PolicyName=self.policy_name(ctx), PolicyDocument=json.dumps(declared))

        logger.info(f"Created IAM role: {role_name}")
        return {'name': role_name, 'arn': response['Role']['Arn'], 'policy': declared}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        iam = ctx.client('iam')
        policies = ctx.read(self.name, iam.list_role_policies, RoleName=live['name'])['PolicyNames']
        for policy_name in policies:
            ctx.mutate(self.name, iam.delete_role_policy, RoleName=live['name'], PolicyName=policy_name)
        attached = ctx.read(self.name, iam.list_attached_role_policies, RoleName=live['name'])
        for policy in attached.get('AttachedPolicies', []):
            ctx.mutate(self.name, iam.detach_role_policy, RoleName=live['name'], PolicyArn=policy['PolicyArn'])
        ctx.mutate(self.name, iam.delete_role, RoleName=live['name'])
        logger.info(f"Deleted IAM role: {live['name']}")


class DeployerUserResource(Resource):
    """IAM user for an external CI system, limited to ``deployer_policy``.

    An access key is created only while the user has none. The secret goes to
    ``ctx.emit_credentials`` and never into outputs, logs or the journal.
    """
    kind = "iam_user"

    def __init__(self, name: str = "deployer", depends_on=()):
        super().__init__(name, depends_on=depends_on)

    def policy_name(self, ctx: ResourceContext) -> str:
        return f"{ctx.config.deployer_user_name}-policy"

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        iam = ctx.client('iam')
        user_name = ctx.config.deployer_user_name
        try:
            user = ctx.read(self.name, iam.get_user, UserName=user_name)['User']
        except ProviderError as e:
            if e.code == 'NoSuchEntity':
                return None
            raise

        try:
            response = ctx.read(self.name, iam.get_user_policy,
                                UserName=user_name, PolicyName=self.policy_name(ctx))
            policy = decode_policy(response['PolicyDocument'])
        except ProviderError as e:
            if e.code != 'NoSuchEntity':
                raise
            policy = None

        keys = ctx.read(self.name, iam.list_access_keys, UserName=user_name)['AccessKeyMetadata']
        return {
            'name': user_name,
            'arn': user['Arn'],
            'policy': policy,
            'access_key_ids': sorted(k['AccessKeyId'] for k in keys),
        }

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        changes: Changes = {}
        declared = deployer_policy(ctx)
        if live['policy'] != declared:
            changes['policy'] = (live['policy'], declared)
        if not live['access_key_ids']:
            changes['access_key'] = (None, 'new')
        return changes

    def _put_policy(self, ctx: ResourceContext, user_name: str) -> Dict[str, Any]:
        iam = ctx.client('iam')
        declared = deployer_policy(ctx)
        ctx.mutate(self.name, iam.put_user_policy, UserName=user_name,
                   PolicyName=self.policy_name(ctx), PolicyDocument=json.dumps(declared))
        return declared

    def _create_access_key(self, ctx: ResourceContext, user_name: str) -> str:
        iam = ctx.client('iam')
        key = ctx.mutate(self.name, iam.create_access_key, UserName=user_name)['AccessKey']
        ctx.emit_credentials(self.name, {
            'user_name': user_name,
            'aws_access_key_id': key['AccessKeyId'],
            'aws_secret_access_key': key['SecretAccessKey'],
        })
        logger.info(f"Created access key {key['AccessKeyId']} for {user_name}")
        return key['AccessKeyId']

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        result = dict(live)
        if 'policy' in changes:
            result['policy'] = self._put_policy(ctx, live['name'])
        if 'access_key' in changes:
            result['access_key_ids'] = [self._create_access_key(ctx, live['name'])]
        return result

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        iam = ctx.client('iam')
        user_name = ctx.config.deployer_user_name
        user = ctx.mutate(self.name, iam.create_user, UserName=user_name,
                          Tags=to_ec2_tags(ctx.tags(self.name)))['User']
        policy = self._put_policy(ctx, user_name)
        key_id = self._create_access_key(ctx, user_name)

        logger.info(f"Created deployer user: {user_name}")
        return {'name': user_name, 'arn': user['Arn'], 'policy': policy, 'access_key_ids': [key_id]}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        iam = ctx.client('iam')
        for key_id in live['access_key_ids']:
            ctx.mutate(self.name, iam.delete_access_key, UserName=live['name'], AccessKeyId=key_id)
        policies = ctx.read(self.name, iam.list_user_policies, UserName=live['name'])['PolicyNames']
        for policy_name in policies:
            ctx.mutate(self.name, iam.delete_user_policy, UserName=live['name'], PolicyName=policy_name)
        ctx.mutate(self.name, iam.delete_user, UserName=live['name'])
        logger.info(f"Deleted deployer user: {live['name']}")


def statement_ids(policy: Dict[str, Any]) -> List[str]:
    return [s.get('Sid') for s in policy.get('Statement', [])]
