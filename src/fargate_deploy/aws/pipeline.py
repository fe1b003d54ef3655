"""
Managed CI/CD chain
S3 artifact store, CodeBuild project and a three-stage CodePipeline:
CodeStar connection source -> CodeBuild docker build -> ECS deploy.
"""
import logging
from typing import Any, Dict, List, Optional

from fargate_deploy.aws.base import Changes, Resource, ResourceContext, policy_document
from fargate_deploy.aws.iam_roles import ECR_PULL_ACTIONS, ECR_PUSH_ACTIONS
from fargate_deploy.aws.utils import to_ec2_tags
from fargate_deploy.build.artifacts import render_buildspec
from fargate_deploy.exceptions import ConflictError, ProviderError
from fargate_deploy.models import PipelineConfig

logger = logging.getLogger(__name__)

BUILD_IMAGE = "aws/codebuild/standard:7.0"
BUILD_COMPUTE_TYPE = "BUILD_GENERAL1_SMALL"
SOURCE_ARTIFACT = "SourceOutput"
BUILD_ARTIFACT = "BuildOutput"
DELETE_BATCH_SIZE = 1000


def artifact_bucket_name(ctx: ResourceContext) -> str:
    return f"{ctx.config.app_name}-pipeline-artifacts-{ctx.account_id}"


def pipeline_config(ctx: ResourceContext) -> PipelineConfig:
    config = ctx.config
    return PipelineConfig(
        repository_id=PipelineConfig.repository_id_from_url(config.source_repository),
        branch=config.branch,
        connection_arn=config.source_connection_arn,
        buildspec=render_buildspec(ctx.settings.tool_package),
    )


def _bucket_arn(ctx: ResourceContext) -> str:
    return f"arn:aws:s3:::{artifact_bucket_name(ctx)}"


def build_role_policy(ctx: ResourceContext) -> Dict[str, Any]:
    """CodeBuild: write its logs, read/write pipeline artifacts, push to the app repository."""
    project = ctx.config.build_project_name
    return policy_document([
        {
            "Sid": "BuildLogs",
            "Effect": "Allow",
            "Action": ["logs:CreateLogGroup", "logs:CreateLogStream", "logs:PutLogEvents"],
            "Resource": [
                f"arn:aws:logs:{ctx.region}:{ctx.account_id}:log-group:/aws/codebuild/{project}",
                f"arn:aws:logs:{ctx.region}:{ctx.account_id}:log-group:/aws/codebuild/{project}:*",
            ],
        },
        {
            "Sid": "PipelineArtifacts",
            "Effect": "Allow",
            "Action": ["s3:GetObject", "s3:GetObjectVersion", "s3:PutObject",
                       "s3:GetBucketAcl", "s3:GetBucketLocation"],
            "Resource": [_bucket_arn(ctx), f"{_bucket_arn(ctx)}/*"],
        },
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
            "Resource": f"arn:aws:ecr:{ctx.region}:{ctx.account_id}:repository/{ctx.config.repository_name}",
        },
    ])


def pipeline_role_policy(ctx: ResourceContext) -> Dict[str, Any]:
    """CodePipeline: artifact store, the source connection, the build project and the ECS deploy action."""
    config = ctx.config
    return policy_document([
        {
            "Sid": "PipelineArtifacts",
            "Effect": "Allow",
            "Action": ["s3:GetObject", "s3:GetObjectVersion", "s3:PutObject",
                       "s3:GetBucketVersioning"],
            "Resource": [_bucket_arn(ctx), f"{_bucket_arn(ctx)}/*"],
        },
        {
            "Sid": "SourceConnection",
            "Effect": "Allow",
            "Action": ["codestar-connections:UseConnection"],
            "Resource": config.source_connection_arn,
        },
        {
            "Sid": "Build",
            "Effect": "Allow",
            "Action": ["codebuild:StartBuild", "codebuild:BatchGetBuilds"],
            "Resource": f"arn:aws:codebuild:{ctx.region}:{ctx.account_id}:project/{config.build_project_name}",
        },
        {
            "Sid": "Deploy",
            "Effect": "Allow",
            "Action": [
                "ecs:DescribeServices",
                "ecs:DescribeTaskDefinition",
                "ecs:DescribeTasks",
                "ecs:ListTasks",
                "ecs:RegisterTaskDefinition",
                "ecs:UpdateService",
                "ecs:TagResource",
            ],
            "Resource": "*",
        },
        {
            "Sid": "PassExecutionRole",
            "Effect": "Allow",
            "Action": ["iam:PassRole"],
            "Resource": f"arn:aws:iam::{ctx.account_id}:role/{config.execution_role_name}",
            "Condition": {"StringEqualsIfExists": {"iam:PassedToService": "ecs-tasks.amazonaws.com"}},
        },
    ])


class ArtifactBucketResource(Resource):
    """Versioned, private S3 bucket CodePipeline passes artifacts through."""
    kind = "s3_bucket"

    def __init__(self, name: str = "artifact-bucket"):
        super().__init__(name)

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        s3 = ctx.client('s3')
        bucket = artifact_bucket_name(ctx)
        try:
            ctx.read(self.name, s3.head_bucket, Bucket=bucket)
        except ProviderError as e:
            if e.code in ('404', 'NoSuchBucket', 'NotFound'):
                return None
            if e.code in ('403', 'AccessDenied'):
                raise ConflictError(self.name, 'owner', ctx.account_id, 'another account')
            raise
        versioning = ctx.read(self.name, s3.get_bucket_versioning, Bucket=bucket)
        return {'name': bucket, 'arn': _bucket_arn(ctx), 'versioning': versioning.get('Status')}

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        if live['versioning'] != 'Enabled':
            return {'versioning': (live['versioning'], 'Enabled')}
        return {}

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        s3 = ctx.client('s3')
        ctx.mutate(self.name, s3.put_bucket_versioning, Bucket=live['name'],
                   VersioningConfiguration={'Status': 'Enabled'})
        return {**live, 'versioning': 'Enabled'}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        s3 = ctx.client('s3')
        bucket = artifact_bucket_name(ctx)
        kwargs: Dict[str, Any] = {'Bucket': bucket}
        if ctx.region != 'us-east-1':
            kwargs['CreateBucketConfiguration'] = {'LocationConstraint': ctx.region}
        ctx.mutate(self.name, s3.create_bucket, **kwargs)

        ctx.mutate(self.name, s3.put_public_access_block, Bucket=bucket, PublicAccessBlockConfiguration={
            'BlockPublicAcls': True,
            'IgnorePublicAcls': True,
            'BlockPublicPolicy': True,
            'RestrictPublicBuckets': True,
        })
        ctx.mutate(self.name, s3.put_bucket_versioning, Bucket=bucket,
                   VersioningConfiguration={'Status': 'Enabled'})
        ctx.mutate(self.name, s3.put_bucket_tagging, Bucket=bucket,
                   Tagging={'TagSet': to_ec2_tags(ctx.tags(self.name))})

        logger.info(f"Created artifact bucket: {bucket}")
        return {'name': bucket, 'arn': _bucket_arn(ctx), 'versioning': 'Enabled'}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        s3 = ctx.client('s3')
        objects = [
            {'Key': v['Key'], 'VersionId': v['VersionId']}
            for key in ('Versions', 'DeleteMarkers')
            for v in ctx.paginate(self.name, s3, 'list_object_versions', key, Bucket=live['name'])
        ]
        for start in range(0, len(objects), DELETE_BATCH_SIZE):
            batch = objects[start:start + DELETE_BATCH_SIZE]
            ctx.mutate(self.name, s3.delete_objects, Bucket=live['name'],
                       Delete={'Objects': batch, 'Quiet': True})
        ctx.mutate(self.name, s3.delete_bucket, Bucket=live['name'])
        logger.info(f"Deleted artifact bucket {live['name']} ({len(objects)} object versions)")


class BuildProjectResource(Resource):
    """CodeBuild project running the docker build in privileged mode."""
    kind = "codebuild_project"

    def __init__(self, name: str = "build-project", build_role: str = "build-role",
                 repository: str = "repository"):
        super().__init__(name, depends_on=[build_role, repository])
        self.build_role = build_role
        self.repository = repository

    def _declared(self, ctx: ResourceContext) -> Dict[str, Any]:
        config = ctx.config
        return {
            'service_role': ctx.output(self.build_role, 'arn'),
            'image': BUILD_IMAGE,
            'compute_type': BUILD_COMPUTE_TYPE,
            'privileged': True,
            'buildspec': pipeline_config(ctx).buildspec,
            'environment_variables': {
                'ECR_REPOSITORY_URI': ctx.output(self.repository, 'uri'),
                'IMAGE_REPO_NAME': config.repository_name,
                'APP_NAME': config.app_name,
                'AWS_DEFAULT_REGION': ctx.region,
            },
        }

    @staticmethod
    def _request(ctx: ResourceContext, declared: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'name': ctx.config.build_project_name,
            'source': {'type': 'CODEPIPELINE', 'buildspec': declared['buildspec']},
            'artifacts': {'type': 'CODEPIPELINE'},
            'environment': {
                'type': 'LINUX_CONTAINER',
                'image': declared['image'],
                'computeType': declared['compute_type'],
                'privilegedMode': declared['privileged'],
                'environmentVariables': [
                    {'name': k, 'value': v, 'type': 'PLAINTEXT'}
                    for k, v in declared['environment_variables'].items()
                ],
            },
            'serviceRole': declared['service_role'],
        }

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        codebuild = ctx.client('codebuild')
        response = ctx.read(self.name, codebuild.batch_get_projects, names=[ctx.config.build_project_name])
        if not response.get('projects'):
            return None
        project = response['projects'][0]
        environment = project.get('environment', {})
        return {
            'name': project['name'],
            'arn': project['arn'],
            'service_role': project.get('serviceRole'),
            'image': environment.get('image'),
            'compute_type': environment.get('computeType'),
            'privileged': environment.get('privilegedMode', False),
            'buildspec': project.get('source', {}).get('buildspec'),
            'environment_variables': {
                v['name']: v.get('value') for v in environment.get('environmentVariables', [])
            },
        }

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        declared = self._declared(ctx)
        return {key: (live.get(key), value) for key, value in declared.items() if live.get(key) != value}

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        codebuild = ctx.client('codebuild')
        declared = self._declared(ctx)
        ctx.mutate(self.name, codebuild.update_project, **self._request(ctx, declared))
        logger.info(f"Updated build project {live['name']}: {', '.join(changes)}")
        return {'name': live['name'], 'arn': live['arn'], **declared}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        codebuild = ctx.client('codebuild')
        declared = self._declared(ctx)
        response = ctx.mutate(
            self.name, codebuild.create_project,
            tags=[{'key': k, 'value': v} for k, v in ctx.tags(self.name).items()],
            **self._request(ctx, declared),
        )
        project = response['project']
        logger.info(f"Created build project: {project['name']}")
        return {'name': project['name'], 'arn': project['arn'], **declared}

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        codebuild = ctx.client('codebuild')
        ctx.mutate(self.name, codebuild.delete_project, name=live['name'])
        logger.info(f"Deleted build project: {live['name']}")


def _action(name: str, category: str, provider: str, configuration: Dict[str, str],
            inputs: List[str] = (), outputs: List[str] = ()) -> Dict[str, Any]:
    return {
        'name': name,
        'actionTypeId': {'category': category, 'owner': 'AWS', 'provider': provider, 'version': '1'},
        'runOrder': 1,
        'configuration': configuration,
        'inputArtifacts': [{'name': n} for n in inputs],
        'outputArtifacts': [{'name': n} for n in outputs],
    }


def _structure(pipeline: Dict[str, Any]) -> Dict[str, Any]:
    """The parts of a pipeline declaration this tool owns, in a comparable form."""
    return {
        'roleArn': pipeline.get('roleArn'),
        'artifactStore': {
            'type': pipeline.get('artifactStore', {}).get('type'),
            'location': pipeline.get('artifactStore', {}).get('location'),
        },
        'stages': [
            {
                'name': stage['name'],
                'actions': [
                    {
                        'name': action['name'],
                        'actionTypeId': action['actionTypeId'],
                        'configuration': action.get('configuration', {}),
                        'inputArtifacts': [a['name'] for a in action.get('inputArtifacts', [])],
                        'outputArtifacts': [a['name'] for a in action.get('outputArtifacts', [])],
                    }
                    for action in stage.get('actions', [])
                ],
            }
            for stage in pipeline.get('stages', [])
        ],
    }


class PipelineResource(Resource):
    """Source -> Build -> Deploy. The deploy stage reads ``imagedefinitions.json`` from the build output."""
    kind = "codepipeline"

    def __init__(self, name: str = "pipeline", pipeline_role: str = "pipeline-role",
                 build_project: str = "build-project", artifact_bucket: str = "artifact-bucket",
                 service: str = "service"):
        super().__init__(name, depends_on=[pipeline_role, build_project, artifact_bucket, service])
        self.pipeline_role = pipeline_role
        self.build_project = build_project
        self.artifact_bucket = artifact_bucket

    def declaration(self, ctx: ResourceContext) -> Dict[str, Any]:
        config = ctx.config
        source = pipeline_config(ctx)
        return {
            'name': config.pipeline_name,
            'roleArn': ctx.output(self.pipeline_role, 'arn'),
            'artifactStore': {'type': 'S3', 'location': ctx.output(self.artifact_bucket, 'name')},
            'stages': [
                {'name': 'Source', 'actions': [_action(
                    'Source', 'Source', 'CodeStarSourceConnection',
                    {
                        'ConnectionArn': source.connection_arn,
                        'FullRepositoryId': source.repository_id,
                        'BranchName': source.branch,
                        'OutputArtifactFormat': 'CODE_ZIP',
                    },
                    outputs=[SOURCE_ARTIFACT],
                )]},
                {'name': 'Build', 'actions': [_action(
                    'Build', 'Build', 'CodeBuild',
                    {'ProjectName': ctx.output(self.build_project, 'name', config.build_project_name)},
                    inputs=[SOURCE_ARTIFACT], outputs=[BUILD_ARTIFACT],
                )]},
                {'name': 'Deploy', 'actions': [_action(
                    'Deploy', 'Deploy', 'ECS',
                    {
                        'ClusterName': config.cluster_name,
                        'ServiceName': config.service_name,
                        'FileName': source.manifest_file,
                    },
                    inputs=[BUILD_ARTIFACT],
                )]},
            ],
        }

    def read(self, ctx: ResourceContext) -> Optional[Dict[str, Any]]:
        codepipeline = ctx.client('codepipeline')
        try:
            response = ctx.read(self.name, codepipeline.get_pipeline, name=ctx.config.pipeline_name)
        except ProviderError as e:
            if e.code == 'PipelineNotFoundException':
                return None
            raise
        pipeline = response['pipeline']
        return {
            'name': pipeline['name'],
            'arn': response.get('metadata', {}).get('pipelineArn'),
            'version': pipeline.get('version'),
            'structure': _structure(pipeline),
        }

    def diff(self, ctx: ResourceContext, live: Dict[str, Any]) -> Changes:
        declared = _structure(self.declaration(ctx))
        changes: Changes = {}
        for key in ('roleArn', 'artifactStore', 'stages'):
            if live['structure'].get(key) != declared[key]:
                changes[key] = (live['structure'].get(key), declared[key])
        return changes

    def update(self, ctx: ResourceContext, live: Dict[str, Any], changes: Changes) -> Dict[str, Any]:
        codepipeline = ctx.client('codepipeline')
        declaration = {**self.declaration(ctx), 'version': live['version']}
        response = ctx.mutate(self.name, codepipeline.update_pipeline, pipeline=declaration)
        logger.info(f"Updated pipeline {live['name']}: {', '.join(changes)}")
        return {**live, 'version': response['pipeline'].get('version'), 'structure': _structure(declaration)}

    def create(self, ctx: ResourceContext) -> Dict[str, Any]:
        codepipeline = ctx.client('codepipeline')
        declaration = self.declaration(ctx)
        response = ctx.mutate(
            self.name, codepipeline.create_pipeline,
            pipeline=declaration,
            tags=[{'key': k, 'value': v} for k, v in ctx.tags(self.name).items()],
        )
        pipeline = response['pipeline']
        logger.info(f"Created pipeline: {pipeline['name']}")
        return {
            'name': pipeline['name'],
            'arn': f"arn:aws:codepipeline:{ctx.region}:{ctx.account_id}:{pipeline['name']}",
            'version': pipeline.get('version'),
            'structure': _structure(declaration),
        }

    def delete(self, ctx: ResourceContext, live: Dict[str, Any]) -> None:
        codepipeline = ctx.client('codepipeline')
        ctx.mutate(self.name, codepipeline.delete_pipeline, name=live['name'])
        logger.info(f"Deleted pipeline: {live['name']}")
