"""The resource graph for one deployment config."""
import logging
from typing import List

from fargate_deploy.aws.ecr_repository import RepositoryResource
from fargate_deploy.aws.ecs_cluster import ClusterResource, LogGroupResource
from fargate_deploy.aws.ecs_services import ServiceResource
from fargate_deploy.aws.ecs_task_definitions import TaskDefinitionResource
from fargate_deploy.aws.iam_roles import DeployerUserResource, ServiceRoleResource, execution_role_policy
from fargate_deploy.aws.load_balancer import ListenerResource, LoadBalancerResource, TargetGroupResource
from fargate_deploy.aws.pipeline import (
    ArtifactBucketResource,
    BuildProjectResource,
    PipelineResource,
    build_role_policy,
    pipeline_role_policy,
)
from fargate_deploy.aws.vpc_network import (
    ANYWHERE,
    InternetGatewayResource,
    RouteTableResource,
    SecurityGroupResource,
    SubnetResource,
    VpcResource,
)
from fargate_deploy.config.deployment import DeploymentConfig
from fargate_deploy.orchestration.graph import ResourceGraph

logger = logging.getLogger(__name__)

PIPELINE_RESOURCES = ("artifact-bucket", "build-role", "pipeline-role", "build-project", "pipeline")


def subnet_names(config: DeploymentConfig) -> List[str]:
    return [
        f"{'public' if subnet.public else 'private'}-subnet-{index + 1}"
        for index, subnet in enumerate(config.network.subnets)
    ]


def build_resource_graph(config: DeploymentConfig) -> ResourceGraph:
    """Every resource the config declares, wired by dependency.

    Network, registry and access resources come first; the service waits for
    the listener so it can register with the target group; the CI/CD nodes
    depend on the service they deploy to.
    """
    graph = ResourceGraph()

    # Network layer
    graph.add(VpcResource("vpc"))
    graph.add(InternetGatewayResource("internet-gateway", vpc="vpc"))
    public_subnets = []
    for name, spec in zip(subnet_names(config), config.network.subnets):
        graph.add(SubnetResource(name, spec, vpc="vpc"))
        if spec.public:
            public_subnets.append(name)
    graph.add(RouteTableResource("public-route-table", public_subnets,
                                 vpc="vpc", internet_gateway="internet-gateway"))

    listener_port = config.service.listener_port
    container_port = config.service.container_port
    graph.add(SecurityGroupResource(
        "alb-sg", f"HTTP from anywhere to the {config.app_name} load balancer",
        rules=lambda ctx: [("tcp", listener_port, listener_port, f"cidr:{ANYWHERE}")],
        vpc="vpc",
    ))
    graph.add(SecurityGroupResource(
        "service-sg", f"Container port of {config.app_name} from the load balancer only",
        rules=lambda ctx: [("tcp", container_port, container_port, "sg:alb-sg")],
        vpc="vpc", source_groups=("alb-sg",),
    ))

    # Registry layer
    graph.add(RepositoryResource("repository"))

    # Access layer
    graph.add(ServiceRoleResource(
        "execution-role",
        role_name=lambda ctx: ctx.config.execution_role_name,
        service_principal="ecs-tasks.amazonaws.com",
        inline_policy=execution_role_policy,
        depends_on=["repository", "log-group"],
    ))

    # Compute layer
    graph.add(ClusterResource("cluster"))
    graph.add(LogGroupResource("log-group"))
    graph.add(TaskDefinitionResource("task-definition", repository="repository",
                                     execution_role="execution-role", log_group="log-group"))

    # Load-balancing layer
    graph.add(LoadBalancerResource("load-balancer", subnets=public_subnets,
                                   security_group="alb-sg", internet_gateway="internet-gateway"))
    graph.add(TargetGroupResource("target-group", vpc="vpc"))
    graph.add(ListenerResource("listener", load_balancer="load-balancer", target_group="target-group"))

    graph.add(ServiceResource("service", cluster="cluster", task_definition="task-definition",
                              target_group="target-group", listener="listener",
                              security_group="service-sg", subnets=public_subnets,
                              route_table="public-route-table"))

    if config.cicd_provider == "external":
        graph.add(DeployerUserResource("deployer", depends_on=["repository", "execution-role", "service"]))
    else:
        graph.add(ArtifactBucketResource("artifact-bucket"))
        graph.add(ServiceRoleResource(
            "build-role",
            role_name=lambda ctx: ctx.config.build_role_name,
            service_principal="codebuild.amazonaws.com",
            inline_policy=build_role_policy,
            depends_on=["artifact-bucket", "repository"],
        ))
        graph.add(ServiceRoleResource(
            "pipeline-role",
            role_name=lambda ctx: ctx.config.pipeline_role_name,
            service_principal="codepipeline.amazonaws.com",
            inline_policy=pipeline_role_policy,
            depends_on=["artifact-bucket", "execution-role"],
        ))
        graph.add(BuildProjectResource("build-project", build_role="build-role", repository="repository"))
        graph.add(PipelineResource("pipeline", pipeline_role="pipeline-role", build_project="build-project",
                                   artifact_bucket="artifact-bucket", service="service"))

    logger.debug(f"Resource graph for {config.app_name}: {len(graph)} resources")
    return graph
