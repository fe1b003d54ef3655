from .graph import ResourceGraph
from .orchestrator import ApplyResult, DestroyResult, Orchestrator, Plan, ResourceChange
from .rollout import DeploymentTrigger, RolloutResult
from .stack import build_resource_graph

__all__ = [
    'ResourceGraph',
    'ApplyResult',
    'DestroyResult',
    'Orchestrator',
    'Plan',
    'ResourceChange',
    'DeploymentTrigger',
    'RolloutResult',
    'build_resource_graph',
]
