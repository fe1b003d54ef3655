from .settings import Settings, get_settings
from .deployment import DeploymentConfig, load_deployment_config

__all__ = ['Settings', 'get_settings', 'DeploymentConfig', 'load_deployment_config']
