"""AWS utility functions and client management."""
import os
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from fargate_deploy.config.settings import Settings, get_settings
from fargate_deploy.exceptions import ProviderError
from fargate_deploy.utils.decorators import retry

logger = logging.getLogger(__name__)

# Always worth another attempt: throttling and server-side hiccups.
TRANSIENT_ERROR_CODES = frozenset({
    'Throttling',
    'ThrottlingException',
    'ThrottledException',
    'RequestThrottled',
    'RequestThrottledException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'SlowDown',
    'ServiceUnavailable',
    'ServiceUnavailableException',
    'InternalError',
    'InternalFailure',
    'ServerException',
})

# Retried on writes only: a resource we just created is not visible yet, or a
# dependent resource is still being torn down.
EVENTUAL_CONSISTENCY_CODES = frozenset({
    'DependencyViolation',
    'InvalidVpcID.NotFound',
    'InvalidSubnetID.NotFound',
    'InvalidGroup.NotFound',
    'InvalidInternetGatewayID.NotFound',
    'InvalidRouteTableID.NotFound',
    'ResourceInUse',
    'ResourceInUseException',
    'ClusterContainsServicesException',
    'ClusterContainsTasksException',
    'InvalidParameterException',
    'InvalidInputException',
    'MalformedPolicyDocument',
})

_TRANSIENT_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


def error_code(error: Exception) -> Optional[str]:
    """AWS error code of a ClientError (or a ProviderError wrapping one)."""
    if isinstance(error, ProviderError):
        return error.code
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code')
    return None


def error_message(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Message') or str(error)
    return str(error)


def is_transient_error(error: Exception, extra_codes: Iterable[str] = ()) -> bool:
    """Whether an AWS failure is worth retrying with backoff."""
    if isinstance(error, _TRANSIENT_BOTOCORE_ERRORS):
        return True
    if isinstance(error, ClientError):
        code = error_code(error)
        if code in TRANSIENT_ERROR_CODES or code in extra_codes:
            return True
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        return status >= 500
    return False


def is_not_found(error: Exception, *codes: str) -> bool:
    code = error_code(error) or ''
    if codes:
        return code in codes
    return code.endswith('NotFound') or code.endswith('NotFoundException') or code == 'NoSuchEntity'


class AWSClientManager:
    """Creates and caches one boto3 client per AWS service.

    boto3 clients are thread-safe, so a single manager is shared by every
    worker thread of a run.
    """

    def __init__(self, settings: Optional[Settings] = None, region: Optional[str] = None):
        self.settings = settings or get_settings()
        self.region = region or self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url
        self.mode = self.settings.deployment_mode
        self._clients: Dict[str, Any] = {}
        self._session = None
        self._config = Config(
            connect_timeout=self.settings.provider_call_timeout,
            read_timeout=self.settings.provider_call_timeout,
            retries={'max_attempts': 3, 'mode': 'standard'},
        )

        logger.info(f"Initializing AWSClientManager")
        logger.info(f"  Mode: {self.mode}")
        logger.info(f"  Region: {self.region}")
        logger.info(f"  Endpoint: {self.endpoint_url}")

    def _get_session(self) -> boto3.Session:
        if self._session is not None:
            return self._session

        # SSO profiles only make sense against real AWS
        aws_profile = os.environ.get('AWS_PROFILE')
        if aws_profile and self.mode == 'aws-prod' and not self.settings.aws_access_key_id:
            self._session = boto3.Session(profile_name=aws_profile, region_name=self.region)
            logger.debug(f"Using AWS profile: {aws_profile}")
        else:
            self._session = boto3.Session(region_name=self.region)
        return self._session

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        if service_name in self._clients:
            return self._clients[service_name]

        client_kwargs: Dict[str, Any] = {
            'region_name': self.region,
            'config': self._config,
        }

        if self.settings.aws_access_key_id:
            client_kwargs['aws_access_key_id'] = self.settings.aws_access_key_id
        if self.settings.aws_secret_access_key:
            client_kwargs['aws_secret_access_key'] = self.settings.aws_secret_access_key

        # Endpoint override only for the moto server
        if self.endpoint_url and self.mode == 'aws-mock':
            client_kwargs['endpoint_url'] = self.endpoint_url

        try:
            client = self._get_session().client(service_name, **client_kwargs)
        except BotoCoreError as e:
            logger.error(f"Error creating {service_name} client: {str(e)}")
            raise ProviderError(f"{service_name}-client", str(e))

        self._clients[service_name] = client
        logger.debug(f"Created {service_name} client")
        return client

    def clear_clients(self):
        """Clear all cached clients."""
        self._clients.clear()
        self._session = None
        logger.debug("Cleared all AWS clients")

    def account_id(self) -> str:
        if self.settings.aws_account_id:
            return self.settings.aws_account_id
        sts = self.get_client('sts')
        return call_aws('sts', sts.get_caller_identity)['Account']


def call_aws(step: str, func: Callable[..., Any], *args,
             max_attempts: int = 5, delay: float = 1.0,
             retry_codes: Iterable[str] = (), **kwargs) -> Any:
    """Invoke one AWS API call with backoff on transient errors.

    Failures surface as ``ProviderError`` tagged with ``step`` (normally the
    logical resource name) and the AWS error code.
    """
    retry_codes = frozenset(retry_codes)

    @retry(max_attempts=max_attempts, delay=delay, backoff=2.0,
           exceptions=(ClientError, BotoCoreError),
           retry_if=lambda e: is_transient_error(e, retry_codes),
           logger_name=__name__)
    def _invoke():
        return func(*args, **kwargs)

    try:
        return _invoke()
    except ClientError as e:
        raise ProviderError(step, error_message(e), code=error_code(e),
                            transient=is_transient_error(e, retry_codes)) from e
    except BotoCoreError as e:
        raise ProviderError(step, str(e), transient=is_transient_error(e)) from e


def paginate(step: str, client: Any, operation: str, result_key: str,
             max_attempts: int = 5, delay: float = 1.0, **kwargs) -> List[Any]:
    """Collect every page of a paginated describe/list call.

    A transient failure on any page restarts the listing from the first page.
    """
    def _collect():
        items: List[Any] = []
        for page in client.get_paginator(operation).paginate(**kwargs):
            items.extend(page.get(result_key, []))
        return items

    return call_aws(step, _collect, max_attempts=max_attempts, delay=delay)


def to_ec2_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{'Key': k, 'Value': v} for k, v in tags.items()]


def to_ecs_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{'key': k, 'value': v} for k, v in tags.items()]


def tag_value(tags: Optional[List[Dict[str, str]]], key: str) -> Optional[str]:
    for tag in tags or []:
        if tag.get('Key', tag.get('key')) == key:
            return tag.get('Value', tag.get('value'))
    return None
