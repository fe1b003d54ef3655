"""Declarative descriptors for the deployed stack and its build artifacts."""
import ipaddress
import re
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Valid Fargate CPU units and the memory values (MiB) each one accepts.
FARGATE_MEMORY_BY_CPU: Dict[int, List[int]] = {
    256: [512, 1024, 2048],
    512: list(range(1024, 4096 + 1, 1024)),
    1024: list(range(2048, 8192 + 1, 1024)),
    2048: list(range(4096, 16384 + 1, 1024)),
    4096: list(range(8192, 30720 + 1, 1024)),
    8192: list(range(16384, 61440 + 1, 4096)),
    16384: list(range(32768, 122880 + 1, 8192)),
}

SHORT_HASH_LENGTH = 7
DEFAULT_IMAGE_TAG = "latest"


class SubnetSpec(BaseModel):
    """A single subnet in the VPC."""
    zone: str
    cidr_block: str
    public: bool = True

    @field_validator("cidr_block")
    @classmethod
    def validate_cidr(cls, v):
        ipaddress.ip_network(v, strict=True)
        return v


class NetworkSpec(BaseModel):
    """VPC CIDR and its subnets.

    Subnets must sit inside the VPC CIDR without overlapping each other, and
    at least two availability zones are needed for the load balancer.
    """
    cidr_block: str = "10.0.0.0/16"
    subnets: List[SubnetSpec] = Field(default_factory=list)

    @field_validator("cidr_block")
    @classmethod
    def validate_cidr(cls, v):
        ipaddress.ip_network(v, strict=True)
        return v

    @model_validator(mode="after")
    def validate_subnets(self):
        if not self.subnets:
            return self

        vpc_net = ipaddress.ip_network(self.cidr_block)
        networks = []
        for subnet in self.subnets:
            net = ipaddress.ip_network(subnet.cidr_block)
            if not net.subnet_of(vpc_net):
                raise ValueError(f"subnet {subnet.cidr_block} is outside VPC CIDR {self.cidr_block}")
            for other in networks:
                if net.overlaps(other):
                    raise ValueError(f"subnet {subnet.cidr_block} overlaps {other}")
            networks.append(net)

        public_zones = {s.zone for s in self.subnets if s.public}
        if len(public_zones) < 2:
            raise ValueError("at least two public subnets in distinct zones are required")
        return self

    @classmethod
    def default_for_region(cls, region: str, cidr_block: str = "10.0.0.0/16") -> "NetworkSpec":
        """Two public /24 subnets in the region's first two zones."""
        vpc_net = ipaddress.ip_network(cidr_block)
        blocks = list(vpc_net.subnets(new_prefix=max(vpc_net.prefixlen, 24)))
        if len(blocks) < 3:
            raise ValueError(f"VPC CIDR {cidr_block} is too small for the default subnets")
        return cls(
            cidr_block=cidr_block,
            subnets=[
                SubnetSpec(zone=f"{region}a", cidr_block=str(blocks[1])),
                SubnetSpec(zone=f"{region}b", cidr_block=str(blocks[2])),
            ],
        )


class HealthCheckSpec(BaseModel):
    """Target group health check."""
    path: str = "/"
    interval_seconds: int = 30
    timeout_seconds: int = 5
    healthy_threshold: int = 3
    unhealthy_threshold: int = 3
    matcher: str = "200"

    @model_validator(mode="after")
    def validate_timing(self):
        if self.timeout_seconds >= self.interval_seconds:
            raise ValueError("health check timeout must be shorter than its interval")
        return self


class ServiceSpec(BaseModel):
    """Sizing and exposure of the Fargate service."""
    desired_count: int = Field(default=1, ge=0)
    container_port: int = Field(default=3000, ge=1, le=65535)
    listener_port: int = Field(default=80, ge=1, le=65535)
    cpu: int = 256
    memory: int = 512
    image_tag: str = DEFAULT_IMAGE_TAG
    health_check: HealthCheckSpec = Field(default_factory=HealthCheckSpec)

    @model_validator(mode="after")
    def validate_fargate_size(self):
        allowed = FARGATE_MEMORY_BY_CPU.get(self.cpu)
        if allowed is None:
            raise ValueError(f"cpu={self.cpu} is not a Fargate size; choose one of {sorted(FARGATE_MEMORY_BY_CPU)}")
        if self.memory not in allowed:
            raise ValueError(f"memory={self.memory} is not valid for cpu={self.cpu}")
        return self


class PipelineConfig(BaseModel):
    """Inputs for the managed CodePipeline/CodeBuild chain."""
    repository_id: str
    branch: str
    connection_arn: str
    buildspec: str
    manifest_file: str = "imagedefinitions.json"
    tag_file: str = "image_tag.txt"

    @staticmethod
    def repository_id_from_url(url: str) -> str:
        """Turn a git URL into the ``owner/repo`` form CodeStar connections expect."""
        match = re.search(r"[:/]([^/:]+)/([^/]+?)(?:\.git)?/?$", url.strip())
        if not match:
            raise ValueError(f"cannot derive owner/repo from source repository {url!r}")
        return f"{match.group(1)}/{match.group(2)}"


class ImageDefinition(BaseModel):
    """One entry of ``imagedefinitions.json``."""
    name: str
    imageUri: str


class DeploymentRecord(BaseModel):
    """Maps a commit to the image tag that was published for it."""
    commit: Optional[str]
    tag: str
    image_uri: str
    pushed_at: Optional[datetime] = None
    is_latest: bool = False


def resolve_image_tag(revision: Optional[str]) -> str:
    """Short commit hash used as the image tag, ``latest`` when unresolved."""
    short = (revision or "").strip()[:SHORT_HASH_LENGTH]
    return short or DEFAULT_IMAGE_TAG


def build_image_definitions(app_name: str, registry_uri: str, tag: str) -> List[ImageDefinition]:
    return [ImageDefinition(name=app_name, imageUri=f"{registry_uri}:{tag}")]
