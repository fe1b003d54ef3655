"""Provision and operate an ECS Fargate deployment directly through the AWS APIs."""

__version__ = "0.1.0"
