"""AWS-backed lifecycles for compute (EC2) and storage (S3)."""

from oneshot.aws.compute import ComputeInstanceLifecycle
from oneshot.aws.storage import ObjectStoreLifecycle

__all__ = [
    "ComputeInstanceLifecycle",
    "ObjectStoreLifecycle",
]
