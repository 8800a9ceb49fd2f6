"""oneshot - Run one program on throwaway AWS infrastructure.

Example:

    from oneshot import build_orchestrator, resolve_config

    orchestrator = build_orchestrator(resolve_config(), job_id="a1b2c3d4")
    result = orchestrator.run_path("job.sh")
    print(result.downloaded)

Every resource the job creates (security group, key pair, instance,
bucket) is removed again, whether the run succeeded or not.
"""

from oneshot.artifact import InputArtifact
from oneshot.aws import ComputeInstanceLifecycle, ObjectStoreLifecycle
from oneshot.aws.clients import OneshotModule, build_orchestrator
from oneshot.config import AWS, Job, OneshotConfig, Timeouts, resolve_config
from oneshot.exceptions import (
    ConfigurationError,
    ConnectError,
    JobFailedError,
    OneshotError,
    PollTimeoutError,
    ProvisionError,
    TeardownError,
    ValidationError,
)
from oneshot.job import JobResult, ProvisioningOrchestrator, job_script
from oneshot.logging import LogConfig, setup_logging, teardown_logging
from oneshot.record import CleanupFailure, CleanupReport, ProvisioningRecord, Resource
from oneshot.ssh import CapturedOutput, Command, RemoteCommandChannel, RemoteSession
from oneshot.types import ComputeInstance, JobNames, LaunchedInstance, ObjectStoreBucket, Tag

__version__ = "0.1.0"

__all__ = [
    # Entry points
    "build_orchestrator",
    "resolve_config",
    "OneshotModule",
    # Logging
    "LogConfig",
    "setup_logging",
    "teardown_logging",
    # Orchestration
    "ProvisioningOrchestrator",
    "JobResult",
    "job_script",
    "InputArtifact",
    # Lifecycles
    "ComputeInstanceLifecycle",
    "ObjectStoreLifecycle",
    "RemoteCommandChannel",
    "RemoteSession",
    "Command",
    "CapturedOutput",
    # Record
    "ProvisioningRecord",
    "Resource",
    "CleanupReport",
    "CleanupFailure",
    # Types
    "ComputeInstance",
    "LaunchedInstance",
    "ObjectStoreBucket",
    "JobNames",
    "Tag",
    # Config
    "OneshotConfig",
    "AWS",
    "Job",
    "Timeouts",
    # Errors
    "OneshotError",
    "ValidationError",
    "ConfigurationError",
    "ProvisionError",
    "ConnectError",
    "TeardownError",
    "PollTimeoutError",
    "JobFailedError",
]
