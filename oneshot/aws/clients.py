"""AWS wiring with dependency injection.

Binds the resolved configuration and the job's names, and provides the
boto3 session, the two lifecycles, the remote command channel and the
orchestrator built from them.
"""

from __future__ import annotations

import boto3
from injector import Binder, Injector, Module, provider, singleton

from oneshot.aws.compute import ComputeInstanceLifecycle
from oneshot.aws.storage import ObjectStoreLifecycle
from oneshot.config import OneshotConfig
from oneshot.job import ProvisioningOrchestrator
from oneshot.ssh import RemoteCommandChannel
from oneshot.types import JobNames
from oneshot.wait import Poller


class OneshotModule(Module):
    """DI module for one job.

    Usage:
        >>> injector = Injector([OneshotModule(config, job_id="a1b2c3d4")])
        >>> orchestrator = injector.get(ProvisioningOrchestrator)
    """

    def __init__(self, config: OneshotConfig, job_id: str) -> None:
        self._config = config
        self._names = JobNames.for_job(config.job.prefix, job_id, config.job.bucket)

    def configure(self, binder: Binder) -> None:
        binder.bind(OneshotConfig, to=self._config)
        binder.bind(JobNames, to=self._names)

    @singleton
    @provider
    def provide_session(self, config: OneshotConfig) -> boto3.Session:
        """Provide singleton boto3 session."""
        return boto3.Session(region_name=config.aws.region, profile_name=config.aws.profile)

    @singleton
    @provider
    def provide_compute(
        self,
        session: boto3.Session,
        config: OneshotConfig,
        names: JobNames,
    ) -> ComputeInstanceLifecycle:
        """Provide the EC2 lifecycle, resolving the image through SSM when needed."""
        aws, timeouts = config.aws, config.timeouts
        return ComputeInstanceLifecycle(
            session.client("ec2", region_name=aws.region),
            names,
            instance_type=aws.instance_type,
            key_dir=config.job.key_dir,
            image_id=aws.ami,
            ssm=session.client("ssm", region_name=aws.region) if not aws.ami else None,
            image_parameter=aws.image_parameter,
            instance_profile=aws.instance_profile,
            boot=Poller(interval=timeouts.poll_interval, timeout=timeouts.boot),
            shutdown=Poller(interval=timeouts.poll_interval, timeout=timeouts.shutdown),
        )

    @singleton
    @provider
    def provide_storage(self, session: boto3.Session, config: OneshotConfig) -> ObjectStoreLifecycle:
        """Provide the S3 lifecycle."""
        return ObjectStoreLifecycle(session.client("s3", region_name=config.aws.region), config.aws.region)

    @singleton
    @provider
    def provide_channel(self, config: OneshotConfig) -> RemoteCommandChannel:
        """Provide the remote command channel."""
        timeouts = config.timeouts
        return RemoteCommandChannel(
            settle_delay=timeouts.settle,
            connect_attempts=timeouts.connect_attempts,
            prompt_attempts=timeouts.prompt_attempts,
            prompt_interval=timeouts.prompt_interval,
        )

    @singleton
    @provider
    def provide_orchestrator(
        self,
        compute: ComputeInstanceLifecycle,
        storage: ObjectStoreLifecycle,
        channel: RemoteCommandChannel,
        names: JobNames,
        config: OneshotConfig,
    ) -> ProvisioningOrchestrator:
        """Provide the job orchestrator."""
        return ProvisioningOrchestrator(compute, storage, channel, names=names, config=config)


def build_orchestrator(config: OneshotConfig, job_id: str) -> ProvisioningOrchestrator:
    """Wire a ready-to-run orchestrator for one job."""
    return Injector([OneshotModule(config, job_id)]).get(ProvisioningOrchestrator)


__all__ = [
    "OneshotModule",
    "build_orchestrator",
]
