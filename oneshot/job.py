"""Job orchestration: storage, compute, remote run, results, teardown.

A job owns exactly one bucket and one instance. Everything it creates is
marked in a single ProvisioningRecord, so whichever step fails, the
cleanup cascade removes precisely what exists and nothing else.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from oneshot.artifact import InputArtifact
from oneshot.aws.compute import ComputeInstanceLifecycle
from oneshot.aws.storage import ObjectStoreLifecycle
from oneshot.config import OneshotConfig
from oneshot.constants import (
    AWS_CLI_URL,
    DEFAULT_WORKDIR,
    INSTALL_ATTEMPTS,
    PROGRAM_ATTEMPTS,
    PROMPT_ATTEMPTS,
    PROMPT_INTERVAL,
    SYNC_ATTEMPTS,
)
from oneshot.exceptions import JobFailedError, ProvisionError, TeardownError
from oneshot.record import CleanupReport, ProvisioningRecord
from oneshot.ssh import CapturedOutput, Command, RemoteCommandChannel, RemoteSession
from oneshot.types import JobNames

log = logger.bind(component="job")

REMOTE_CREDENTIALS_DIR = ".aws"


# =============================================================================
# Remote scripts
# =============================================================================


def job_script(
    bucket: str,
    key: str,
    *,
    workdir: str = DEFAULT_WORKDIR,
    interval: float = PROMPT_INTERVAL,
    prompt_attempts: int = PROMPT_ATTEMPTS,
    sync_attempts: int = SYNC_ATTEMPTS,
    program_attempts: int = PROGRAM_ATTEMPTS,
) -> tuple[Command, ...]:
    """Commands that fetch, run and publish one program.

    Each command relies on the shell state left by the previous one. The
    final sync excludes the input so only produced artifacts go back.
    """
    source = shlex.quote(f"s3://{bucket}")
    workdir_q = shlex.quote(workdir)
    key_q = shlex.quote(key)

    def step(text: str, attempts: int) -> Command:
        return Command(text=text, attempts=attempts, interval=interval)

    return (
        step(f"mkdir -p {workdir_q}", prompt_attempts),
        step(f"aws s3 sync {source} ./{workdir_q}", sync_attempts),
        step(f"cd {workdir_q}", prompt_attempts),
        step(f"sudo chmod +x {key_q}", prompt_attempts),
        step(f"./{key_q}", program_attempts),
        step(f"aws s3 cp . {source} --recursive --exclude {key_q}", sync_attempts),
    )


def install_aws_cli_script(
    *,
    interval: float = PROMPT_INTERVAL,
    attempts: int = INSTALL_ATTEMPTS,
) -> tuple[Command, ...]:
    """Commands that install AWS CLI v2 in the login user's home."""
    return tuple(
        Command(text=text, attempts=attempts, interval=interval)
        for text in (
            f"curl -sSL {AWS_CLI_URL} -o awscliv2.zip",
            "unzip -oq awscliv2.zip",
            "sudo ./aws/install --update",
            "rm -rf aws awscliv2.zip",
        )
    )


# =============================================================================
# Result
# =============================================================================


@dataclass(frozen=True, slots=True)
class JobResult:
    """Outcome of a completed job.

    Attributes:
        job_id: Identifier used in every resource name.
        results_dir: Directory the produced artifacts were written to.
        downloaded: Local paths of downloaded artifacts.
        failed: Keys that could not be downloaded.
        outputs: Captured output of every remote command, in order.
        cleanup: What the teardown removed.
    """

    job_id: str
    results_dir: Path
    downloaded: tuple[Path, ...]
    failed: tuple[str, ...]
    outputs: tuple[CapturedOutput, ...]
    cleanup: CleanupReport

    @property
    def ok(self) -> bool:
        return not self.failed and self.cleanup.ok


def _cleanup_of(exc: BaseException) -> CleanupReport:
    match exc:
        case ProvisionError(cleanup=CleanupReport() as report):
            return report
        case TeardownError(report=report):
            return report
        case _:
            return CleanupReport()


# =============================================================================
# Orchestrator
# =============================================================================


class ProvisioningOrchestrator:
    """Runs one program on throwaway infrastructure.

    Order: bucket, instance, session, script, results, bucket teardown,
    instance teardown. A failure anywhere closes the session, unwinds every
    remaining resource in reverse creation order and raises JobFailedError.
    """

    def __init__(
        self,
        compute: ComputeInstanceLifecycle,
        storage: ObjectStoreLifecycle,
        channel: RemoteCommandChannel,
        *,
        names: JobNames,
        config: OneshotConfig,
    ) -> None:
        self._compute = compute
        self._storage = storage
        self._channel = channel
        self._names = names
        self._config = config

    @property
    def names(self) -> JobNames:
        return self._names

    def run_path(self, path: str | Path) -> JobResult:
        """Validate a local path and run it.

        Raises:
            ValidationError: If the path is not a regular file. Nothing has
                been provisioned at that point.
            JobFailedError: As for run.
        """
        return self.run(InputArtifact.from_path(path))

    def run(self, artifact: InputArtifact) -> JobResult:
        """Provision, execute, collect and tear down.

        Raises:
            JobFailedError: If any step failed. Carries the original error
                and the report of the cleanup cascade.
            KeyboardInterrupt: Re-raised unchanged after cleanup.
        """
        job, aws, timeouts = self._config.job, self._config.aws, self._config.timeouts
        jlog = log.bind(job_id=self._names.job_id)
        tag = self._names.tag(job.tag_key)
        results_dir = (job.results_dir or artifact.path.parent).expanduser()

        record = ProvisioningRecord()
        cleanup = CleanupReport()
        session: RemoteSession | None = None

        jlog.info(f"Starting job {self._names.job_id} for {artifact.path}")
        try:
            bucket = self._storage.provision(self._names.bucket, tag, artifact, record)
            instance = self._compute.provision(aws.access_range, tag, record)

            session = self._channel.open(instance.public_ip, instance.key_path, aws.username)
            self._prepare(session)
            self._channel.run_script(
                session,
                job_script(
                    bucket.name,
                    artifact.key,
                    workdir=job.workdir,
                    interval=timeouts.prompt_interval,
                    prompt_attempts=timeouts.prompt_attempts,
                    sync_attempts=timeouts.sync_attempts,
                    program_attempts=timeouts.program_attempts,
                ),
            )
            outputs = tuple(session.transcript)
            self._channel.close(session)
            session = None

            bucket = self._storage.download_all_except(bucket, artifact.key, results_dir)
            cleanup = cleanup.merge(self._storage.destroy(bucket, record))
            cleanup = cleanup.merge(self._compute.terminate(instance, record))
        except BaseException as e:
            jlog.error(f"Job {self._names.job_id} failed: {e!r}, cleaning up")
            self._channel.close(session)
            cleanup = cleanup.merge(_cleanup_of(e)).merge(record.unwind())
            if cleanup.failed:
                jlog.error(f"Cleanup incomplete: {cleanup.summary()}")
            else:
                jlog.info(f"Cleanup complete: {cleanup.summary()}")
            if not isinstance(e, Exception):
                raise
            raise JobFailedError(e, cleanup) from e

        if bucket.failed:
            jlog.warning(f"{len(bucket.failed)} artifact(s) could not be downloaded")
        jlog.info(f"Job {self._names.job_id} finished, results in {results_dir}")
        return JobResult(
            job_id=self._names.job_id,
            results_dir=results_dir,
            downloaded=bucket.downloaded,
            failed=bucket.failed,
            outputs=outputs,
            cleanup=cleanup,
        )

    def _prepare(self, session: RemoteSession) -> None:
        job, aws, timeouts = self._config.job, self._config.aws, self._config.timeouts

        if aws.instance_profile:
            log.info(f"Instance profile {aws.instance_profile} grants access, not copying credentials")
        elif job.credentials_dir is None:
            log.info("Credentials copy disabled")
        elif not job.credentials_dir.expanduser().is_dir():
            log.warning(f"No credentials at {job.credentials_dir}, the instance may lack S3 access")
        else:
            self._channel.upload_directory(session, job.credentials_dir, REMOTE_CREDENTIALS_DIR)

        if job.install_aws_cli:
            log.info("Installing AWS CLI on the instance")
            self._channel.run_script(
                session,
                install_aws_cli_script(interval=timeouts.prompt_interval),
            )
