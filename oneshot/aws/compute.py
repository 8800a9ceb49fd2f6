"""EC2 instance lifecycle: access rule, key pair, instance, address, tag."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from botocore.exceptions import ClientError
from loguru import logger
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from oneshot.constants import (
    BOOT_FAILURE_STATES,
    SSH_PORT,
    TERMINABLE_STATES,
    InstanceState,
    OneshotTag,
)
from oneshot.exceptions import ProvisionError, TeardownError
from oneshot.keys import remove_private_key, write_private_key
from oneshot.record import COMPUTE_RESOURCES, CleanupReport, ProvisioningRecord, Resource
from oneshot.types import ComputeInstance, JobNames, LaunchedInstance, Tag
from oneshot.wait import Poller

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client
    from mypy_boto3_ssm import SSMClient

log = logger.bind(component="compute")


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def _is_dependency_violation(exc: BaseException) -> bool:
    return _error_code(exc) == "DependencyViolation"


class ComputeInstanceLifecycle:
    """Creates, polls and destroys the single instance of a job."""

    def __init__(
        self,
        ec2: EC2Client,
        names: JobNames,
        *,
        instance_type: str,
        key_dir: Path,
        image_id: str | None = None,
        ssm: SSMClient | None = None,
        image_parameter: str | None = None,
        instance_profile: str | None = None,
        boot: Poller | None = None,
        shutdown: Poller | None = None,
    ) -> None:
        """Initialize the lifecycle.

        Args:
            ec2: EC2 client.
            names: Provider-side names owned by this job.
            instance_type: EC2 instance type to request.
            key_dir: Directory for the private key file.
            image_id: Image to boot. If None, resolved from image_parameter.
            ssm: SSM client used to resolve image_parameter.
            image_parameter: Public SSM parameter holding an image id.
            instance_profile: Optional IAM instance profile name.
            boot: Poller used while the instance starts.
            shutdown: Poller used while the instance terminates.
        """
        self._ec2 = ec2
        self._ssm = ssm
        self._names = names
        self._instance_type = instance_type
        self._key_dir = key_dir
        self._image_id = image_id
        self._image_parameter = image_parameter
        self._instance_profile = instance_profile
        self._boot = boot or Poller()
        self._shutdown = shutdown or Poller()

    # =========================================================================
    # Provisioning
    # =========================================================================

    def provision(
        self,
        access_range: str,
        tag: Tag,
        record: ProvisioningRecord | None = None,
    ) -> ComputeInstance:
        """Bring up one reachable instance.

        Each step is marked in the record as soon as it succeeds. If any
        step fails, exactly the entries added by this call are unwound.

        Args:
            access_range: Source CIDR allowed to reach the SSH port.
            tag: Label attached to the instance.
            record: Job record to mark created resources in.

        Returns:
            The running instance.

        Raises:
            ProvisionError: If any step fails. Carries the cleanup report.
        """
        record = record if record is not None else ProvisioningRecord()
        checkpoint = record.checkpoint()

        try:
            security_group_id = self._create_security_group(access_range, record)
            key_path = self._create_key_pair(record)
            launched = self._run_instance(security_group_id, key_path, record)
            self._wait_running(launched.instance_id)
            public_ip = self._public_ip(launched.instance_id)
            self._tag(launched.instance_id, tag, record)
        except Exception as e:
            log.error(f"Compute provisioning failed: {e}")
            report = record.unwind(since=checkpoint)
            raise ProvisionError(f"Failed to provision compute instance: {e}", report) from e

        instance = launched.running(public_ip, tag)
        log.info(f"Instance {instance.instance_id} running at {public_ip}")
        return instance

    def _create_security_group(self, access_range: str, record: ProvisioningRecord) -> str:
        name = self._names.security_group
        response = self._ec2.create_security_group(
            GroupName=name,
            Description=f"oneshot job {self._names.job_id}",
            TagSpecifications=[
                {
                    "ResourceType": "security-group",
                    "Tags": [{"Key": OneshotTag.MANAGED, "Value": "true"}],
                }
            ],
        )
        group_id = response["GroupId"]
        record.mark(
            Resource.SECURITY_GROUP,
            group_id,
            lambda: self._delete_security_group(group_id),
        )
        log.info(f"Created security group {name} ({group_id})")

        self._ec2.authorize_security_group_ingress(
            GroupId=group_id,
            IpPermissions=[
                {
                    "IpProtocol": "tcp",
                    "FromPort": SSH_PORT,
                    "ToPort": SSH_PORT,
                    "IpRanges": [{"CidrIp": access_range, "Description": "oneshot ssh"}],
                }
            ],
        )
        log.info(f"Authorized tcp/{SSH_PORT} from {access_range}")
        return group_id

    def _create_key_pair(self, record: ProvisioningRecord) -> Path:
        key_name = self._names.key_pair
        response = self._ec2.create_key_pair(KeyName=key_name)
        record.mark(Resource.KEY_PAIR, key_name, lambda: self._delete_key_pair(key_name))
        log.info(f"Created key pair {key_name}")

        key_path = write_private_key(self._key_dir, key_name, response["KeyMaterial"])
        record.mark(Resource.KEY_FILE, str(key_path), lambda: remove_private_key(key_path))
        return key_path

    def _resolve_image(self) -> str:
        if self._image_id:
            return self._image_id
        if self._ssm is None or not self._image_parameter:
            raise ProvisionError("No image configured and no SSM parameter to resolve one")
        response = self._ssm.get_parameter(Name=self._image_parameter)
        image_id = response["Parameter"]["Value"]
        log.debug(f"Resolved {self._image_parameter} to {image_id}")
        return image_id

    def _run_instance(
        self,
        security_group_id: str,
        key_path: Path,
        record: ProvisioningRecord,
    ) -> LaunchedInstance:
        kwargs: dict = {
            "ImageId": self._resolve_image(),
            "InstanceType": self._instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "KeyName": self._names.key_pair,
            "SecurityGroupIds": [security_group_id],
        }
        if self._instance_profile:
            kwargs["IamInstanceProfile"] = {"Name": self._instance_profile}

        response = self._ec2.run_instances(**kwargs)
        instance_id = response["Instances"][0]["InstanceId"]
        record.mark(
            Resource.INSTANCE,
            instance_id,
            lambda: self._terminate_and_wait(instance_id),
        )
        log.info(f"Created instance {instance_id} ({self._instance_type})")

        return LaunchedInstance(
            instance_id=instance_id,
            security_group_id=security_group_id,
            key_name=self._names.key_pair,
            key_path=key_path,
        )

    def _wait_running(self, instance_id: str) -> InstanceState:
        log.info(f"Waiting for instance {instance_id} to be running")
        return self._boot.until(
            lambda: self.state(instance_id),
            lambda s: s == InstanceState.RUNNING,
            terminal_check=lambda s: s in BOOT_FAILURE_STATES,
            description=f"instance {instance_id}",
        )

    def _public_ip(self, instance_id: str) -> str:
        response = self._ec2.describe_instances(InstanceIds=[instance_id])
        instance = response["Reservations"][0]["Instances"][0]
        public_ip = instance.get("PublicIpAddress")
        if not public_ip:
            raise ProvisionError(f"Instance {instance_id} has no public IP address")
        return public_ip

    def _tag(self, instance_id: str, tag: Tag, record: ProvisioningRecord) -> None:
        self._ec2.create_tags(Resources=[instance_id], Tags=[tag.to_aws()])
        record.mark(
            Resource.INSTANCE_TAG,
            str(tag),
            lambda: self._ec2.delete_tags(Resources=[instance_id], Tags=[tag.to_aws()]),
        )
        log.info(f"Tagged instance {instance_id} with {tag}")

    # =========================================================================
    # Status
    # =========================================================================

    def state(self, instance_id: str) -> InstanceState | None:
        """Current provider state, or None if the instance is not visible yet."""
        try:
            response = self._ec2.describe_instance_status(
                InstanceIds=[instance_id],
                IncludeAllInstances=True,
            )
        except ClientError as e:
            if _error_code(e) == "InvalidInstanceID.NotFound":
                return None
            raise

        statuses = response.get("InstanceStatuses", [])
        if not statuses:
            return None
        state = InstanceState.from_code(statuses[0]["InstanceState"]["Code"])
        log.trace(f"Instance {instance_id} is {state}")
        return state

    # =========================================================================
    # Teardown
    # =========================================================================

    def terminate(
        self,
        instance: ComputeInstance,
        record: ProvisioningRecord | None = None,
    ) -> CleanupReport:
        """Tear down the instance and everything it depends on.

        Order: tag, instance (waiting for ``terminated``), key file, key
        pair, security group. Every step is attempted even if an earlier
        one failed.

        Raises:
            TeardownError: If any step failed.
        """
        record = record if record is not None else self.record_for(instance)
        report = record.unwind(only=COMPUTE_RESOURCES)
        if report.failed:
            raise TeardownError(report)
        log.info(f"Instance {instance.instance_id} and its resources removed")
        return report

    def record_for(self, instance: ComputeInstance) -> ProvisioningRecord:
        """Rebuild the creation record of a fully provisioned instance."""
        record = ProvisioningRecord()
        group_id = instance.security_group_id
        record.mark(Resource.SECURITY_GROUP, group_id, lambda: self._delete_security_group(group_id))
        record.mark(Resource.KEY_PAIR, instance.key_name, lambda: self._delete_key_pair(instance.key_name))
        record.mark(Resource.KEY_FILE, str(instance.key_path), lambda: remove_private_key(instance.key_path))
        record.mark(
            Resource.INSTANCE,
            instance.instance_id,
            lambda: self._terminate_and_wait(instance.instance_id),
        )
        record.mark(
            Resource.INSTANCE_TAG,
            str(instance.tag),
            lambda: self._ec2.delete_tags(
                Resources=[instance.instance_id], Tags=[instance.tag.to_aws()]
            ),
        )
        return record

    def _terminate_and_wait(self, instance_id: str) -> None:
        # An id this job launched but cannot see yet is still pending.
        state = self.state(instance_id) or InstanceState.PENDING

        if state in TERMINABLE_STATES:
            try:
                self._ec2.terminate_instances(InstanceIds=[instance_id])
            except ClientError as e:
                if _error_code(e) != "InvalidInstanceID.NotFound":
                    raise
                log.warning(f"Instance {instance_id} not found, nothing to terminate")
                return
            log.info(f"Terminating instance {instance_id}")

        log.info(f"Waiting for instance {instance_id} to shut down")
        self._shutdown.until(
            lambda: self.state(instance_id) or InstanceState.TERMINATED,
            lambda s: s == InstanceState.TERMINATED,
            description=f"instance {instance_id} termination",
        )
        log.info(f"Instance {instance_id} terminated")

    def _delete_key_pair(self, key_name: str) -> None:
        self._ec2.delete_key_pair(KeyName=key_name)
        log.info(f"Deleted key pair {key_name}")

    def _delete_security_group(self, group_id: str) -> None:
        # Network interfaces of a terminated instance can hold the group briefly.
        retrying = Retrying(
            stop=stop_after_attempt(5),
            wait=wait_fixed(self._shutdown.interval),
            retry=retry_if_exception(_is_dependency_violation),
            sleep=self._shutdown.sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                self._ec2.delete_security_group(GroupId=group_id)
        log.info(f"Deleted security group {group_id}")
