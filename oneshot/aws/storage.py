"""S3 bucket lifecycle: create, tag, upload, download, destroy."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, cast

from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from oneshot.artifact import InputArtifact
from oneshot.exceptions import ProvisionError, TeardownError
from oneshot.record import (
    STORAGE_RESOURCES,
    CleanupFailure,
    CleanupReport,
    ProvisioningRecord,
    Resource,
)
from oneshot.types import ObjectStoreBucket, StoredObject, Tag

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client
    from mypy_boto3_s3.literals import BucketLocationConstraintType

log = logger.bind(component="storage")

_MISSING_BUCKET_CODES = frozenset({"404", "NoSuchBucket", "NotFound"})


def _is_missing_bucket(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code", "") in _MISSING_BUCKET_CODES


class ObjectStoreLifecycle:
    """Manages the bucket that carries a job's input and output artifacts."""

    def __init__(self, s3: S3Client, region: str) -> None:
        self._s3 = s3
        self.region = region

    # =========================================================================
    # Provisioning
    # =========================================================================

    def provision(
        self,
        bucket_name: str,
        tag: Tag,
        artifact: InputArtifact,
        record: ProvisioningRecord | None = None,
    ) -> ObjectStoreBucket:
        """Create (or adopt) the bucket, tag it and upload the input.

        Raises:
            ProvisionError: If any step fails. Entries added by this call
                are unwound before raising.
        """
        record = record if record is not None else ProvisioningRecord()
        checkpoint = record.checkpoint()
        bucket = ObjectStoreBucket(name=bucket_name, tag=tag)

        try:
            self._ensure_bucket(bucket_name, record)
            self._tag(bucket_name, tag, record)
            bucket = bucket.with_object(self._upload(bucket_name, artifact, record))
        except (ClientError, BotoCoreError, Boto3Error, OSError) as e:
            log.error(f"Storage provisioning failed: {e}")
            report = record.unwind(since=checkpoint)
            raise ProvisionError(f"Failed to provision bucket {bucket_name}: {e}", report) from e

        return bucket

    def exists(self, bucket_name: str) -> bool:
        try:
            self._s3.head_bucket(Bucket=bucket_name)
        except ClientError as e:
            if _is_missing_bucket(e):
                return False
            raise
        return True

    def _ensure_bucket(self, bucket_name: str, record: ProvisioningRecord) -> None:
        if self.exists(bucket_name):
            log.info(f"Bucket {bucket_name} already exists, reusing it")
        else:
            if self.region == "us-east-1":
                self._s3.create_bucket(Bucket=bucket_name)
            else:
                location = cast("BucketLocationConstraintType", self.region)
                self._s3.create_bucket(
                    Bucket=bucket_name,
                    CreateBucketConfiguration={"LocationConstraint": location},
                )
            log.info(f"Created bucket {bucket_name}")

        record.mark(Resource.BUCKET, bucket_name, lambda: self._destroy(bucket_name))

    def _tag(self, bucket_name: str, tag: Tag, record: ProvisioningRecord) -> None:
        self._s3.put_bucket_tagging(
            Bucket=bucket_name,
            Tagging={"TagSet": [tag.to_aws()]},
        )
        record.mark(
            Resource.BUCKET_TAG,
            str(tag),
            lambda: self._s3.delete_bucket_tagging(Bucket=bucket_name),
        )
        log.info(f"Tagged bucket {bucket_name} with {tag}")

    def _upload(
        self,
        bucket_name: str,
        artifact: InputArtifact,
        record: ProvisioningRecord,
    ) -> StoredObject:
        self._s3.upload_file(str(artifact.path), bucket_name, artifact.key)
        record.mark(
            Resource.UPLOAD,
            artifact.key,
            lambda: self._s3.delete_object(Bucket=bucket_name, Key=artifact.key),
        )
        log.info(f"Uploaded {artifact.path} to s3://{bucket_name}/{artifact.key}")
        return StoredObject(key=artifact.key, local_path=artifact.path, size=artifact.size)

    # =========================================================================
    # Listing and downloads
    # =========================================================================

    def list_objects(self, bucket_name: str) -> list[StoredObject]:
        paginator = self._s3.get_paginator("list_objects_v2")
        objects: list[StoredObject] = []
        for page in paginator.paginate(Bucket=bucket_name):
            for item in page.get("Contents", []):
                objects.append(StoredObject(key=item["Key"], size=item.get("Size", 0)))
        return objects

    def download_all_except(
        self,
        bucket: ObjectStoreBucket,
        excluded_key: str,
        destination: Path,
        *,
        delete: bool = False,
    ) -> ObjectStoreBucket:
        """Download every object except one into destination.

        Objects are downloaded independently: one failing object is logged
        and reported in ``failed`` but never stops the others. The object
        key becomes the path relative to destination.

        Args:
            bucket: The job bucket.
            excluded_key: Key to skip, normally the uploaded input.
            destination: Local directory receiving the objects.
            delete: Remove each object from the bucket once downloaded.

        Returns:
            The bucket with downloaded and failed keys recorded.
        """
        root = destination.expanduser().resolve()
        root.mkdir(parents=True, exist_ok=True)

        downloaded: list[Path] = []
        failed: list[str] = []

        for obj in self.list_objects(bucket.name):
            if obj.key == excluded_key or obj.key.endswith("/"):
                continue

            target = (root / obj.key).resolve()
            if not target.is_relative_to(root):
                log.warning(f"Skipping object {obj.key!r}: not a file below {root}")
                failed.append(obj.key)
                continue

            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                self._s3.download_file(bucket.name, obj.key, str(target))
            except (ClientError, BotoCoreError, Boto3Error, OSError) as e:
                log.error(f"Download of s3://{bucket.name}/{obj.key} failed: {e}")
                failed.append(obj.key)
                continue

            log.info(f"Downloaded s3://{bucket.name}/{obj.key} to {target}")
            downloaded.append(target)
            bucket = bucket.with_object(StoredObject(key=obj.key, local_path=target, size=obj.size))

            if delete:
                try:
                    self._s3.delete_object(Bucket=bucket.name, Key=obj.key)
                except (ClientError, BotoCoreError) as e:
                    log.warning(f"Could not delete s3://{bucket.name}/{obj.key}: {e}")
                else:
                    bucket = bucket.without(obj.key)

        return ObjectStoreBucket(
            name=bucket.name,
            tag=bucket.tag,
            objects=bucket.objects,
            downloaded=tuple(downloaded),
            failed=tuple(failed),
        )

    # =========================================================================
    # Teardown
    # =========================================================================

    def destroy(
        self,
        bucket: ObjectStoreBucket,
        record: ProvisioningRecord | None = None,
    ) -> CleanupReport:
        """Delete every object, then the bucket.

        A bucket that no longer exists is not an error.

        Raises:
            TeardownError: If an object or the bucket could not be deleted.
        """
        if record is not None:
            report = record.unwind(only=STORAGE_RESOURCES)
        else:
            try:
                self._destroy(bucket.name)
            except (ClientError, BotoCoreError) as e:
                report = CleanupReport(failed=(CleanupFailure(Resource.BUCKET, bucket.name, e),))
            else:
                report = CleanupReport()

        if report.failed:
            raise TeardownError(report)
        return report

    def _destroy(self, bucket_name: str) -> None:
        try:
            objects = self.list_objects(bucket_name)
        except ClientError as e:
            if _is_missing_bucket(e):
                log.info(f"Bucket {bucket_name} already deleted")
                return
            raise

        for obj in objects:
            self._s3.delete_object(Bucket=bucket_name, Key=obj.key)
            log.info(f"Deleted object {obj.key} in bucket {bucket_name}")

        try:
            self._s3.delete_bucket(Bucket=bucket_name)
        except ClientError as e:
            if not _is_missing_bucket(e):
                raise
        log.info(f"Deleted bucket {bucket_name}")
