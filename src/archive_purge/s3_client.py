"""S3 client for archive objects."""

from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from structlog import BoundLogger

from archive_purge.config import S3Config
from archive_purge.exceptions import S3Error
from utils.logging import get_logger


class S3Client:
    """Thin boto3 wrapper: put, get, head and list archive objects.

    Failures are raised as S3Error; retries are left to the caller.
    """

    def __init__(
        self,
        config: S3Config,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize S3 client.

        Args:
            config: S3 configuration
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or get_logger("s3")
        self._client: Optional[Any] = None

    @property
    def client(self) -> Any:
        """Get or create the boto3 S3 client."""
        if self._client is None:
            try:
                credentials = self.config.get_credentials()

                if credentials:
                    session = boto3.Session(
                        aws_access_key_id=credentials["aws_access_key_id"],
                        aws_secret_access_key=credentials["aws_secret_access_key"],
                    )
                else:
                    session = boto3.Session()

                s3_kwargs: dict[str, Any] = {
                    "service_name": "s3",
                    "region_name": self.config.region,
                }
                if self.config.endpoint:
                    s3_kwargs["endpoint_url"] = self.config.endpoint

                self._client = session.client(**s3_kwargs)
                self.logger.debug(
                    "S3 client initialized",
                    bucket=self.config.bucket,
                    endpoint=self.config.endpoint or "AWS S3",
                    region=self.config.region,
                )
            except Exception as e:
                raise S3Error(
                    f"Failed to create S3 client: {e}",
                    context={"bucket": self.config.bucket},
                ) from e

        return self._client

    def full_key(self, s3_key: str) -> str:
        """Apply the configured prefix to a key, avoiding double slashes."""
        s3_key = s3_key.lstrip("/")
        prefix = self.config.prefix.strip("/")
        if not prefix or s3_key.startswith(prefix + "/"):
            return s3_key
        return f"{prefix}/{s3_key}"

    def validate_bucket(self) -> None:
        """Check the bucket exists and is reachable.

        Raises:
            S3Error: If bucket validation fails
        """
        try:
            self.client.head_bucket(Bucket=self.config.bucket)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code == "404":
                message = f"Bucket not found: {self.config.bucket}"
            elif error_code == "403":
                message = f"Access denied to bucket: {self.config.bucket}"
            else:
                message = f"Bucket validation failed: {error_code}"
            raise S3Error(message, context={"bucket": self.config.bucket}) from e
        except BotoCoreError as e:
            raise S3Error(
                f"S3 client error during bucket validation: {e}",
                context={"bucket": self.config.bucket},
            ) from e

        self.logger.debug("Bucket exists and is accessible", bucket=self.config.bucket)

    def upload_file(self, file_path: Path, s3_key: str) -> dict[str, Any]:
        """Upload a local file and confirm the stored size.

        Returns:
            Dictionary with bucket, key, size and etag

        Raises:
            S3Error: If the upload or its verification fails
        """
        full_key = self.full_key(s3_key)
        file_size = file_path.stat().st_size

        self.logger.debug(
            "Starting file upload",
            bucket=self.config.bucket,
            key=full_key,
            size=file_size,
        )

        try:
            with open(file_path, "rb") as f:
                response = self.client.put_object(
                    Bucket=self.config.bucket,
                    Key=full_key,
                    Body=f,
                )
        except (ClientError, BotoCoreError) as e:
            raise S3Error(
                f"File upload failed: {e}",
                context={"bucket": self.config.bucket, "key": full_key},
            ) from e

        self._verify_upload(full_key, file_size)

        return {
            "bucket": self.config.bucket,
            "key": full_key,
            "size": file_size,
            "etag": response.get("ETag", ""),
        }

    def _verify_upload(self, full_key: str, expected_size: int) -> None:
        try:
            response = self.client.head_object(Bucket=self.config.bucket, Key=full_key)
        except (ClientError, BotoCoreError) as e:
            raise S3Error(
                f"Upload verification failed: {e}",
                context={"bucket": self.config.bucket, "key": full_key},
            ) from e

        actual_size = response.get("ContentLength", 0)
        if actual_size != expected_size:
            raise S3Error(
                f"Upload verification failed: size mismatch "
                f"(expected {expected_size}, got {actual_size})",
                context={
                    "bucket": self.config.bucket,
                    "key": full_key,
                    "expected_size": expected_size,
                    "actual_size": actual_size,
                },
            )

    def get_object_bytes(self, s3_key: str) -> bytes:
        """Get object content as bytes.

        Raises:
            S3Error: If download fails
        """
        full_key = self.full_key(s3_key)
        try:
            self.logger.debug("Getting object from S3", bucket=self.config.bucket, key=full_key)
            response = self.client.get_object(Bucket=self.config.bucket, Key=full_key)
            return response["Body"].read()
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            raise S3Error(
                f"Failed to get object from S3: {error_code}",
                context={
                    "bucket": self.config.bucket,
                    "key": full_key,
                    "error_code": error_code,
                },
            ) from e
        except BotoCoreError as e:
            raise S3Error(
                f"Boto3 error during get_object: {e}",
                context={"bucket": self.config.bucket, "key": full_key},
            ) from e

    def object_exists(self, s3_key: str) -> bool:
        """Check if an object exists.

        Raises:
            S3Error: On any error other than a 404
        """
        full_key = self.full_key(s3_key)
        try:
            self.client.head_object(Bucket=self.config.bucket, Key=full_key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise S3Error(
                f"Error checking object existence: {e}",
                context={"bucket": self.config.bucket, "key": full_key},
            ) from e
        except BotoCoreError as e:
            raise S3Error(
                f"Boto3 error during head_object: {e}",
                context={"bucket": self.config.bucket, "key": full_key},
            ) from e

    def list_objects(self, prefix: str) -> list[dict[str, Any]]:
        """List objects under a prefix.

        Returns:
            List of dictionaries with 'key', 'last_modified' and 'size'

        Raises:
            S3Error: If listing fails
        """
        full_prefix = self.full_key(prefix)
        objects = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=full_prefix):
                for obj in page.get("Contents", []):
                    objects.append(
                        {
                            "key": obj["Key"],
                            "last_modified": obj["LastModified"],
                            "size": obj.get("Size", 0),
                        }
                    )
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            raise S3Error(
                f"Failed to list objects in S3: {error_code}",
                context={"bucket": self.config.bucket, "prefix": full_prefix},
            ) from e
        except BotoCoreError as e:
            raise S3Error(
                f"Boto3 error during list_objects: {e}",
                context={"bucket": self.config.bucket, "prefix": full_prefix},
            ) from e

        self.logger.debug(
            "S3 objects listed",
            bucket=self.config.bucket,
            prefix=full_prefix,
            count=len(objects),
        )
        return objects
