"""S3 storage adapter built on boto3.

Administrative calls go through the boto3 client; transfers use
presigned URLs so the batch executor can issue plain HTTP requests.
Multipart uploads are initiated here and each part gets its own
presigned ``upload_part`` URL.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qs, urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from objloadtest.config import CONTENT_TYPE, RunConfig
from objloadtest.http_batch import BatchResult
from objloadtest.logging_setup import get_logger
from objloadtest.providers.base import (
    ProviderCapabilities,
    StorageProvider,
    TransferTarget,
)
from objloadtest.utils import (
    client_error_status,
    is_not_found_error,
    retry_with_backoff,
)

DEFAULT_S3_REGION = "us-east-1"
PRESIGN_EXPIRES = 3600  # seconds

_MIB = 1024 * 1024
_GIB = 1024 * _MIB


class S3Provider(StorageProvider):
    """Amazon S3 and S3-compatible services."""

    name = "s3"
    capabilities = ProviderCapabilities(
        multipart_supported=True,
        multipart_min_segment=5 * _MIB,
        multipart_max_segment=5 * _GIB,
        upload_max_size=5 * _GIB,
        range_requests_supported=True,
    )

    def __init__(self, config: RunConfig, client: Any = None) -> None:
        """Initialize the adapter.

        Args:
            config: Run configuration (credentials, endpoint, TLS).
            client: Pre-built boto3 S3 client, mainly for stubbing.
        """
        super().__init__(config)
        self.region = config.api_region or DEFAULT_S3_REGION
        self.endpoint_url = self._endpoint_url(config)
        self.logger = get_logger(api=self.name, container=config.container)
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                region_name=self.region,
                aws_access_key_id=config.api_key or None,
                aws_secret_access_key=config.api_secret or None,
                verify=not config.insecure,
                config=Config(
                    signature_version="s3v4",
                    s3={
                        "addressing_style": (
                            "virtual" if config.dns_containers else "path"
                        ),
                    },
                    retries={"max_attempts": 3},
                    connect_timeout=10,
                    read_timeout=300,
                ),
            )
        self.client = client

    @staticmethod
    def _endpoint_url(config: RunConfig) -> str | None:
        endpoint = config.api_endpoint.strip()
        if not endpoint:
            return None
        if endpoint.lower().startswith(("http://", "https://")):
            return endpoint
        scheme = "https" if config.api_ssl else "http"
        return f"{scheme}://{endpoint}"

    def _call(self, description: str, func: Any) -> tuple[Any, bool | None]:
        """Run an admin call and classify its outcome.

        Returns:
            ``(response, True)`` on success, ``(exc, False)`` when the
            service refused, ``(exc, None)`` on transport errors.
        """
        try:
            return retry_with_backoff(func, logger=self.logger), True
        except ClientError as exc:
            self.logger.debug(
                f"{description} refused - status "
                f"{client_error_status(exc)}: {exc}"
            )
            return exc, False
        except BotoCoreError as exc:
            self.logger.error(f"{description} failed: {exc}")
            return exc, None

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    def authenticate(self) -> bool | None:
        result, ok = self._call("List buckets", self.client.list_buckets)
        if ok is False:
            ok = client_error_status(result) == 404
        self.logger.info(
            f"Authentication was{'' if ok else ' not'} successful"
        )
        return ok

    def container_exists(self, container: str) -> bool | None:
        result, ok = self._call(
            f"HEAD bucket {container}",
            lambda: self.client.head_bucket(Bucket=container),
        )
        if ok is False and not is_not_found_error(result):
            self.logger.error(f"Unable to check bucket {container}: {result}")
            return None
        return ok

    def create_container(
        self, container: str, storage_class: str | None = None,
    ) -> bool | None:
        params: dict[str, Any] = {"Bucket": container}
        if self.region != DEFAULT_S3_REGION:
            params["CreateBucketConfiguration"] = {
                "LocationConstraint": self.region,
            }
        if storage_class:
            self.logger.debug(
                f"Storage class {storage_class} applies to objects, "
                f"not to bucket {container}"
            )
        result, ok = self._call(
            f"PUT bucket {container}",
            lambda: self.client.create_bucket(**params),
        )
        if ok is False:
            code = result.response.get("Error", {}).get("Code", "")
            if code == "BucketAlreadyOwnedByYou":
                return True
            self.logger.error(
                f"Bucket {container} could not be created in "
                f"{self.region}: {result}"
            )
        return ok

    def delete_container(self, container: str) -> bool | None:
        result, ok = self._call(
            f"DELETE bucket {container}",
            lambda: self.client.delete_bucket(Bucket=container),
        )
        if ok is False:
            self.logger.error(f"Unable to delete bucket {container}: {result}")
        return ok

    def object_exists(self, container: str, name: str) -> bool | None:
        result, ok = self._call(
            f"HEAD object {container}/{name}",
            lambda: self.client.head_object(Bucket=container, Key=name),
        )
        if ok is False and not is_not_found_error(result):
            self.logger.error(
                f"Unable to check object {container}/{name}: {result}"
            )
            return None
        return ok

    def get_object_size(self, container: str, name: str) -> int | None:
        result, ok = self._call(
            f"HEAD object {container}/{name}",
            lambda: self.client.head_object(Bucket=container, Key=name),
        )
        if not ok:
            return None
        size = result.get("ContentLength")
        self.logger.debug(f"Object {container}/{name} is {size} bytes")
        return int(size) if size is not None else None

    def delete_object(self, container: str, name: str) -> bool | None:
        result, ok = self._call(
            f"DELETE object {container}/{name}",
            lambda: self.client.delete_object(Bucket=container, Key=name),
        )
        if ok is False:
            self.logger.error(
                f"Unable to delete object {container}/{name}: {result}"
            )
        return ok

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def _presign(self, operation: str, params: dict[str, Any]) -> str:
        return self.client.generate_presigned_url(
            operation,
            Params=params,
            ExpiresIn=PRESIGN_EXPIRES,
            HttpMethod="PUT" if operation != "get_object" else "GET",
        )

    def init_download(
        self, container: str, name: str,
    ) -> TransferTarget | None:
        try:
            url = self._presign(
                "get_object", {"Bucket": container, "Key": name},
            )
        except BotoCoreError as exc:
            self.logger.error(
                f"Unable to sign download of {container}/{name}: {exc}"
            )
            return None
        return TransferTarget(url=url, method="GET")

    def _object_params(
        self, encryption: str | None, storage_class: str | None,
    ) -> tuple[dict[str, Any], dict[str, str]]:
        """Map encryption/storage hints to S3 params and signed headers."""
        params: dict[str, Any] = {}
        headers: dict[str, str] = {}
        if encryption and encryption.strip().lower() == "aes256":
            params["ServerSideEncryption"] = "AES256"
            headers["x-amz-server-side-encryption"] = "AES256"
        if storage_class:
            params["StorageClass"] = storage_class.strip().upper()
            headers["x-amz-storage-class"] = params["StorageClass"]
        return params, headers

    def init_upload(
        self,
        container: str,
        name: str,
        size: int,
        *,
        encryption: str | None = None,
        storage_class: str | None = None,
        parts: int | None = None,
    ) -> TransferTarget | None:
        extra, headers = self._object_params(encryption, storage_class)
        base = {"Bucket": container, "Key": name, "ContentType": CONTENT_TYPE}

        if not parts or parts <= 1:
            try:
                url = self._presign("put_object", {**base, **extra})
            except BotoCoreError as exc:
                self.logger.error(
                    f"Unable to sign upload of {container}/{name}: {exc}"
                )
                return None
            headers["content-type"] = CONTENT_TYPE
            return TransferTarget(url=url, method="PUT", headers=headers)

        # Encryption and storage class belong to the initiation request
        result, ok = self._call(
            f"Initiate multipart upload {container}/{name}",
            lambda: self.client.create_multipart_upload(**base, **extra),
        )
        if not ok:
            self.logger.error(
                f"Unable to initiate multipart upload of "
                f"{container}/{name}: {result}"
            )
            return None
        upload_id = result["UploadId"]
        self.logger.debug(
            f"Multipart upload initiated - UploadId: {upload_id}"
        )
        try:
            part_urls = [
                self._presign(
                    "upload_part",
                    {
                        "Bucket": container,
                        "Key": name,
                        "UploadId": upload_id,
                        "PartNumber": part,
                    },
                )
                for part in range(1, parts + 1)
            ]
        except BotoCoreError as exc:
            self.logger.error(f"Unable to sign upload parts: {exc}")
            self._abort(container, name, upload_id)
            return None
        return TransferTarget(
            url=part_urls[0], method="PUT", part_urls=part_urls,
        )

    def complete_multipart_upload(
        self, container: str, name: str, batch: BatchResult,
    ) -> bool | None:
        parts: list[dict[str, Any]] = []
        upload_id = None
        for url, headers in zip(batch.urls, batch.response_headers):
            query = parse_qs(urlparse(url).query)
            etag = headers.get("etag")
            if not etag or "partNumber" not in query or "uploadId" not in query:
                self.logger.error(
                    "Failed to retrieve required etag and upload IDs"
                )
                return None
            upload_id = query["uploadId"][0]
            parts.append({
                "ETag": etag,
                "PartNumber": int(query["partNumber"][0]),
            })
        if upload_id is None:
            return None

        result, ok = self._call(
            f"Complete multipart upload {container}/{name}",
            lambda: self.client.complete_multipart_upload(
                Bucket=container,
                Key=name,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            ),
        )
        if ok:
            self.logger.debug(
                f"Completed multipart upload of {container}/{name} "
                f"in {len(parts)} parts"
            )
        else:
            self.logger.error(
                f"Complete multipart upload failed for "
                f"{container}/{name}: {result}"
            )
            self._abort(container, name, upload_id)
        return ok

    def abort_multipart_upload(
        self, container: str, name: str, target: TransferTarget,
    ) -> bool | None:
        query = parse_qs(urlparse(target.url_for(0)).query)
        if "uploadId" not in query:
            self.logger.error(
                f"No upload ID to abort for {container}/{name}"
            )
            return None
        return self._abort(container, name, query["uploadId"][0])

    def _abort(
        self, container: str, name: str, upload_id: str,
    ) -> bool | None:
        result, ok = self._call(
            f"Abort multipart upload {container}/{name}",
            lambda: self.client.abort_multipart_upload(
                Bucket=container, Key=name, UploadId=upload_id,
            ),
        )
        if not ok:
            self.logger.warning(
                f"Unable to abort multipart upload {upload_id}: {result}"
            )
        return ok
