"""Transport implementation for S3-compatible object stores"""

import io
import logging
import random
import threading
import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from carstore.carstore_config import (
    DEFAULT_ENDPOINT,
    DEFAULT_REGION,
    FORCE_PATH_STYLE,
)
from carstore.carstore_exceptions import ConfigurationError, ObjectNotFoundError
from carstore.transport import StoredObject, Transport

NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")


class S3Transport(Transport):
    """S3Transport sends archives to an S3-compatible store (Filebase by default)
    through boto3. botocore makes a single attempt per request, so a failed request
    raises at once and retrying is left to the caller (see `backoff`).

    :param str access_key: Access key id.
    :param str secret_key: Secret access key.
    :param str endpoint: Endpoint URL of the store.
    :param str region: Region name.
    :param bool force_path_style: Address buckets as `https://endpoint/bucket`.
    """

    backoff_base = 0.5
    backoff_cap = 20.0

    def __init__(
        self,
        access_key,
        secret_key,
        endpoint=DEFAULT_ENDPOINT,
        region=DEFAULT_REGION,
        force_path_style=FORCE_PATH_STYLE,
    ):
        if not access_key or not secret_key:
            exception_string = (
                "S3Transport - __init__: access_key and secret_key are required."
            )
            logging.error(exception_string)
            raise ConfigurationError(exception_string)
        config = Config(
            region_name=region,
            s3={"addressing_style": "path" if force_path_style else "auto"},
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        self.endpoint = endpoint
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=config,
        )
        logging.debug(
            "S3Transport - Initialization success. Endpoint: %s, region: %s",
            endpoint,
            region,
        )

    def create_multipart_upload(self, bucket, key, metadata):
        response = self.client.create_multipart_upload(
            Bucket=bucket, Key=key, Metadata=dict(metadata)
        )
        logging.debug(
            "S3Transport - create_multipart_upload: Opened upload %s for key: %s",
            response["UploadId"],
            key,
        )
        return response["UploadId"]

    def upload_part(self, bucket, key, upload_id, part_number, body, progress):
        response = self.client.upload_part(
            Bucket=bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=ProgressBody(body, progress),
        )
        progress(len(body))
        return response["ETag"]

    def complete_multipart_upload(self, bucket, key, upload_id, parts):
        self.client.complete_multipart_upload(
            Bucket=bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [
                    {"ETag": etag, "PartNumber": part_number}
                    for part_number, etag in parts
                ]
            },
        )
        logging.debug(
            "S3Transport - complete_multipart_upload: Completed upload %s with %s"
            + " part(s) for key: %s",
            upload_id,
            len(parts),
            key,
        )

    def abort_multipart_upload(self, bucket, key, upload_id):
        self.client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
        logging.debug(
            "S3Transport - abort_multipart_upload: Aborted upload %s for key: %s",
            upload_id,
            key,
        )

    def head_object(self, bucket, key):
        try:
            response = self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as err:
            self._raise_not_found(err, "head_object", bucket, key)
            raise
        return StoredObject(
            key,
            response.get("ContentLength"),
            response.get("LastModified"),
            response.get("Metadata"),
        )

    def delete_object(self, bucket, key):
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except ClientError as err:
            self._raise_not_found(err, "delete_object", bucket, key)
            raise
        logging.debug("S3Transport - delete_object: Deleted key: %s", key)

    def backoff(self, attempt):
        """Exponential backoff with full jitter."""
        ceiling = min(self.backoff_cap, self.backoff_base * 2 ** max(attempt - 1, 0))
        return random.uniform(0, ceiling)

    @staticmethod
    def _raise_not_found(err, method, bucket, key):
        """Raise `ObjectNotFoundError` from a client error that signals a missing
        object; other errors are left to the caller."""
        code = str(err.response.get("Error", {}).get("Code", ""))
        status = err.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in NOT_FOUND_CODES or status == 404:
            exception_string = (
                f"S3Transport - {method}: Object not found. Bucket: {bucket},"
                + f" key: {key}"
            )
            logging.error(exception_string)
            raise ObjectNotFoundError(exception_string, errors=err.response) from err


class ProgressBody(io.BytesIO):
    """Request body reporting how far it has been read. botocore may read a body more
    than once (checksums, retries), so only the highest position reached is
    reported and the reported value never decreases.

    :param bytes data: Content of the body.
    :param callable progress: Called with the cumulative bytes read.
    """

    def __init__(self, data, progress):
        super().__init__(data)
        self._progress = progress
        self._reported = 0
        self._lock = threading.Lock()

    def read(self, size=-1):
        chunk = super().read(size)
        self._report(self.tell())
        return chunk

    def readinto(self, buffer):
        count = super().readinto(buffer)
        self._report(self.tell())
        return count

    def _report(self, position):
        with self._lock:
            if position <= self._reported:
                return
            self._reported = position
        self._progress(position)
