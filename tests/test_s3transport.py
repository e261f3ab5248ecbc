"""Test module for S3Transport"""

import queue
from datetime import datetime, timezone
import pytest
from botocore.awsrequest import AWSResponse
from botocore.exceptions import ClientError
from botocore.stub import Stubber
from carstore.carstore_exceptions import (
    ConfigurationError,
    ObjectNotFoundError,
    UploadFailedError,
)
from carstore.s3transport import ProgressBody, S3Transport
from carstore.uploader import StreamingUploader, UploadSession


@pytest.fixture(name="s3_transport")
def init_s3_transport():
    """S3Transport pointed at a local endpoint, never reached thanks to stubbing."""
    return S3Transport(
        "test-access-key",
        "test-secret-key",
        endpoint="http://localhost:9000",
        region="us-east-1",
    )


def test_init_missing_keys():
    """Test missing credentials raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        S3Transport("", "secret")
    with pytest.raises(ConfigurationError):
        S3Transport("access", None)


def test_init_addressing_style(s3_transport):
    """Test path-style addressing is configured by default and can be disabled."""
    assert s3_transport.client.meta.config.s3["addressing_style"] == "path"
    virtual = S3Transport("access", "secret", force_path_style=False)
    assert virtual.client.meta.config.s3["addressing_style"] == "auto"


def test_create_multipart_upload(s3_transport):
    """Test the upload id of a new session is returned."""
    with Stubber(s3_transport.client) as stubber:
        stubber.add_response(
            "create_multipart_upload",
            {"Bucket": "bucket", "Key": "key", "UploadId": "upload-1"},
            {
                "Bucket": "bucket",
                "Key": "key",
                "Metadata": {"import": "car", "cid": "QmRoot"},
            },
        )
        upload_id = s3_transport.create_multipart_upload(
            "bucket", "key", {"import": "car", "cid": "QmRoot"}
        )
        stubber.assert_no_pending_responses()
    assert upload_id == "upload-1"


def test_upload_part(s3_transport):
    """Test the entity tag is returned and progress ends at the part size."""
    reported = []
    with Stubber(s3_transport.client) as stubber:
        stubber.add_response("upload_part", {"ETag": '"etag-1"'})
        etag = s3_transport.upload_part(
            "bucket", "key", "upload-1", 1, b"part content", reported.append
        )
    assert etag == '"etag-1"'
    assert reported[-1] == len(b"part content")
    assert reported == sorted(reported)


def test_complete_multipart_upload(s3_transport):
    """Test parts are sent in order with their entity tags."""
    with Stubber(s3_transport.client) as stubber:
        stubber.add_response(
            "complete_multipart_upload",
            {"Bucket": "bucket", "Key": "key"},
            {
                "Bucket": "bucket",
                "Key": "key",
                "UploadId": "upload-1",
                "MultipartUpload": {
                    "Parts": [
                        {"ETag": '"a"', "PartNumber": 1},
                        {"ETag": '"b"', "PartNumber": 2},
                    ]
                },
            },
        )
        s3_transport.complete_multipart_upload(
            "bucket", "key", "upload-1", [(1, '"a"'), (2, '"b"')]
        )
        stubber.assert_no_pending_responses()


def test_abort_multipart_upload(s3_transport):
    """Test an upload session is aborted."""
    with Stubber(s3_transport.client) as stubber:
        stubber.add_response(
            "abort_multipart_upload",
            {},
            {"Bucket": "bucket", "Key": "key", "UploadId": "upload-1"},
        )
        s3_transport.abort_multipart_upload("bucket", "key", "upload-1")
        stubber.assert_no_pending_responses()


def test_head_object(s3_transport):
    """Test the stored object carries size, date and metadata."""
    last_modified = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    with Stubber(s3_transport.client) as stubber:
        stubber.add_response(
            "head_object",
            {
                "ContentLength": 1024,
                "LastModified": last_modified,
                "Metadata": {"import": "car", "cid": "QmRoot"},
            },
            {"Bucket": "bucket", "Key": "QmRoot"},
        )
        stored = s3_transport.head_object("bucket", "QmRoot")
    assert stored.key == "QmRoot"
    assert stored.size == 1024
    assert stored.last_modified == last_modified
    assert stored.metadata == {"import": "car", "cid": "QmRoot"}


def test_head_object_not_found(s3_transport):
    """Test a missing object raises ObjectNotFoundError."""
    with Stubber(s3_transport.client) as stubber:
        stubber.add_client_error(
            "head_object", service_error_code="404", http_status_code=404
        )
        with pytest.raises(ObjectNotFoundError):
            s3_transport.head_object("bucket", "QmMissing")


def test_head_object_other_error(s3_transport):
    """Test errors other than a missing object are left to the caller."""
    with Stubber(s3_transport.client) as stubber:
        stubber.add_client_error(
            "head_object", service_error_code="403", http_status_code=403
        )
        with pytest.raises(ClientError) as excinfo:
            s3_transport.head_object("bucket", "QmForbidden")
    assert not isinstance(excinfo.value, ObjectNotFoundError)


def test_delete_object(s3_transport):
    """Test an object is deleted."""
    with Stubber(s3_transport.client) as stubber:
        stubber.add_response(
            "delete_object", {}, {"Bucket": "bucket", "Key": "QmRoot"}
        )
        s3_transport.delete_object("bucket", "QmRoot")
        stubber.assert_no_pending_responses()


def test_backoff_bounds(s3_transport):
    """Test backoff delays stay within the exponential ceiling and the cap."""
    for attempt in range(1, 12):
        delay = s3_transport.backoff(attempt)
        ceiling = min(S3Transport.backoff_cap, S3Transport.backoff_base * 2 ** (attempt - 1))
        assert 0 <= delay <= ceiling


def test_progress_body_reports_high_water_mark():
    """Test re-reading a body does not report decreasing values."""
    reported = []
    body = ProgressBody(b"0123456789", reported.append)
    body.read(4)
    body.read()
    body.seek(0)
    body.read(2)
    assert reported == [4, 10]


class EmptyRaw:
    """Raw body of a canned HTTP response without content."""

    def stream(self, **kwargs):
        return iter([b""])


def test_init_single_attempt_per_request(s3_transport):
    """Test botocore is configured to make one attempt per request."""
    assert s3_transport.client.meta.config.retries["total_max_attempts"] == 1


def test_failing_part_sends_one_request_per_attempt(s3_transport):
    """Test a part failing with a server error sends exactly one request per
    uploader attempt."""
    sent = []

    def server_error(request, **kwargs):
        sent.append(request.url)
        return AWSResponse(request.url, 500, {}, EmptyRaw())

    s3_transport.client.meta.events.register(
        "before-send.s3.UploadPart", server_error
    )
    s3_transport.backoff = lambda attempt: 0
    uploader = StreamingUploader(s3_transport, "bucket", max_retries=2)
    session = UploadSession("upload-1", "key", "QmRoot")
    session.add_part(1, len(b"part content"))
    with pytest.raises(UploadFailedError):
        uploader._upload_part(session, 1, b"part content", queue.Queue())
    assert len(sent) == 2
