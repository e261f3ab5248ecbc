"""Pytest overall configuration file for fixtures"""

import hashlib
import threading
import time
import uuid
from datetime import datetime, timezone
import pytest
from carstore.blob import Blob, File
from carstore.blockstore import FsBlockStore, MemoryBlockStore
from carstore.carstore_exceptions import ObjectNotFoundError
from carstore.service import Service, encode_token
from carstore.transport import StoredObject, Transport


def pytest_addoption(parser):
    """Run slow tests only when a flag is set on pytest."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests",
    )


class InMemoryTransport(Transport):
    """Transport keeping objects in memory, with injectable faults.

    :param int progress_steps: Progress values reported per part attempt.
    :param dict fail_parts: {part number: number of attempts that fail}.
    :param list progress_script: Progress values reported instead of the steps.
    :param bool drop_metadata: Store objects without their metadata tags.
    :param float delay: Seconds every part upload takes.
    """

    def __init__(
        self,
        progress_steps=1,
        fail_parts=None,
        progress_script=None,
        drop_metadata=False,
        delay=0,
    ):
        self.progress_steps = progress_steps
        self.failures = dict(fail_parts or {})
        self.progress_script = progress_script
        self.drop_metadata = drop_metadata
        self.delay = delay
        self.objects = {}
        self.uploads = {}
        self.aborted = []
        self.calls = []
        self.part_attempts = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.lock = threading.Lock()

    def create_multipart_upload(self, bucket, key, metadata):
        upload_id = uuid.uuid4().hex
        with self.lock:
            self.calls.append("create_multipart_upload")
            self.uploads[upload_id] = {
                "bucket": bucket,
                "key": key,
                "metadata": dict(metadata),
                "parts": {},
            }
        return upload_id

    def upload_part(self, bucket, key, upload_id, part_number, body, progress):
        with self.lock:
            self.calls.append("upload_part")
            self.part_attempts[part_number] = self.part_attempts.get(part_number, 0) + 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.progress_script is not None:
                for loaded in self.progress_script:
                    progress(loaded)
            else:
                size = len(body)
                for step in range(1, self.progress_steps + 1):
                    progress(size * step // self.progress_steps)
            with self.lock:
                remaining = self.failures.get(part_number, 0)
                if remaining:
                    self.failures[part_number] = remaining - 1
                    raise ConnectionError(f"Injected failure for part {part_number}")
                etag = '"' + hashlib.md5(body).hexdigest() + '"'
                self.uploads[upload_id]["parts"][part_number] = (etag, bytes(body))
            return etag
        finally:
            with self.lock:
                self.in_flight -= 1

    def complete_multipart_upload(self, bucket, key, upload_id, parts):
        with self.lock:
            self.calls.append("complete_multipart_upload")
            upload = self.uploads.pop(upload_id)
            stored_parts = upload["parts"]
            for part_number, etag in parts:
                assert stored_parts[part_number][0] == etag
            content = b"".join(stored_parts[number][1] for number, _ in parts)
            metadata = {} if self.drop_metadata else upload["metadata"]
            self.objects[(bucket, key)] = (
                StoredObject(key, len(content), datetime.now(timezone.utc), metadata),
                content,
            )

    def abort_multipart_upload(self, bucket, key, upload_id):
        with self.lock:
            self.calls.append("abort_multipart_upload")
            self.aborted.append(upload_id)
            self.uploads.pop(upload_id, None)

    def head_object(self, bucket, key):
        with self.lock:
            self.calls.append("head_object")
            if (bucket, key) not in self.objects:
                raise ObjectNotFoundError(f"No object for key: {key}")
            return self.objects[(bucket, key)][0]

    def delete_object(self, bucket, key):
        with self.lock:
            self.calls.append("delete_object")
            self.objects.pop((bucket, key), None)

    def backoff(self, attempt):
        return 0

    def content(self, bucket, key):
        """Return the bytes of a stored object."""
        return self.objects[(bucket, key)][1]


@pytest.fixture(name="memory_store")
def init_memory_store():
    """In-memory block store, closed after the test."""
    with MemoryBlockStore() as blockstore:
        yield blockstore


@pytest.fixture(name="fs_store")
def init_fs_store(tmp_path):
    """Disk-backed block store rooted in the test's temporary folder."""
    with FsBlockStore(tmp_path / "carstore") as blockstore:
        yield blockstore


@pytest.fixture(name="transport")
def init_transport():
    """In-memory transport without faults."""
    return InMemoryTransport()


@pytest.fixture(name="token")
def init_token():
    """API token for the 'test-bucket' bucket."""
    return encode_token("test-access-key", "test-secret-key", "test-bucket")


@pytest.fixture(name="service")
def init_service(token, transport):
    """Service reaching the in-memory transport."""
    return Service(token=token, transport=transport)


@pytest.fixture(name="hello_blob")
def init_hello_blob():
    """The 11 bytes of 'hello world'."""
    return Blob("hello world", type="text/plain")


@pytest.fixture(name="nft_record")
def init_nft_record():
    """ERC-1155 token record with an image and a nested resource."""
    return {
        "name": "carstore test",
        "description": "Test ERC-1155 compatible metadata.",
        "image": File([b"\x89PNG fake image bytes"], "cat.png", type="image/png"),
        "properties": {
            "custom": "Custom data can appear here, files are auto uploaded.",
            "file": File(["<DATA>"], "README.md", type="text/plain"),
        },
    }


@pytest.fixture(name="transport_factory")
def init_transport_factory():
    """Build in-memory transports with injected faults."""
    return InMemoryTransport
