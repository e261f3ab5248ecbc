"""Core module for StreamingUploader"""

import itertools
import logging
import math
import numbers
import queue
import threading
import time
from concurrent import futures
from concurrent.futures import ThreadPoolExecutor
from carstore.carstore_config import (
    MAX_CONCURRENT_UPLOADS,
    MAX_STORE_RETRIES,
    PART_SIZE,
    PROGRESS_POLL_INTERVAL,
)
from carstore.carstore_exceptions import (
    ConfigurationError,
    EmptyInputError,
    MissingRemoteCIDError,
    ProtocolError,
    UploadFailedError,
)


class PartState(object):
    """Upload state of one part, owned by the coordinator.

    :param int number: 1-based part number.
    :param int size: Size of the part in bytes.
    """

    def __init__(self, number, size):
        self.number = number
        self.size = size
        self.attempt = 1
        self.loaded = 0
        self.reported = 0
        self.etag = None

    def record(self, attempt, loaded):
        """Record a cumulative progress value sent by the transport and return the
        number of bytes not reported yet. A new attempt restarts from zero, but bytes
        reported by an earlier attempt are never reported a second time.

        :raises ProtocolError: If `loaded` is not a number, exceeds the part size or
            decreases within one attempt.
        """
        if (
            isinstance(loaded, bool)
            or not isinstance(loaded, numbers.Real)
            or math.isnan(loaded)
        ):
            raise ProtocolError(
                f"Part {self.number}: progress value is not a number: {loaded!r}"
            )
        if attempt < self.attempt or self.etag is not None:
            return 0
        if attempt > self.attempt:
            self.attempt = attempt
            self.loaded = 0
        if loaded < self.loaded:
            raise ProtocolError(
                f"Part {self.number}: progress decreased from {self.loaded} to {loaded}"
                + f" in attempt {attempt}"
            )
        if loaded > self.size:
            raise ProtocolError(
                f"Part {self.number}: progress {loaded} exceeds part size {self.size}"
            )
        self.loaded = loaded
        return self._report(loaded)

    def complete(self, etag):
        """Mark the part as stored and return its unreported remainder."""
        self.etag = etag
        return self._report(self.size)

    def _report(self, loaded):
        delta = loaded - self.reported
        if delta <= 0:
            return 0
        self.reported = loaded
        return delta


class UploadSession(object):
    """Mutable state of one multipart upload: the parts handed to workers, their
    attempts, the bytes reported for each and their entity tags. Only the upload
    coordinator reads and writes it; workers only see `aborted`.

    :param str upload_id: Identifier of the remote upload session.
    :param str key: Key of the object being stored.
    :param str cid: Expected root CID of the archive.
    """

    def __init__(self, upload_id, key, cid):
        self.upload_id = upload_id
        self.key = key
        self.cid = cid
        self.parts = {}
        self.aborted = threading.Event()

    def add_part(self, number, size):
        self.parts[number] = PartState(number, size)
        return self.parts[number]

    @property
    def size(self):
        """Total bytes handed to workers so far"""
        return sum(part.size for part in self.parts.values())

    @property
    def reported(self):
        return sum(part.reported for part in self.parts.values())

    def etags(self):
        """Return (part number, entity tag) pairs in part order."""
        return [(number, self.parts[number].etag) for number in sorted(self.parts)]


class StreamingUploader(object):
    """StreamingUploader delivers an archive stream to a remote store through a
    multipart upload.

    The archive is read sequentially by a single coordinator (the calling thread),
    split into parts of `part_size` bytes, and at most `part_concurrency` parts are
    uploaded at the same time by a pool of worker threads, so no more than that many
    parts are held in memory. A failing part is retried in its worker until
    `max_retries` attempts have been made, waiting `transport.backoff(attempt)`
    between attempts.

    Workers never touch shared counters: they push `(part, attempt, loaded)` progress
    values into a queue that only the coordinator consumes, which turns them into
    strictly positive byte increments for the caller's `on_stored_chunk` callback.
    Once an upload succeeds the increments add up to the archive size exactly.

    :param Transport transport: Remote object store.
    :param str bucket: Name of the bucket.
    :param int part_size: Size of every part except the last one.
    :param int part_concurrency: Maximum number of parts in flight.
    :param int max_retries: Attempts per part before the upload fails.
    :param float poll_interval: Seconds between two drains of the progress queue.
    """

    def __init__(
        self,
        transport,
        bucket,
        part_size=PART_SIZE,
        part_concurrency=MAX_CONCURRENT_UPLOADS,
        max_retries=MAX_STORE_RETRIES,
        poll_interval=PROGRESS_POLL_INTERVAL,
    ):
        if transport is None:
            self._fail_config("a transport is required.")
        if not bucket:
            self._fail_config("a bucket is required.")
        for name, value in (
            ("part_size", part_size),
            ("part_concurrency", part_concurrency),
            ("max_retries", max_retries),
        ):
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                self._fail_config(f"{name} must be an integer > 0, {name}: {value}")
        self.transport = transport
        self.bucket = bucket
        self.part_size = part_size
        self.part_concurrency = part_concurrency
        self.max_retries = max_retries
        self.poll_interval = poll_interval

    @staticmethod
    def _fail_config(message):
        exception_string = f"StreamingUploader - __init__: {message}"
        logging.error(exception_string)
        raise ConfigurationError(exception_string)

    def upload(self, object_name, archive, cid, on_stored_chunk=None, on_complete=None):
        """Upload an archive and return the CID stored with it by the remote store.

        :param str object_name: Key of the object to create.
        :param archive: Archive bytes, a readable binary object or an iterable of
            byte chunks (ex. an `ArchiveReader`).
        :param cid: Root CID of the archive, stored as the object's `cid` tag.
        :param callable on_stored_chunk: Called with the number of bytes stored since
            the previous call.
        :param callable on_complete: Called once, after every part is stored.

        :return: The `cid` tag reported by the remote store.
        :rtype: str

        :raises EmptyInputError: If the archive is empty. No request is made.
        :raises UploadFailedError: If a part failed after every attempt.
        :raises ProtocolError: If the transport reported invalid progress.
        :raises MissingRemoteCIDError: If the stored object carries no `cid` tag.
        """
        parts = self._read_parts(archive)
        first_part = next(parts, None)
        if first_part is None:
            exception_string = (
                f"StreamingUploader - upload: Archive for {object_name} is empty."
            )
            logging.error(exception_string)
            raise EmptyInputError(exception_string)

        metadata = {"import": "car", "cid": str(cid)}
        upload_id = self.transport.create_multipart_upload(
            self.bucket, object_name, metadata
        )
        session = UploadSession(upload_id, object_name, str(cid))
        logging.info(
            "StreamingUploader - upload: Uploading %s (cid: %s) to bucket: %s",
            object_name,
            cid,
            self.bucket,
        )
        try:
            self._send_parts(
                session, itertools.chain([first_part], parts), on_stored_chunk
            )
            self.transport.complete_multipart_upload(
                self.bucket, object_name, upload_id, session.etags()
            )
        except Exception as err:
            logging.error(
                "StreamingUploader - upload: Upload of %s failed. %s", object_name, err
            )
            self._abort(session)
            raise

        logging.debug(
            "StreamingUploader - upload: Stored %s part(s), %s bytes for: %s",
            len(session.parts),
            session.size,
            object_name,
        )
        if on_complete is not None:
            on_complete()

        stored = self.transport.head_object(self.bucket, object_name)
        stored_cid = stored.metadata.get("cid")
        if not stored_cid:
            exception_string = (
                f"StreamingUploader - upload: Object {object_name} was stored but the"
                + " remote store did not return its cid tag."
            )
            logging.error(exception_string)
            raise MissingRemoteCIDError(exception_string)
        if stored_cid != session.cid:
            logging.warning(
                "StreamingUploader - upload: Stored cid %s differs from expected cid %s",
                stored_cid,
                session.cid,
            )
        logging.info(
            "StreamingUploader - upload: Successfully stored %s with cid: %s",
            object_name,
            stored_cid,
        )
        return stored_cid

    def _read_parts(self, archive):
        """Yield (part number, bytes) pairs of `part_size` bytes (the last part may be
        shorter) read sequentially from the archive."""
        if isinstance(archive, (bytes, bytearray, memoryview)):
            chunks = [bytes(archive)]
        elif hasattr(archive, "read"):
            chunks = iter(lambda: archive.read(self.part_size), b"")
        else:
            chunks = archive
        buffer = bytearray()
        part_number = 0
        for chunk in chunks:
            buffer.extend(chunk)
            while len(buffer) >= self.part_size:
                part_number += 1
                yield part_number, bytes(buffer[: self.part_size])
                del buffer[: self.part_size]
        if buffer:
            yield part_number + 1, bytes(buffer)

    def _send_parts(self, session, parts, on_stored_chunk):
        """Keep at most `part_concurrency` parts in flight until the archive is
        exhausted, draining progress between completions."""
        progress_queue = queue.Queue()
        in_flight = {}
        exhausted = False
        with ThreadPoolExecutor(
            max_workers=self.part_concurrency, thread_name_prefix="carstore-part"
        ) as executor:
            try:
                while True:
                    while not exhausted and len(in_flight) < self.part_concurrency:
                        part = next(parts, None)
                        if part is None:
                            exhausted = True
                            break
                        part_number, body = part
                        session.add_part(part_number, len(body))
                        future = executor.submit(
                            self._upload_part, session, part_number, body, progress_queue
                        )
                        in_flight[future] = part_number
                    if not in_flight:
                        break
                    done, _ = futures.wait(
                        in_flight,
                        timeout=self.poll_interval,
                        return_when=futures.FIRST_COMPLETED,
                    )
                    self._drain(session, progress_queue, on_stored_chunk)
                    for future in done:
                        part_number = in_flight.pop(future)
                        etag = future.result()
                        delta = session.parts[part_number].complete(etag)
                        logging.debug(
                            "StreamingUploader - _send_parts: Stored part %s of %s.",
                            part_number,
                            session.key,
                        )
                        if delta and on_stored_chunk is not None:
                            on_stored_chunk(delta)
            except Exception:
                # Workers still retrying stop before their next attempt
                session.aborted.set()
                raise

    def _drain(self, session, progress_queue, on_stored_chunk):
        while True:
            try:
                part_number, attempt, loaded = progress_queue.get_nowait()
            except queue.Empty:
                return
            try:
                delta = session.parts[part_number].record(attempt, loaded)
            except ProtocolError as err:
                exception_string = f"StreamingUploader - _drain: {err}"
                logging.error(exception_string)
                raise ProtocolError(exception_string) from err
            if delta and on_stored_chunk is not None:
                on_stored_chunk(delta)

    def _upload_part(self, session, part_number, body, progress_queue):
        """Upload one part, retrying it up to `max_retries` attempts. Runs in a worker
        thread.

        :return: Entity tag of the stored part.
        :rtype: str
        """
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            if session.aborted.is_set():
                raise UploadFailedError(
                    f"Upload of {session.key} was aborted before part {part_number}"
                    + f" attempt {attempt}."
                )

            def progress(loaded, attempt=attempt):
                progress_queue.put((part_number, attempt, loaded))

            try:
                return self.transport.upload_part(
                    self.bucket,
                    session.key,
                    session.upload_id,
                    part_number,
                    body,
                    progress,
                )
            except (ProtocolError, UploadFailedError):
                raise
            except Exception as err:
                last_error = err
                logging.warning(
                    "StreamingUploader - _upload_part: Part %s of %s failed on attempt"
                    + " %s/%s: %s",
                    part_number,
                    session.key,
                    attempt,
                    self.max_retries,
                    err,
                )
                if attempt < self.max_retries:
                    time.sleep(self.transport.backoff(attempt))
        exception_string = (
            f"StreamingUploader - _upload_part: Part {part_number} of {session.key}"
            + f" failed after {self.max_retries} attempt(s). Last error: {last_error}"
        )
        logging.error(exception_string)
        raise UploadFailedError(exception_string, errors=last_error) from last_error

    def _abort(self, session):
        """Abort the remote upload session. A failure to abort is logged and the
        original error is the one raised."""
        session.aborted.set()
        try:
            self.transport.abort_multipart_upload(
                self.bucket, session.key, session.upload_id
            )
        except Exception as err:
            logging.error(
                "StreamingUploader - _abort: Unable to abort upload %s of %s. %s",
                session.upload_id,
                session.key,
                err,
            )
