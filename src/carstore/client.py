"""CarStore operations: encode content into archives, store them, look them up and
delete them.

Every operation is a plain function taking a `Service` configuration explicitly.
Per-call settings never modify the given service:

    service = Service(token=API_TOKEN)
    cid = store_blob(service, Blob("hello world"))
    status(service, cid).size
"""

import contextlib
import functools
import logging
from collections import namedtuple
from carstore.blockstore import FsBlockStore, MemoryBlockStore
from carstore.car import ArchiveReader, read_header
from carstore.carstore_exceptions import (
    ArchiveFormatError,
    IncompleteRemoteRecordError,
)
from carstore.packer import DagPacker
from carstore.service import connect
from carstore.token import encode_token
from carstore.uploader import StreamingUploader


class PackedCar(namedtuple("PackedCar", ["cid", "car"])):
    """Root CID of encoded content and the lazy archive stream holding it.

    :param CID cid: Root content identifier.
    :param ArchiveReader car: Archive stream, to be consumed while the block store
        it reads from is still open.
    """


class EncodedToken(namedtuple("EncodedToken", ["cid", "token", "car"])):
    """Root CID, `Token` and archive stream of an encoded token record."""


class Pin(namedtuple("Pin", ["cid", "name", "status", "created"])):
    """Pinning information of a stored archive."""


class StatusResult(namedtuple("StatusResult", ["cid", "size", "deals", "pin", "created"])):
    """Status of a stored archive as reported by the remote store.

    :param str cid: CID tag stored with the archive.
    :param int size: Size of the stored archive in bytes.
    :param list deals: Always empty, deals are not tracked by the store.
    :param Pin pin: Synthesized "pinned" entry dated to the last modification.
    :param datetime created: Last modified date of the stored archive.
    """


def encode_blob(blob, blockstore=None, **packer_options):
    """Encode a single blob into an archive. No file name or metadata is retained.

    :param Blob blob: Content to encode.
    :param BlockStore blockstore: Store receiving the blocks, a `MemoryBlockStore`
        when omitted.
    :param packer_options: Extra `DagPacker` arguments (ex. `cid_version=1`).

    :return: Root CID and archive.
    :rtype: PackedCar

    :raises EmptyInputError: If the blob is empty.
    """
    if blockstore is None:
        blockstore = MemoryBlockStore()
    packed = DagPacker(blockstore, **packer_options).pack(blob)
    return PackedCar(packed.cid, ArchiveReader([packed.cid], packed.blocks()))


def encode_directory(files, blockstore=None, **packer_options):
    """Encode files into a directory archive. Files must be within the same
    directory: `foo/bar.png` and `foo/bla/baz.json` is ok, `foo/bar.png` and
    `bla/baz.json` is not.

    :param files: `File` objects or (path, blob) pairs.
    :param BlockStore blockstore: Store receiving the blocks.
    :param packer_options: Extra `DagPacker` arguments.

    :return: Root CID and archive.
    :rtype: PackedCar

    :raises EmptyInputError: If the files hold no content.
    :raises MixedRootsError: If the files span more than one top-level directory.
    """
    if blockstore is None:
        blockstore = MemoryBlockStore()
    packed = DagPacker(blockstore, **packer_options).pack_many(
        files, wrap_with_directory=True
    )
    return PackedCar(packed.cid, ArchiveReader([packed.cid], packed.blocks()))


def encode_nft(record, blockstore=None, **packer_options):
    """Encode an ERC-1155 token record and every resource it references.

    :param dict record: Token metadata record (`name`, `description`, `image`...).
    :param BlockStore blockstore: Store receiving the blocks.
    :param packer_options: Extra `DagPacker` arguments.

    :return: Root CID, token and archive.
    :rtype: EncodedToken
    """
    if blockstore is None:
        blockstore = MemoryBlockStore()
    cid, token, car = encode_token(record, blockstore, **packer_options)
    return EncodedToken(cid, token, car)


@contextlib.contextmanager
def packed_archive(encode, content, blockstore=None, **packer_options):
    """Encode content into a block store that lives exactly as long as the `with`
    block. The archive must be consumed inside the block:

        with packed_archive(encode_blob, blob) as packed:
            store_car(service, packed.car, cid=packed.cid)

    :param callable encode: `encode_blob`, `encode_directory` or `encode_nft`.
    :param content: Content passed to `encode`.
    :param BlockStore blockstore: Store to use, an `FsBlockStore` in a temporary
        directory when omitted. It is closed on exit in every case.
    """
    if blockstore is None:
        blockstore = FsBlockStore()
    try:
        yield encode(content, blockstore=blockstore, **packer_options)
    finally:
        blockstore.close()


def store_blob(service, blob, object_name=None):
    """Store a single blob and return the CID reported by the remote store.

    :param Service service: Service configuration.
    :param Blob blob: Content to store.
    :param str object_name: Object key, the root CID when omitted.

    :return: Stored CID.
    :rtype: str
    """
    service = _connected(service)
    with packed_archive(encode_blob, blob) as packed:
        return store_car(service, packed.car, object_name or str(packed.cid), packed.cid)


def store_directory(service, files, object_name=None):
    """Store files as a directory and return the root CID of the directory.

    :param Service service: Service configuration.
    :param files: `File` objects or (path, blob) pairs.
    :param str object_name: Object key, the root CID when omitted.

    :return: Root CID.
    :rtype: str
    """
    service = _connected(service)
    with packed_archive(encode_directory, files) as packed:
        store_car(service, packed.car, object_name or str(packed.cid), packed.cid)
        return str(packed.cid)


def store(service, record, object_name=None):
    """Store an ERC-1155 token record along with every resource it references.

    :param Service service: Service configuration.
    :param dict record: Token metadata record.
    :param str object_name: Object key, the root CID when omitted.

    :return: The stored token.
    :rtype: Token
    """
    service = _connected(service)
    with packed_archive(encode_nft, record) as encoded:
        store_car(service, encoded.car, object_name or str(encoded.cid), encoded.cid)
        return encoded.token


def _connected(service):
    """Resolve the transport and bucket of a service before any content is encoded,
    so configuration errors surface first."""
    transport, bucket = connect(service)
    return service._replace(transport=transport, bucket=bucket)


def store_car(
    service,
    car,
    object_name=None,
    cid=None,
    on_stored_chunk=None,
    on_complete=None,
    max_retries=None,
    part_concurrency=None,
):
    """Store an archive and return the CID reported by the remote store.

    :param Service service: Service configuration.
    :param car: `ArchiveReader`, archive bytes, a readable binary object or an
        iterable of byte chunks.
    :param str object_name: Object key, the root CID when omitted.
    :param cid: Root CID of the archive, read from the archive header when omitted.
    :param callable on_stored_chunk: Called with the bytes stored since last call.
    :param callable on_complete: Called once every part is stored.
    :param int max_retries: Overrides `service.max_retries` for this call.
    :param int part_concurrency: Overrides `service.part_concurrency` for this call.

    :return: Stored CID.
    :rtype: str
    """
    overrides = {
        key: value
        for key, value in (
            ("max_retries", max_retries),
            ("part_concurrency", part_concurrency),
        )
        if value is not None
    }
    service = service._replace(**overrides)
    transport, bucket = connect(service)

    if cid is None:
        cid, car = _read_root(car)
    object_name = object_name or str(cid)
    logging.debug(
        "client - store_car: Storing archive with cid %s as: %s", cid, object_name
    )
    uploader = StreamingUploader(
        transport,
        bucket,
        part_concurrency=service.part_concurrency,
        max_retries=service.max_retries,
    )
    return uploader.upload(
        object_name,
        car,
        cid,
        on_stored_chunk=on_stored_chunk,
        on_complete=on_complete,
    )


def _read_root(car):
    """Return the first root of an archive and a stream of the same archive."""
    if isinstance(car, ArchiveReader):
        roots, replay = car.roots, car
    else:
        if isinstance(car, (bytes, bytearray, memoryview)):
            chunks = [bytes(car)]
        elif hasattr(car, "read"):
            chunks = iter(functools.partial(car.read, 65536), b"")
        else:
            chunks = car
        roots, replay = read_header(chunks)
    if not roots:
        exception_string = "client - store_car: Archive header names no root cid."
        logging.error(exception_string)
        raise ArchiveFormatError(exception_string)
    return roots[0], replay


def status(service, cid, object_name=None):
    """Return the status of a stored archive.

    :param Service service: Service configuration.
    :param str cid: Root CID of the archive.
    :param str object_name: Object key, `cid` when omitted.

    :return: Stored CID, size and dates.
    :rtype: StatusResult

    :raises ObjectNotFoundError: If the object does not exist.
    :raises IncompleteRemoteRecordError: If the remote record has no `cid` tag, no
        content length or no last modified date.
    """
    transport, bucket = connect(service)
    stored = transport.head_object(bucket, object_name or str(cid))

    stored_cid = stored.metadata.get("cid")
    if not stored_cid:
        _incomplete("No CID Returned from Remote", stored.key)
    if isinstance(stored.size, bool) or not isinstance(stored.size, int):
        _incomplete("Invalid Content Length", stored.key)
    if stored.last_modified is None:
        _incomplete("Invalid Date", stored.key)

    created = stored.last_modified
    return StatusResult(
        stored_cid,
        stored.size,
        [],
        Pin(stored_cid, stored_cid, "pinned", created),
        created,
    )


def _incomplete(message, key):
    exception_string = f"client - status: {message} for object: {key}"
    logging.error(exception_string)
    raise IncompleteRemoteRecordError(exception_string)


def delete(service, cid, object_name=None):
    """Remove a stored archive. No existence check is made first. Content already
    replicated by other nodes may still be provided by them.

    :param Service service: Service configuration.
    :param str cid: Root CID of the archive.
    :param str object_name: Object key, `cid` when omitted.
    """
    transport, bucket = connect(service)
    key = object_name or str(cid)
    transport.delete_object(bucket, key)
    logging.info("client - delete: Deleted object: %s", key)
