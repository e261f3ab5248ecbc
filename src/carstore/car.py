"""Content addressed archive (CAR v1) serialization.

An archive is a header naming its root CIDs followed by one record per block:

    varint(len(header)) | dag-cbor {"roots": [CID, ...], "version": 1}
    varint(len(cid) + len(data)) | cid | data
    ...

Readers must not assume any block order: blocks are resolved by CID.
"""

import io
import itertools
import logging
import dag_cbor
from multiformats import CID, varint
from carstore.block import Block, verify_block
from carstore.carstore_exceptions import (
    ArchiveFormatError,
    BlockNotFoundError,
    EncodingError,
)

CAR_VERSION = 1


def encode_header(roots):
    """Encode the length-prefixed archive header for the given root CIDs."""
    header = dag_cbor.encode({"roots": list(roots), "version": CAR_VERSION})
    return varint.encode(len(header)) + header


def encode_block(block):
    """Encode one length-prefixed block record."""
    cid_bytes = bytes(block.cid)
    return varint.encode(len(cid_bytes) + len(block.data)) + cid_bytes + block.data


class ArchiveReader:
    """Lazy, single-pass byte stream of an archive. Iterating yields the header and
    then one record per block, reading blocks from `blocks` only as the stream is
    consumed, so it can be piped into a network transport without holding the whole
    archive in memory.

    The block source (usually a `BlockStore`) must stay open until the stream has
    been fully consumed.

    :param list roots: Root CIDs to name in the header.
    :param blocks: Iterable of `Block` (ex. `blockstore.entries()`).
    """

    def __init__(self, roots, blocks):
        self.version = CAR_VERSION
        self.roots = list(roots)
        self._blocks = blocks
        self._consumed = False

    def __iter__(self):
        if self._consumed:
            exception_string = "ArchiveReader - __iter__: archive has already been consumed."
            logging.error(exception_string)
            raise EncodingError(exception_string)
        self._consumed = True
        return self._generate()

    def _generate(self):
        yield encode_header(self.roots)
        count = 0
        for block in self._blocks:
            count += 1
            yield encode_block(block)
        logging.debug(
            "ArchiveReader - _generate: Emitted %s block(s) for roots: %s",
            count,
            [str(root) for root in self.roots],
        )


class IterStream(io.RawIOBase):
    """Read-only raw stream over an iterable of byte chunks. Unless `record` is
    False, every chunk pulled from the iterable is kept in `consumed` so the stream
    can be replayed from the start."""

    def __init__(self, chunks, record=True):
        super().__init__()
        self._chunks = iter(chunks)
        self._leftover = b""
        self._record = record
        self.consumed = []

    def readable(self):
        return True

    def readinto(self, buffer):
        while not self._leftover:
            try:
                chunk = next(self._chunks)
            except StopIteration:
                return 0
            if self._record:
                self.consumed.append(chunk)
            self._leftover = bytes(chunk)
        size = min(len(buffer), len(self._leftover))
        buffer[:size] = self._leftover[:size]
        self._leftover = self._leftover[size:]
        return size

    def replay(self):
        """Return an iterable of every chunk, including those already handed out."""
        return itertools.chain(self.consumed, self._chunks)


def _buffered(source):
    """Return a `io.BufferedReader` (which supports `peek`) over an archive source:
    bytes, a readable binary object or an iterable of byte chunks."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        return io.BufferedReader(io.BytesIO(bytes(source)))
    if isinstance(source, io.BufferedReader):
        return source
    if hasattr(source, "read"):
        chunks = iter(lambda: source.read(65536), b"")
        return io.BufferedReader(IterStream(chunks, record=False))
    return io.BufferedReader(IterStream(source, record=False))


def _read_header(stream):
    try:
        length = varint.decode(stream)
        header_bytes = stream.read(length)
        if len(header_bytes) != length:
            raise ArchiveFormatError("Archive header is truncated.")
        header = dag_cbor.decode(header_bytes)
    except ArchiveFormatError:
        raise
    except Exception as err:
        exception_string = f"CarReader - _read_header: Invalid archive header. {err}"
        logging.error(exception_string)
        raise ArchiveFormatError(exception_string) from err
    if not isinstance(header, dict) or header.get("version") != CAR_VERSION:
        exception_string = f"CarReader - _read_header: Unsupported archive header: {header}"
        logging.error(exception_string)
        raise ArchiveFormatError(exception_string)
    roots = header.get("roots")
    if not isinstance(roots, list) or not all(isinstance(r, CID) for r in roots):
        raise ArchiveFormatError(f"Archive header has invalid roots: {roots}")
    return roots


def _split_cid(record):
    """Split the bytes of a block record into (CID, data)."""
    stream = io.BytesIO(record)
    if record[:2] == b"\x12\x20":
        # CIDv0 is a bare sha2-256 multihash
        cid_length = 34
    else:
        varint.decode(stream)  # version
        varint.decode(stream)  # codec
        varint.decode(stream)  # multihash function
        digest_size = varint.decode(stream)
        cid_length = stream.tell() + digest_size
    if cid_length > len(record):
        raise ArchiveFormatError("Block record is shorter than its CID.")
    return CID.decode(record[:cid_length]), record[cid_length:]


def read_header(chunks):
    """Read the root CIDs of a streamed archive without consuming it.

    :param chunks: Iterable of byte chunks of an archive.

    :return: The roots and an iterable yielding the very same archive bytes.
    :rtype: tuple
    """
    raw = IterStream(chunks)
    stream = io.BufferedReader(raw)
    roots = _read_header(stream)
    return roots, raw.replay()


class CarReader:
    """Parses an archive and gives access to its blocks by CID.

    :param source: bytes, a readable binary object or an iterable of byte chunks.
    :param bool verify: Check that the bytes of every block match its CID.

    :raises ArchiveFormatError: If the archive is malformed, truncated, or a block
        fails verification.
    """

    def __init__(self, source, verify=True):
        stream = _buffered(source)
        self.version = CAR_VERSION
        self.roots = _read_header(stream)
        self._blocks = {}
        while stream.peek(1):
            try:
                length = varint.decode(stream)
            except ValueError as err:
                raise ArchiveFormatError(f"Invalid block record length. {err}") from err
            record = stream.read(length)
            if len(record) != length:
                raise ArchiveFormatError("Archive is truncated inside a block record.")
            try:
                cid, data = _split_cid(record)
            except (ValueError, KeyError) as err:
                raise ArchiveFormatError(f"Invalid block record cid. {err}") from err
            if verify and not verify_block(cid, data):
                exception_string = (
                    f"CarReader - __init__: Block data does not match its cid: {cid}"
                )
                logging.error(exception_string)
                raise ArchiveFormatError(exception_string)
            self._blocks[bytes(cid)] = Block(cid, data)

    def get(self, cid):
        """Return the bytes of a block."""
        block = self._blocks.get(bytes(cid))
        if block is None:
            raise BlockNotFoundError(f"CarReader - get: block not found for cid: {cid}")
        return block.data

    def has(self, cid):
        return bytes(cid) in self._blocks

    def blocks(self):
        """Return every `Block` of the archive in archive order."""
        return list(self._blocks.values())

    def cids(self):
        return [block.cid for block in self._blocks.values()]

    def __len__(self):
        return len(self._blocks)
