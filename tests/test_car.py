"""Test module for archive serialization and parsing"""

import io
import dag_cbor
import pytest
from multiformats import varint
from carstore import unixfs
from carstore.blob import Blob
from carstore.block import Block, make_cid
from carstore.car import (
    ArchiveReader,
    CarReader,
    encode_block,
    encode_header,
    read_header,
)
from carstore.carstore_exceptions import (
    ArchiveFormatError,
    BlockNotFoundError,
    EncodingError,
)
from carstore.packer import DagPacker


@pytest.fixture(name="packed")
def init_packed(memory_store):
    """A directory of two files spanning several chunks."""
    files = [
        ("site/index.html", Blob(b"<html>" * 50)),
        ("site/data/values.json", Blob(b'{"value": 1}' * 40)),
    ]
    return DagPacker(memory_store, chunk_size=64).pack_many(files)


def test_header_encoding():
    """Test the header is a length prefixed dag-cbor map of roots and version."""
    cid = make_cid(b"root")
    stream = io.BytesIO(encode_header([cid]))
    length = varint.decode(stream)
    header = stream.read()
    assert len(header) == length
    decoded = dag_cbor.decode(header)
    assert decoded == {"roots": [cid], "version": 1}


def test_block_record_encoding():
    """Test a block record is the length prefixed cid followed by the data."""
    data = b"block data"
    cid = make_cid(data)
    record = encode_block(Block(cid, data))
    assert record == varint.encode(len(bytes(cid)) + len(data)) + bytes(cid) + data


def test_archive_round_trip(packed):
    """Test parsing an archive gives back the root and every block."""
    archive = b"".join(ArchiveReader([packed.cid], packed.blocks()))
    reader = CarReader(archive)
    assert reader.roots == [packed.cid]
    expected = list(packed.blocks())
    assert len(reader) == len(expected)
    for block in expected:
        assert reader.get(block.cid) == block.data
    content = b"".join(
        unixfs.cat(
            reader.get, unixfs.resolve(reader.get, packed.cid, "site/index.html")
        )
    )
    assert content == b"<html>" * 50


def test_archive_round_trip_cid_v1_raw_leaves(memory_store):
    """Test archives of CIDv1 raw leaf DAGs parse back."""
    packer = DagPacker(memory_store, chunk_size=16, cid_version=1, raw_leaves=True)
    packed = packer.pack(Blob(b"raw leaves " * 20))
    reader = CarReader(b"".join(ArchiveReader([packed.cid], packed.blocks())))
    assert reader.roots == [packed.cid]
    assert b"".join(unixfs.cat(reader.get, packed.cid)) == b"raw leaves " * 20


def test_archive_reader_is_single_pass(packed):
    """Test iterating an archive twice raises EncodingError."""
    car = ArchiveReader([packed.cid], packed.blocks())
    list(car)
    with pytest.raises(EncodingError):
        iter(car)


def test_archive_reader_is_lazy(memory_store, packed):
    """Test blocks are only read from the store while the archive is consumed."""
    requested = []

    def blocks():
        for block in memory_store.entries():
            requested.append(block.cid)
            yield block

    chunks = iter(ArchiveReader([packed.cid], blocks()))
    next(chunks)
    assert requested == []
    next(chunks)
    assert len(requested) == 1


def test_car_reader_any_block_order(packed):
    """Test the reader resolves blocks by cid whatever their order."""
    blocks = list(packed.blocks())[::-1]
    reader = CarReader(b"".join(ArchiveReader([packed.cid], blocks)))
    assert reader.has(packed.cid)
    assert set(reader.cids()) == {block.cid for block in blocks}


def test_car_reader_sources(packed):
    """Test the reader accepts bytes, readable objects and chunk iterables."""
    archive = b"".join(ArchiveReader([packed.cid], packed.blocks()))
    for source in (archive, io.BytesIO(archive), [archive[:10], archive[10:]]):
        assert CarReader(source).roots == [packed.cid]


def test_car_reader_truncated(packed):
    """Test a truncated archive raises ArchiveFormatError."""
    archive = b"".join(ArchiveReader([packed.cid], packed.blocks()))
    with pytest.raises(ArchiveFormatError):
        CarReader(archive[:-5])


def test_car_reader_invalid_header():
    """Test garbage bytes raise ArchiveFormatError."""
    with pytest.raises(ArchiveFormatError):
        CarReader(b"\x05not a header")


def test_car_reader_unsupported_version():
    """Test a header with another version raises ArchiveFormatError."""
    header = dag_cbor.encode({"roots": [make_cid(b"x")], "version": 2})
    with pytest.raises(ArchiveFormatError):
        CarReader(varint.encode(len(header)) + header)


def test_car_reader_verifies_blocks():
    """Test a block whose bytes do not match its cid raises ArchiveFormatError."""
    cid = make_cid(b"original")
    archive = encode_header([cid]) + encode_block(Block(cid, b"tampered"))
    with pytest.raises(ArchiveFormatError):
        CarReader(archive)
    assert CarReader(archive, verify=False).get(cid) == b"tampered"


def test_car_reader_missing_block():
    """Test get raises BlockNotFoundError for a cid not in the archive."""
    reader = CarReader(encode_header([make_cid(b"root")]))
    with pytest.raises(BlockNotFoundError):
        reader.get(make_cid(b"root"))


def test_read_header_replays_whole_archive(packed):
    """Test peeking the roots of a stream leaves the stream intact."""
    archive = b"".join(ArchiveReader([packed.cid], packed.blocks()))
    chunks = [archive[i : i + 7] for i in range(0, len(archive), 7)]
    roots, replay = read_header(iter(chunks))
    assert roots == [packed.cid]
    assert b"".join(replay) == archive


def test_read_header_invalid():
    """Test peeking an empty stream raises ArchiveFormatError."""
    with pytest.raises(ArchiveFormatError):
        read_header(iter([]))
