"""Test module for DagPacker and the unixfs codec"""

import pytest
from carstore import unixfs
from carstore.blob import Blob, File
from carstore.block import make_cid
from carstore.blockstore import MemoryBlockStore
from carstore.carstore_exceptions import (
    EmptyInputError,
    EncodingError,
    MixedRootsError,
    ValidationError,
)
from carstore.packer import DagPacker

HELLO_WORLD_CID = "Qmf412jQZiuVUtdgnB36FXFX7xg5V6KEbSJ4dpQuhkLyfD"
HELLO_WORLD_RAW_CID = "bafkreifzjut3te2nhyekklss27nh3k72ysco7y32koao5eei66wof36n5e"
EMPTY_DIRECTORY_CID = "QmUNLLsPACCz1vLxQVkXqqLX5R1X345qqfHbsf67hvA3Nn"


def read_file(blockstore, cid):
    return b"".join(unixfs.cat(blockstore.get, cid))


def test_empty_directory_node_cid():
    """Test the encoding of an empty unixfs directory gives its well known cid."""
    encoded = unixfs.encode_pbnode(data=unixfs.encode_unixfs(unixfs.DIRECTORY))
    assert str(make_cid(encoded)) == EMPTY_DIRECTORY_CID


def test_pack_hello_world(memory_store, hello_blob):
    """Test a single chunk file gives the same cid as other unixfs importers."""
    packed = DagPacker(memory_store).pack(hello_blob)
    assert str(packed.cid) == HELLO_WORLD_CID
    assert read_file(memory_store, packed.cid) == b"hello world"


def test_pack_hello_world_raw_leaves(memory_store, hello_blob):
    """Test a single chunk file packed with raw leaves is a raw block."""
    packer = DagPacker(memory_store, cid_version=1, raw_leaves=True)
    packed = packer.pack(hello_blob)
    assert str(packed.cid) == HELLO_WORLD_RAW_CID
    assert memory_store.get(packed.cid) == b"hello world"


def test_pack_is_deterministic(hello_blob):
    """Test identical input gives identical root cid and blocks across runs."""
    results = []
    for _ in range(2):
        with MemoryBlockStore() as blockstore:
            packed = DagPacker(blockstore, chunk_size=3).pack(hello_blob)
            results.append([(block.cid, block.data) for block in packed.blocks()])
    assert results[0] == results[1]


def test_pack_balanced_layout(memory_store):
    """Test a multi chunk file is linked bottom-up with at most max_children links."""
    content = bytes(range(40))
    packer = DagPacker(memory_store, chunk_size=4, max_children=3)
    packed = packer.pack(Blob(content))

    # 10 leaves -> 4 nodes -> 2 nodes -> root
    root = unixfs.decode_pbnode(memory_store.get(packed.cid))
    root_data = unixfs.decode_unixfs(root.data)
    assert len(root.links) == 2
    assert root_data.type == unixfs.FILE
    assert root_data.filesize == 40
    assert root_data.blocksizes == [36, 4]
    for link in root.links:
        assert len(unixfs.decode_pbnode(memory_store.get(link.cid)).links) <= 3
    assert read_file(memory_store, packed.cid) == content
    assert len(list(packed.blocks())) == 17


def test_pack_link_tsize_is_cumulative(memory_store):
    """Test the tsize of a link is the encoded size of the whole child DAG."""
    packed = DagPacker(memory_store, chunk_size=4).pack(Blob(bytes(10)))
    root = unixfs.decode_pbnode(memory_store.get(packed.cid))
    for link in root.links:
        dag_size = sum(
            len(block.data) for block in unixfs.walk(memory_store.get, link.cid)
        )
        assert link.tsize == dag_size


def test_pack_zero_bytes(memory_store):
    """Test packing an empty blob raises EmptyInputError before storing anything."""
    with pytest.raises(EmptyInputError):
        DagPacker(memory_store).pack(Blob())
    assert len(memory_store) == 0


def test_pack_many_zero_total_size(memory_store):
    """Test packing files that sum to 0 bytes raises an EncodingError."""
    files = [File([], "a/empty.txt"), File([], "a/other.txt")]
    with pytest.raises(EncodingError):
        DagPacker(memory_store).pack_many(files)
    assert len(memory_store) == 0


def test_pack_many_mixed_roots(memory_store):
    """Test files under different top-level directories raise MixedRootsError."""
    files = [("a/b.txt", Blob("b")), ("c/d.txt", Blob("d"))]
    with pytest.raises(MixedRootsError):
        DagPacker(memory_store).pack_many(files)


def test_pack_many_shared_root(memory_store):
    """Test files under one top-level directory pack into a single root."""
    files = [("a/b.txt", Blob("b")), ("a/c/d.txt", Blob("d"))]
    packed = DagPacker(memory_store).pack_many(files)
    file_cid = unixfs.resolve(memory_store.get, packed.cid, "a/b.txt")
    assert read_file(memory_store, file_cid) == b"b"
    file_cid = unixfs.resolve(memory_store.get, packed.cid, "a/c/d.txt")
    assert read_file(memory_store, file_cid) == b"d"


def test_pack_many_without_wrapping_single_directory(memory_store):
    """Test without wrapping, the shared top-level directory is the root."""
    files = [("a/b.txt", Blob("b")), ("a/c.txt", Blob("c"))]
    packed = DagPacker(memory_store).pack_many(files, wrap_with_directory=False)
    names = [link.name for link in unixfs.list_directory(memory_store.get, packed.cid)]
    assert names == ["b.txt", "c.txt"]


def test_pack_many_without_wrapping_multiple_entries(memory_store):
    """Test without wrapping, more than one top-level entry is rejected."""
    files = [("b.txt", Blob("b")), ("c.txt", Blob("c"))]
    with pytest.raises(MixedRootsError):
        DagPacker(memory_store).pack_many(files, wrap_with_directory=False)


def test_pack_many_directory_links_sorted(memory_store):
    """Test directory links are sorted by name whatever the input order."""
    files = [File(["z"], "zeta.txt"), File(["a"], "alpha.txt"), File(["m"], "mu.txt")]
    packed = DagPacker(memory_store).pack_many(files)
    names = [link.name for link in unixfs.list_directory(memory_store.get, packed.cid)]
    assert names == ["alpha.txt", "mu.txt", "zeta.txt"]


def test_pack_many_order_independent(hello_blob):
    """Test the root cid does not depend on the order of the files."""
    roots = []
    for order in (1, -1):
        entries = [("dir/hello.txt", hello_blob), ("dir/other.txt", Blob("other"))]
        with MemoryBlockStore() as blockstore:
            roots.append(DagPacker(blockstore).pack_many(entries[::order]).cid)
    assert roots[0] == roots[1]


def test_pack_many_last_write_wins(memory_store):
    """Test a path given twice keeps the last content."""
    files = [("a.txt", Blob("first")), ("a.txt", Blob("second"))]
    packed = DagPacker(memory_store).pack_many(files)
    file_cid = unixfs.resolve(memory_store.get, packed.cid, "a.txt")
    assert read_file(memory_store, file_cid) == b"second"


def test_pack_many_normalizes_paths(memory_store):
    """Test leading slashes and dot segments are removed from paths."""
    packed = DagPacker(memory_store).pack_many([("/./dir//file.txt", Blob("x"))])
    file_cid = unixfs.resolve(memory_store.get, packed.cid, "dir/file.txt")
    assert read_file(memory_store, file_cid) == b"x"


@pytest.mark.parametrize("path", ["", ".", "../escape.txt", "dir/../../x"])
def test_pack_many_invalid_paths(memory_store, path):
    """Test empty paths and paths with '..' segments raise ValidationError."""
    with pytest.raises(ValidationError):
        DagPacker(memory_store).pack_many([(path, Blob("x"))])


def test_pack_many_file_and_directory_conflict(memory_store):
    """Test a path used both as a file and a directory raises ValidationError."""
    files = [("a/b", Blob("file")), ("a/b/c.txt", Blob("nested"))]
    with pytest.raises(ValidationError):
        DagPacker(memory_store).pack_many(files)


def test_pack_wrap_with_directory(memory_store, hello_blob):
    """Test a wrapped blob is linked by name from a directory root."""
    packed = DagPacker(memory_store).pack(
        hello_blob, name="hello.txt", wrap_with_directory=True
    )
    file_cid = unixfs.resolve(memory_store.get, packed.cid, "hello.txt")
    assert str(file_cid) == HELLO_WORLD_CID


def test_pack_result_blocks_deduplicated(memory_store):
    """Test blocks reachable through several links are yielded once."""
    files = [("d/one.txt", Blob("same")), ("d/two.txt", Blob("same"))]
    packed = DagPacker(memory_store).pack_many(files)
    cids = [block.cid for block in packed.blocks()]
    assert len(cids) == len(set(cids)) == 3
    assert cids[0] == packed.cid


@pytest.mark.parametrize(
    "options",
    [
        {"chunk_size": 0},
        {"max_children": 1},
        {"cid_version": 2},
        {"raw_leaves": True, "cid_version": 0},
    ],
)
def test_packer_invalid_options(memory_store, options):
    """Test invalid packer options raise ValueError."""
    with pytest.raises(ValueError):
        DagPacker(memory_store, **options)


def test_cat_directory_raises(memory_store, hello_blob):
    """Test cat on a directory raises IsADirectoryError."""
    packed = DagPacker(memory_store).pack_many([("a.txt", hello_blob)])
    with pytest.raises(IsADirectoryError):
        read_file(memory_store, packed.cid)


def test_resolve_missing_path(memory_store, hello_blob):
    """Test resolving a missing name raises FileNotFoundError."""
    packed = DagPacker(memory_store).pack_many([("a.txt", hello_blob)])
    with pytest.raises(FileNotFoundError):
        unixfs.resolve(memory_store.get, packed.cid, "b.txt")


def test_decode_malformed_node():
    """Test decoding garbage bytes raises EncodingError."""
    with pytest.raises(EncodingError):
        unixfs.decode_pbnode(b"\x12\x05ab")
