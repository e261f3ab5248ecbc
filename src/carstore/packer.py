"""Core module for DagPacker"""

import logging
import posixpath
from collections import namedtuple
from carstore import unixfs
from carstore.blob import File
from carstore.carstore_config import CHUNK_SIZE, CID_VERSION, MAX_CHILDREN
from carstore.carstore_exceptions import (
    EmptyInputError,
    MixedRootsError,
    ValidationError,
)


class PackedNode(namedtuple("PackedNode", ["cid", "dag_size", "file_size"])):
    """Root of a packed sub-DAG.

    :param CID cid: Content identifier of the node.
    :param int dag_size: Encoded size of the node plus every block below it.
    :param int file_size: Size of the file content below it (0 for directories).
    """


class PackResult(namedtuple("PackResult", ["cid", "blockstore"])):
    """Outcome of packing: the root content identifier and the store holding its
    blocks."""

    def blocks(self):
        """Yield every block reachable from the root exactly once."""
        return unixfs.walk(self.blockstore.get, self.cid)


class DagPacker:
    """DagPacker turns byte streams into a unixfs DAG. Every stream is split into
    fixed-size chunks which become leaf blocks; when a stream spans more than one
    chunk, its leaves are linked bottom-up in a balanced layout (at most
    `max_children` links per node) until a single node covers the whole stream.
    Named streams are then linked into directory nodes, sorted by name.

    The same input and parameters always produce the same root CID and blocks.

    :param BlockStore blockstore: Store receiving the blocks.
    :param int chunk_size: Size of the leaves, in bytes.
    :param int max_children: Maximum links per intermediate file node.
    :param int cid_version: 0 (base58btc "Qm..." identifiers) or 1 (base32).
    :param bool raw_leaves: Store leaves as raw blocks instead of unixfs nodes.
        Requires CIDv1.
    """

    def __init__(
        self,
        blockstore,
        chunk_size=CHUNK_SIZE,
        max_children=MAX_CHILDREN,
        cid_version=CID_VERSION,
        raw_leaves=False,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be > 0, chunk_size: {chunk_size}")
        if max_children < 2:
            raise ValueError(f"max_children must be > 1, max_children: {max_children}")
        if cid_version not in (0, 1):
            raise ValueError(f"cid_version must be 0 or 1, cid_version: {cid_version}")
        if raw_leaves and cid_version == 0:
            raise ValueError("raw_leaves requires cid_version 1")
        self.blockstore = blockstore
        self.chunk_size = chunk_size
        self.max_children = max_children
        self.cid_version = cid_version
        self.raw_leaves = raw_leaves

    def pack(self, blob, name="blob", wrap_with_directory=False):
        """Pack a single stream.

        :param Blob blob: Content to pack.
        :param str name: Entry name, only visible when wrapped in a directory.
        :param bool wrap_with_directory: Link the file from a directory node and
            return the directory as root.

        :return: Root content identifier and block store.
        :rtype: PackResult
        """
        if blob.size == 0:
            exception_string = (
                "DagPacker - pack: Content size is 0, make sure to provide some content."
            )
            logging.error(exception_string)
            raise EmptyInputError(exception_string)
        return self.pack_many([(name, blob)], wrap_with_directory)

    def pack_many(self, entries, wrap_with_directory=True):
        """Pack named streams into a directory tree. All paths that contain a
        directory must share one top-level directory: `foo/bar.png` and
        `foo/bla/baz.json` is ok but `foo/bar.png` and `bla/baz.json` is not. When a
        path is given more than once, the last entry wins.

        :param entries: `File` objects (their name is their path) or
            (path, blob) pairs.
        :param bool wrap_with_directory: Link all top-level entries from a single
            directory node. Without it, the entries must form a single top-level
            entry, which becomes the root.

        :return: Root content identifier and block store.
        :rtype: PackResult
        """
        files = self._normalize_entries(entries)
        total_size = sum(blob.size for blob in files.values())
        if total_size == 0:
            exception_string = (
                "DagPacker - pack_many: Total size of files should exceed 0, make sure"
                + " to provide some content."
            )
            logging.error(exception_string)
            raise EmptyInputError(exception_string)
        self._check_roots(list(files), wrap_with_directory)
        logging.debug(
            "DagPacker - pack_many: Packing %s file(s), %s bytes.",
            len(files),
            total_size,
        )

        tree = {}
        for path, blob in files.items():
            *dirs, name = path.split("/")
            node = tree
            for dir_name in dirs:
                node = node.setdefault(dir_name, {})
                if not isinstance(node, dict):
                    exception_string = (
                        f"DagPacker - pack_many: '{dir_name}' is both a file and a"
                        + f" directory in path: {path}"
                    )
                    logging.error(exception_string)
                    raise ValidationError(exception_string, field=path)
            if isinstance(node.get(name), dict):
                exception_string = (
                    f"DagPacker - pack_many: '{path}' is both a file and a directory"
                )
                logging.error(exception_string)
                raise ValidationError(exception_string, field=path)
            node[name] = self._pack_file(blob)

        if wrap_with_directory:
            root = self._pack_directory(tree)
        else:
            (entry,) = tree.values()
            root = entry if isinstance(entry, PackedNode) else self._pack_directory(entry)
        logging.debug("DagPacker - pack_many: Packed root cid: %s", root.cid)
        return PackResult(root.cid, self.blockstore)

    @staticmethod
    def _normalize_entries(entries):
        """Return an ordered {path: blob} dictionary of cleaned paths."""
        files = {}
        for entry in entries:
            if isinstance(entry, File):
                path, blob = entry.name, entry
            else:
                path, blob = entry
            files[_clean_path(path)] = blob
        return files

    @staticmethod
    def _check_roots(paths, wrap_with_directory):
        """Reject path sets that do not share a single top-level directory.

        :param list paths: Cleaned relative paths.
        :param bool wrap_with_directory: Whether a wrapping directory will be added.
        """
        top_dirs = sorted({path.split("/")[0] for path in paths if "/" in path})
        top_entries = sorted({path.split("/")[0] for path in paths})
        if len(top_dirs) > 1 or (not wrap_with_directory and len(top_entries) > 1):
            exception_string = (
                "DagPacker - _check_roots: Files must be within the same directory,"
                + f" found more than one root: {top_entries}"
            )
            logging.error(exception_string)
            raise MixedRootsError(exception_string)

    def _pack_file(self, blob):
        """Chunk a stream into leaves and link them up to a single root.

        :param Blob blob: Content to pack.

        :return: Root of the file DAG.
        :rtype: PackedNode
        """
        nodes = [self._put_leaf(chunk) for chunk in self._chunks(blob)]
        if not nodes:
            nodes = [self._put_leaf(b"")]
        while len(nodes) > 1:
            nodes = [
                self._put_file_node(nodes[i : i + self.max_children])
                for i in range(0, len(nodes), self.max_children)
            ]
        return nodes[0]

    def _chunks(self, blob):
        """Re-slice a blob's stream into chunks of exactly `chunk_size` bytes (the
        last one may be shorter)."""
        buffer = bytearray()
        for data in blob.stream():
            buffer.extend(data)
            while len(buffer) >= self.chunk_size:
                yield bytes(buffer[: self.chunk_size])
                del buffer[: self.chunk_size]
        if buffer:
            yield bytes(buffer)

    def _put_leaf(self, chunk):
        if self.raw_leaves:
            cid = self.blockstore.put(chunk, "raw", self.cid_version)
            return PackedNode(cid, len(chunk), len(chunk))
        encoded = unixfs.encode_pbnode(
            data=unixfs.encode_unixfs(unixfs.FILE, chunk, filesize=len(chunk))
        )
        cid = self.blockstore.put(encoded, "dag-pb", self.cid_version)
        return PackedNode(cid, len(encoded), len(chunk))

    def _put_file_node(self, children):
        file_size = sum(child.file_size for child in children)
        links = [unixfs.PBLink(child.cid, "", child.dag_size) for child in children]
        encoded = unixfs.encode_pbnode(
            links,
            unixfs.encode_unixfs(
                unixfs.FILE,
                filesize=file_size,
                blocksizes=[child.file_size for child in children],
            ),
        )
        cid = self.blockstore.put(encoded, "dag-pb", self.cid_version)
        dag_size = len(encoded) + sum(child.dag_size for child in children)
        return PackedNode(cid, dag_size, file_size)

    def _pack_directory(self, tree):
        """Recursively create directory nodes for a {name: PackedNode | dict} tree."""
        links = []
        for name in sorted(tree, key=lambda entry_name: entry_name.encode("utf-8")):
            entry = tree[name]
            if isinstance(entry, dict):
                entry = self._pack_directory(entry)
            links.append(unixfs.PBLink(entry.cid, name, entry.dag_size))
        encoded = unixfs.encode_pbnode(links, unixfs.encode_unixfs(unixfs.DIRECTORY))
        cid = self.blockstore.put(encoded, "dag-pb", self.cid_version)
        dag_size = len(encoded) + sum(link.tsize for link in links)
        return PackedNode(cid, dag_size, 0)


def _clean_path(path):
    """Normalize a relative entry path ("./a//b.txt" -> "a/b.txt").

    :raises ValidationError: If the path is empty or escapes its directory.
    """
    if not isinstance(path, str):
        raise ValidationError(f"Entry path must be a string, got: {type(path)}")
    cleaned = posixpath.normpath("/" + path.replace("\\", "/")).lstrip("/")
    if not cleaned or cleaned == ".":
        raise ValidationError(f"Entry path cannot be empty: '{path}'", field=path)
    if ".." in path.replace("\\", "/").split("/"):
        raise ValidationError(
            f"Entry path cannot contain '..' segments: '{path}'", field=path
        )
    return cleaned
