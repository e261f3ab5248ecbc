"""Transient content-addressed block stores used while encoding archives"""

import logging
import os
import shutil
import tempfile
import threading
from abc import ABC, abstractmethod
from tempfile import NamedTemporaryFile
from carstore.block import Block, make_cid
from carstore.carstore_config import BLOCKSTORE_DEPTH, BLOCKSTORE_WIDTH, CID_VERSION
from carstore.carstore_exceptions import BlockNotFoundError, BlockStoreClosedError


class BlockStore(ABC):
    """BlockStore is a transient key-value store of content-addressed blocks. Its
    lifetime is bounded to one encode operation: blocks are written while a DAG is
    packed, read back while the archive is streamed, and released by `close`.

    Block stores are context managers and should be used as such, so that the
    blocks they hold are released on every exit path:

        with FsBlockStore() as blockstore:
            packed = encode_blob(blob, blockstore=blockstore)
            store_car(service, packed.car)
    """

    def __init__(self):
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @property
    def closed(self):
        """True once `close` has been called"""
        return self._closed

    @abstractmethod
    def put(self, data, codec="dag-pb", version=CID_VERSION):
        """Store a block and return its content identifier. Storing the same bytes
        with the same codec and version again returns the same identifier without
        keeping a second copy.

        :param bytes data: Bytes of the block.
        :param str codec: Multicodec of the block ("dag-pb" or "raw").
        :param int version: CID version.

        :return: Content identifier of the block.
        :rtype: CID
        """
        raise NotImplementedError()

    @abstractmethod
    def get(self, cid):
        """Return the bytes of a block.

        :param CID cid: Content identifier of the block.

        :return: Bytes of the block.
        :rtype: bytes

        :raises BlockNotFoundError: If the block is not in the store.
        """
        raise NotImplementedError()

    @abstractmethod
    def has(self, cid):
        """Return True if a block with the given content identifier is stored."""
        raise NotImplementedError()

    @abstractmethod
    def entries(self):
        """Yield every stored `Block` in insertion order. The sequence is finite and
        may be iterated again from the start."""
        raise NotImplementedError()

    @abstractmethod
    def close(self):
        """Release all held bytes. Calling `close` more than once is allowed."""
        raise NotImplementedError()

    def __len__(self):
        return sum(1 for _ in self.entries())

    def _check_open(self, method):
        if self._closed:
            exception_string = (
                f"{type(self).__name__} - {method}: block store has been closed."
            )
            logging.error(exception_string)
            raise BlockStoreClosedError(exception_string)


class MemoryBlockStore(BlockStore):
    """A `BlockStore` holding every block in memory."""

    def __init__(self):
        super().__init__()
        self._blocks = {}

    def put(self, data, codec="dag-pb", version=CID_VERSION):
        self._check_open("put")
        cid = make_cid(data, codec, version)
        key = bytes(cid)
        if key not in self._blocks:
            self._blocks[key] = Block(cid, bytes(data))
        return cid

    def get(self, cid):
        self._check_open("get")
        block = self._blocks.get(bytes(cid))
        if block is None:
            exception_string = f"MemoryBlockStore - get: block not found for cid: {cid}"
            logging.debug(exception_string)
            raise BlockNotFoundError(exception_string)
        return block.data

    def has(self, cid):
        self._check_open("has")
        return bytes(cid) in self._blocks

    def entries(self):
        self._check_open("entries")
        for block in list(self._blocks.values()):
            self._check_open("entries")
            yield block

    def __len__(self):
        self._check_open("__len__")
        return len(self._blocks)

    def close(self):
        self._blocks = {}
        self._closed = True


class FsBlockStore(BlockStore):
    """FsBlockStore keeps blocks on disk so that large files and directories do not
    have to be held in memory while they are encoded and uploaded.

    Blocks are addressed by the hex digest of their content identifier, sharded
    into `depth` directories of `width` characters, and written atomically (to a
    temporary file first, then renamed into place). Only the list of stored
    identifiers is kept in memory.

    :param str root: Directory to keep blocks in. When omitted, a private temporary
        directory is created and removed again by `close`.
    :param int depth: Depth when sharding a block's digest.
    :param int width: Width of directories when sharding a block's digest.
    """

    # Permissions settings for writing files and creating directories
    fmode = 0o664
    dmode = 0o755

    def __init__(self, root=None, depth=BLOCKSTORE_DEPTH, width=BLOCKSTORE_WIDTH):
        super().__init__()
        if root is None:
            self.root = tempfile.mkdtemp(prefix="carstore-")
            self._owns_root = True
        else:
            self.root = os.fspath(root)
            self._owns_root = False
        self.depth = depth
        self.width = width
        self.blocks = self.root + "/blocks"
        self._create_path(self.blocks + "/tmp")
        self._index = {}
        self._index_lock = threading.Lock()
        logging.debug("FsBlockStore - Initialization success. Store root: %s", self.root)

    def put(self, data, codec="dag-pb", version=CID_VERSION):
        self._check_open("put")
        cid = make_cid(data, codec, version)
        key = bytes(cid)
        with self._index_lock:
            if key in self._index:
                return cid
            block_path = self._build_path(cid)
            if not os.path.isfile(block_path):
                self._write_block(block_path, data)
            self._index[key] = cid
        return cid

    def get(self, cid):
        self._check_open("get")
        if bytes(cid) not in self._index:
            exception_string = f"FsBlockStore - get: block not found for cid: {cid}"
            logging.debug(exception_string)
            raise BlockNotFoundError(exception_string)
        with open(self._build_path(cid), "rb") as block_file:
            return block_file.read()

    def has(self, cid):
        self._check_open("has")
        return bytes(cid) in self._index

    def entries(self):
        self._check_open("entries")
        with self._index_lock:
            cids = list(self._index.values())
        for cid in cids:
            yield Block(cid, self.get(cid))

    def __len__(self):
        self._check_open("__len__")
        return len(self._index)

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._index = {}
        path_to_remove = self.root if self._owns_root else self.blocks
        shutil.rmtree(path_to_remove, ignore_errors=True)
        logging.debug("FsBlockStore - close: Released blocks at: %s", path_to_remove)

    def _write_block(self, block_path, data):
        """Write a block to a temporary file and move it to its permanent address.

        :param str block_path: Permanent address of the block.
        :param bytes data: Bytes of the block.
        """
        tmp = NamedTemporaryFile(dir=self.blocks + "/tmp", delete=False)
        try:
            with tmp:
                tmp.write(data)
            os.chmod(tmp.name, self.fmode)
            self._create_path(os.path.dirname(block_path))
            os.replace(tmp.name, block_path)
        except Exception as err:
            exception_string = (
                f"FsBlockStore - _write_block: Unexpected {err=} while writing block"
                + f" to: {block_path}"
            )
            logging.error(exception_string)
            if os.path.exists(tmp.name):
                os.remove(tmp.name)
            raise err

    def _shard(self, digest):
        """Generates a list given a digest of `self.depth` number of tokens with width
        `self.width` from the first part of the digest plus the remainder.

        Example:
            ['0d', '55', '5ed77052d7e166017f779cbc193357c3a5006ee8b8457230bcf7abcef65e']

        :param str digest: The string to be divided into tokens.

        :return: A list containing the tokens of fixed width.
        :rtype: list
        """

        def compact(items):
            """Return only truthy elements of `items`."""
            return [item for item in items if item]

        return compact(
            [digest[i * self.width : self.width * (i + 1)] for i in range(self.depth)]
            + [digest[self.depth * self.width :]]
        )

    def _build_path(self, cid):
        """Build the absolute file path of a block. Blocks with equal bytes share one
        file, whatever the codec or version of their identifier.

        :param CID cid: Content identifier of the block.

        :return: Absolute path of the block.
        :rtype: str
        """
        paths = self._shard(bytes(cid.raw_digest).hex())
        return os.path.join(self.blocks, *paths)

    def _create_path(self, path):
        """Physically create the folder path (and all intermediate ones) on disk.

        :param str path: The path to create.
        :raises AssertionError: If the path already exists but is not a directory.
        """
        try:
            os.makedirs(path, self.dmode)
        except FileExistsError:
            assert os.path.isdir(path), f"expected {path} to be a directory"
