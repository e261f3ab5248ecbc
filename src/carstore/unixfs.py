"""dag-pb / unixfs node codec and DAG traversal.

Only the subset of unixfs needed to represent files and directories is
supported. Nodes are protobuf messages:

    PBNode { repeated PBLink Links = 2; optional bytes Data = 1; }
    PBLink { optional bytes Hash = 1; optional string Name = 2; optional uint64 Tsize = 3; }
    Data   { DataType Type = 1; optional bytes Data = 2; optional uint64 filesize = 3;
             repeated uint64 blocksizes = 4; }

Links are always encoded before Data, which is the canonical dag-pb form.
"""

import io
import logging
from collections import namedtuple
from multiformats import CID, varint
from carstore.block import Block
from carstore.carstore_exceptions import EncodingError

# unixfs Data.DataType
RAW = 0
DIRECTORY = 1
FILE = 2

_WIRE_VARINT = 0
_WIRE_LENGTH_DELIMITED = 2


class PBLink(namedtuple("PBLink", ["cid", "name", "tsize"])):
    """Link from a dag-pb node to a child block.

    :param CID cid: Content identifier of the child.
    :param str name: Entry name (empty for the chunks of a file).
    :param int tsize: Cumulative encoded size of the child's DAG.
    """


class PBNode(namedtuple("PBNode", ["links", "data"])):
    """Decoded dag-pb node: a list of `PBLink` and the opaque `data` bytes."""


class UnixFSData(namedtuple("UnixFSData", ["type", "data", "filesize", "blocksizes"])):
    """Decoded unixfs `Data` message."""

    def __new__(cls, type, data=b"", filesize=None, blocksizes=None):
        # pylint: disable=W0622
        return super(UnixFSData, cls).__new__(
            cls, type, data, filesize, blocksizes or []
        )


def _key(field, wire_type):
    return varint.encode((field << 3) | wire_type)


def _varint_field(field, value):
    return _key(field, _WIRE_VARINT) + varint.encode(value)


def _bytes_field(field, value):
    return _key(field, _WIRE_LENGTH_DELIMITED) + varint.encode(len(value)) + value


def encode_unixfs(data_type, data=b"", filesize=None, blocksizes=()):
    """Encode a unixfs `Data` message.

    :param int data_type: `RAW`, `DIRECTORY` or `FILE`.
    :param bytes data: File content carried by the node (leaves only).
    :param int filesize: Size of the file content below this node.
    :param list blocksizes: Content size of every child, in link order.

    :return: Protobuf bytes.
    :rtype: bytes
    """
    encoded = _varint_field(1, data_type)
    if data:
        encoded += _bytes_field(2, bytes(data))
    if filesize is not None:
        encoded += _varint_field(3, filesize)
    for size in blocksizes:
        encoded += _varint_field(4, size)
    return encoded


def encode_pbnode(links=(), data=None):
    """Encode a dag-pb node.

    :param list links: `PBLink` objects, already in their final order.
    :param bytes data: Opaque node data (a unixfs message).

    :return: Block bytes.
    :rtype: bytes
    """
    encoded = b""
    for link in links:
        encoded_link = (
            _bytes_field(1, bytes(link.cid))
            + _bytes_field(2, link.name.encode("utf-8"))
            + _varint_field(3, link.tsize)
        )
        encoded += _bytes_field(2, encoded_link)
    if data is not None:
        encoded += _bytes_field(1, data)
    return encoded


def _iter_fields(encoded):
    """Yield (field number, value) of every field of a protobuf message."""
    stream = io.BytesIO(encoded)
    end = len(encoded)
    while stream.tell() < end:
        key = varint.decode(stream)
        field, wire_type = key >> 3, key & 0x07
        if wire_type == _WIRE_VARINT:
            yield field, varint.decode(stream)
        elif wire_type == _WIRE_LENGTH_DELIMITED:
            length = varint.decode(stream)
            value = stream.read(length)
            if len(value) != length:
                raise EncodingError("Truncated protobuf field in dag-pb node.")
            yield field, value
        else:
            raise EncodingError(f"Unsupported protobuf wire type: {wire_type}")


def decode_pbnode(encoded):
    """Decode dag-pb block bytes into a `PBNode`.

    :param bytes encoded: Block bytes.

    :return: Decoded node.
    :rtype: PBNode
    """
    links = []
    data = None
    try:
        for field, value in _iter_fields(encoded):
            if field == 2:
                cid, name, tsize = None, "", 0
                for link_field, link_value in _iter_fields(value):
                    if link_field == 1:
                        cid = CID.decode(link_value)
                    elif link_field == 2:
                        name = link_value.decode("utf-8")
                    elif link_field == 3:
                        tsize = link_value
                links.append(PBLink(cid, name, tsize))
            elif field == 1:
                data = value
    except (ValueError, KeyError) as err:
        exception_string = f"unixfs - decode_pbnode: Malformed dag-pb node. {err}"
        logging.error(exception_string)
        raise EncodingError(exception_string) from err
    return PBNode(links, data)


def decode_unixfs(encoded):
    """Decode a unixfs `Data` message.

    :param bytes encoded: The `data` of a dag-pb node.

    :return: Decoded message.
    :rtype: UnixFSData
    """
    data_type, data, filesize, blocksizes = None, b"", None, []
    for field, value in _iter_fields(encoded or b""):
        if field == 1:
            data_type = value
        elif field == 2:
            data = value
        elif field == 3:
            filesize = value
        elif field == 4:
            blocksizes.append(value)
    return UnixFSData(data_type, data, filesize, blocksizes)


def child_links(cid, encoded):
    """Return the links of a block, whatever its codec."""
    if cid.codec.name == "raw":
        return []
    return decode_pbnode(encoded).links


def walk(get_block, root):
    """Yield every block reachable from `root` exactly once, parents before their
    children, children in link order.

    :param callable get_block: Function returning the bytes of a cid.
    :param CID root: Content identifier to start from.
    """
    seen = set()
    pending = [root]
    while pending:
        cid = pending.pop()
        key = bytes(cid)
        if key in seen:
            continue
        seen.add(key)
        encoded = get_block(cid)
        yield Block(cid, encoded)
        pending.extend(reversed([link.cid for link in child_links(cid, encoded)]))


def resolve(get_block, root, path):
    """Follow a slash separated path of link names from `root`.

    :param callable get_block: Function returning the bytes of a cid.
    :param CID root: Directory to start from.
    :param str path: Relative path (ex. "assets/image/cat.png").

    :return: Content identifier of the entry.
    :rtype: CID

    :raises FileNotFoundError: If a path component does not exist.
    """
    cid = root
    for name in [part for part in path.split("/") if part]:
        for link in child_links(cid, get_block(cid)):
            if link.name == name:
                cid = link.cid
                break
        else:
            raise FileNotFoundError(f"No link named '{name}' in {cid} (path: {path})")
    return cid


def cat(get_block, cid):
    """Yield the content of the file rooted at `cid` chunk by chunk.

    :raises IsADirectoryError: If `cid` is a directory.
    """
    encoded = get_block(cid)
    if cid.codec.name == "raw":
        yield encoded
        return
    node = decode_pbnode(encoded)
    unixfs_data = decode_unixfs(node.data)
    if unixfs_data.type == DIRECTORY:
        raise IsADirectoryError(f"{cid} is a directory")
    if unixfs_data.data:
        yield unixfs_data.data
    for link in node.links:
        yield from cat(get_block, link.cid)


def list_directory(get_block, cid):
    """Return the `PBLink` entries of a directory node."""
    node = decode_pbnode(get_block(cid))
    if decode_unixfs(node.data).type != DIRECTORY:
        raise NotADirectoryError(f"{cid} is not a directory")
    return node.links
