"""Block must be returned for all BlockStore implementations"""

from collections import namedtuple
from multiformats import CID, multihash
from carstore.carstore_config import CID_VERSION, HASH_FUNCTION


class Block(namedtuple("Block", ["cid", "data"])):
    """A content-addressed unit of bytes.

    :param CID cid: Content identifier derived from `data`.
    :param bytes data: Raw bytes of the block (a dag-pb node or a raw leaf).
    """


def make_cid(data, codec="dag-pb", version=CID_VERSION, hashfun=HASH_FUNCTION):
    """Compute the content identifier of a block.

    CIDv0 only exists for dag-pb blocks hashed with sha2-256 and is always rendered
    in base58btc; CIDv1 identifiers are rendered in base32.

    :param bytes data: Bytes of the block.
    :param str codec: Multicodec name of the block ("dag-pb" or "raw").
    :param int version: CID version (0 or 1).
    :param str hashfun: Multihash function name.

    :return: Content identifier.
    :rtype: CID
    """
    digest = multihash.digest(data, hashfun)
    base = "base58btc" if version == 0 else "base32"
    return CID(base, version, codec, digest)


def verify_block(cid, data):
    """Return True if `data` hashes to the digest carried by `cid`."""
    return multihash.digest(data, cid.hashfun.name) == bytes(cid.digest)
