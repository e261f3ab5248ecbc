"""CarStore turns files, directories and ERC-1155 token metadata into content
addressed archives (CAR v1) and stores them on an S3-compatible object store.

- Content is split into chunks and linked into a unixfs DAG whose root CID is
    reproducible: the same bytes always give the same root
- Archives are streamed lazily from a transient block store, so large
    directories are never held in memory in full
- Archives are uploaded in parts, with bounded concurrency, retries and
    progress reporting, and tagged with their root CID
- Stored archives are looked up (`status`) and removed (`delete`) by CID or
    object name
"""

from carstore.blob import Blob, File
from carstore.client import (
    delete,
    encode_blob,
    encode_directory,
    encode_nft,
    packed_archive,
    status,
    store,
    store_blob,
    store_car,
    store_directory,
)
from carstore.service import Service, load_service, parse_token
from carstore.token import Token, to_gateway_url

__all__ = (
    "Blob",
    "File",
    "Service",
    "Token",
    "delete",
    "encode_blob",
    "encode_directory",
    "encode_nft",
    "load_service",
    "packed_archive",
    "parse_token",
    "status",
    "store",
    "store_blob",
    "store_car",
    "store_directory",
    "to_gateway_url",
)
__version__ = "1.0.0"
