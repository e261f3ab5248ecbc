"""Encoding of ERC-1155 token metadata records into content addressed archives"""

import copy
import json
import logging
import numbers
from collections import namedtuple
from carstore.blob import Blob, File
from carstore.car import ArchiveReader
from carstore.carstore_config import (
    DEFAULT_GATEWAY,
    METADATA_FILE_NAME,
    RESOURCE_NAMESPACE,
    URL_SCHEME,
)
from carstore.carstore_exceptions import ValidationError
from carstore.packer import DagPacker

IMAGE_MIME_WARNING = (
    "According to ERC721 Metadata JSON Schema 'image' must have 'image/*' mime type."
    + " For better interoperability we would highly recommend storing content with"
    + " different mime type under 'properties' namespace e.g. `properties: { video:"
    + " file }` and using 'image' field for storing a preview image for it instead."
    + " For more context please see ERC-721 specification"
    + " https://eips.ethereum.org/EIPS/eip-721"
)


class Resource(namedtuple("Resource", ["keys", "path", "blob"])):
    """A `Blob` found in a token record.

    :param tuple keys: Location of the value in the record (ex. ("properties", "file")).
    :param str path: Path of the resource inside the archive.
    :param Blob blob: The resource itself.
    """


class Token:
    """A stored token: its root CID, the URL of its `metadata.json` document and the
    metadata record with every resource replaced by its content addressed URL.

    :param str ipnft: Root CID of the token archive.
    :param str url: `ipfs://<ipnft>/metadata.json`.
    :param dict data: Metadata record with URLs in place of resources.
    :param list resource_keys: Locations of the substituted values in `data`.
    """

    def __init__(self, ipnft, url, data, resource_keys=()):
        self.ipnft = ipnft
        self.url = url
        self.data = data
        self.resource_keys = [tuple(keys) for keys in resource_keys]

    def embed(self, gateway=DEFAULT_GATEWAY):
        """Return a copy of `data` in which every content addressed URL is replaced
        by its URL on an HTTP gateway."""
        embedded = copy.deepcopy(self.data)
        for keys in self.resource_keys:
            container = embedded
            for key in keys[:-1]:
                container = container[key]
            container[keys[-1]] = to_gateway_url(container[keys[-1]], gateway)
        return embedded

    def to_json(self):
        return {"ipnft": self.ipnft, "url": self.url, "data": self.data}

    def __repr__(self):
        return f"Token(ipnft={self.ipnft!r}, url={self.url!r})"


def to_gateway_url(url, gateway=DEFAULT_GATEWAY):
    """Convert an `ipfs://<cid>/<path>` URL into `<gateway>/ipfs/<cid>/<path>`. Other
    URLs are returned unchanged."""
    prefix = URL_SCHEME + "://"
    if not isinstance(url, str) or not url.startswith(prefix):
        return url
    return f"{gateway.rstrip('/')}/{URL_SCHEME}/{url[len(prefix):]}"


def validate_erc1155(record):
    """Validate that the fields required by ERC-1155 metadata are present.

    :param dict record: Token metadata record.

    :raises ValidationError: If `name` or `description` is not a string, `image` is
        not a `Blob`, or `decimals` is present and not a number.
    """
    if not isinstance(record, dict):
        _fail("token metadata must be a dictionary", None)
    if not isinstance(record.get("name"), str):
        _fail("string property `name` identifying the asset is required", "name")
    if not isinstance(record.get("description"), str):
        _fail("string property `description` describing asset is required", "description")
    image = record.get("image")
    if not isinstance(image, Blob):
        _fail("property `image` must be a Blob or File object", "image")
    if not image.type.startswith("image/"):
        logging.warning("token - validate_erc1155: %s", IMAGE_MIME_WARNING)
    decimals = record.get("decimals")
    if "decimals" in record and (
        isinstance(decimals, bool) or not isinstance(decimals, numbers.Real)
    ):
        _fail("property `decimals` must be an integer value", "decimals")


def _fail(message, field):
    logging.error("token - validate_erc1155: %s", message)
    raise ValidationError(message, field=field)


def collect_resources(record):
    """Find the `Blob` values of a record: top-level values and the values of
    dictionaries directly nested in it. Each is given the archive path
    `assets/<key>[/<nested key>]/<file name or "blob">`.

    :param dict record: Token metadata record.

    :return: Resources in record order.
    :rtype: list
    """
    resources = []
    for key, value in record.items():
        if isinstance(value, Blob):
            resources.append(_resource((key,), value))
        elif isinstance(value, dict):
            for nested_key, nested_value in value.items():
                if isinstance(nested_value, Blob):
                    resources.append(_resource((key, nested_key), nested_value))
    return resources


def _resource(keys, blob):
    for key in keys:
        if not isinstance(key, str) or not key or "/" in key or key in (".", ".."):
            exception_string = (
                "token - collect_resources: Resource key must be a non empty name"
                + f" without '/': {key!r}"
            )
            logging.error(exception_string)
            raise ValidationError(
                exception_string, field=".".join(str(k) for k in keys)
            )
    name = "blob"
    if isinstance(blob, File) and blob.name:
        name = blob.name.replace("\\", "/").rstrip("/").split("/")[-1] or "blob"
        if name in (".", ".."):
            name = "blob"
    path = "/".join((RESOURCE_NAMESPACE,) + tuple(keys) + (name,))
    return Resource(tuple(keys), path, blob)


def substitute(record, resources, base_cid):
    """Return a copy of `record` with every resource replaced by its URL."""
    data = copy.copy(record)
    for resource in resources:
        url = f"{URL_SCHEME}://{base_cid}/{resource.path}"
        if len(resource.keys) == 1:
            data[resource.keys[0]] = url
        else:
            key, nested_key = resource.keys
            if data[key] is record[key]:
                data[key] = copy.copy(record[key])
            data[key][nested_key] = url
    return data


def to_canonical_json(data):
    """Serialize a record with sorted keys and compact separators, as utf-8.

    :raises ValidationError: If the record holds values that are not JSON values.
    """
    try:
        document = json.dumps(
            data, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        )
    except (TypeError, ValueError) as err:
        exception_string = (
            "token - to_canonical_json: token metadata is not serializable to JSON."
            + f" {err}"
        )
        logging.error(exception_string)
        raise ValidationError(exception_string) from err
    return document.encode("utf-8")


def encode_token(record, blockstore, **packer_options):
    """Encode a token record, every resource it references and its `metadata.json`
    document into a single archive.

    Resources are first packed into a base directory whose CID roots their URLs.
    Then `metadata.json` is packed together with the resources into the token's
    root directory. The archive holds every block of the store, so URLs rooted at
    the base directory resolve against it as well.

    :param dict record: Token metadata record.
    :param BlockStore blockstore: Store receiving the blocks.
    :param packer_options: Extra `DagPacker` arguments (chunk size, CID version).

    :return: Root CID, token and lazy archive stream.
    :rtype: tuple
    """
    validate_erc1155(record)
    resources = collect_resources(record)
    packer = DagPacker(blockstore, **packer_options)
    logging.debug("token - encode_token: Packing %s resource(s).", len(resources))

    base = packer.pack_many(
        [(resource.path, resource.blob) for resource in resources],
        wrap_with_directory=True,
    )
    data = substitute(record, resources, base.cid)
    document = Blob(to_canonical_json(data), type="application/json")

    packed = packer.pack_many(
        [(METADATA_FILE_NAME, document)]
        + [(resource.path, resource.blob) for resource in resources],
        wrap_with_directory=True,
    )
    token = Token(
        str(packed.cid),
        f"{URL_SCHEME}://{packed.cid}/{METADATA_FILE_NAME}",
        data,
        [resource.keys for resource in resources],
    )
    logging.info("token - encode_token: Encoded token with root cid: %s", packed.cid)
    car = ArchiveReader([packed.cid], blockstore.entries())
    return packed.cid, token, car
