"""Service configuration: endpoint, credentials and upload settings of a remote store"""

import base64
import binascii
import logging
import os
import textwrap
from collections import namedtuple
import yaml
from carstore.carstore_config import (
    DEFAULT_ENDPOINT,
    DEFAULT_REGION,
    FORCE_PATH_STYLE,
    MAX_CONCURRENT_UPLOADS,
    MAX_STORE_RETRIES,
)
from carstore.carstore_exceptions import ConfigurationError
from carstore.s3transport import S3Transport

SERVICE_YAML_KEYS = (
    "endpoint",
    "token",
    "access_key",
    "secret_key",
    "bucket",
    "region",
    "force_path_style",
    "max_retries",
    "part_concurrency",
)


class Service(
    namedtuple(
        "Service",
        [
            "endpoint",
            "token",
            "credentials",
            "bucket",
            "region",
            "force_path_style",
            "max_retries",
            "part_concurrency",
            "transport",
        ],
    )
):
    """Represents everything an operation needs to reach a remote store. It is passed
    explicitly to every operation, and per-call overrides are made on a copy with
    `service._replace(...)`.

    :param str endpoint: Endpoint URL of the store.
    :param token: API token, either a base64 `access:secret:bucket` string or an
        `[access, secret, bucket]` sequence.
    :param tuple credentials: (access key, secret key[, bucket]), used when no token
        is given.
    :param str bucket: Bucket name, overrides the token's bucket.
    :param str region: Region name.
    :param bool force_path_style: Use path-style addressing.
    :param int max_retries: Attempts per uploaded part.
    :param int part_concurrency: Parts uploaded at the same time.
    :param Transport transport: Transport to use instead of building an
        `S3Transport` from the other fields.
    """

    # Default value to prevent dangerous default value
    def __new__(
        cls,
        endpoint=DEFAULT_ENDPOINT,
        token=None,
        credentials=None,
        bucket=None,
        region=DEFAULT_REGION,
        force_path_style=FORCE_PATH_STYLE,
        max_retries=MAX_STORE_RETRIES,
        part_concurrency=MAX_CONCURRENT_UPLOADS,
        transport=None,
    ):
        return super(Service, cls).__new__(
            cls,
            endpoint,
            token,
            credentials,
            bucket,
            region,
            force_path_style,
            max_retries,
            part_concurrency,
            transport,
        )

    def __repr__(self):
        # Keep secrets out of logs and tracebacks
        return (
            f"Service(endpoint={self.endpoint!r}, bucket={self.bucket!r},"
            + f" region={self.region!r}, token={'***' if self.token else None},"
            + f" credentials={'***' if self.credentials else None})"
        )


def _fail(method, message):
    logging.error("service - %s: %s", method, message)
    raise ConfigurationError(message)


def parse_token(token):
    """Decompose an API token into its access key, secret key and bucket.

    :param token: A base64 encoded `access:secret:bucket` string or an
        `[access, secret, bucket]` sequence.
    :type token: str, list, tuple

    :return: (access key, secret key, bucket)
    :rtype: tuple

    :raises ConfigurationError: "Token Not Found", "Invalid Access Key", "Invalid
        Secret Key" or "No Bucket Found".
    """
    if isinstance(token, (list, tuple)):
        fields = list(token)
    elif isinstance(token, (str, bytes)) and token:
        try:
            decoded = base64.b64decode(token, validate=True).decode("ascii")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            _fail("parse_token", "Token Not Found")
        fields = decoded.split(":")
    else:
        _fail("parse_token", "Token Not Found")

    if len(fields) < 1 or not isinstance(fields[0], str) or not fields[0]:
        _fail("parse_token", "Invalid Access Key")
    if len(fields) < 2 or not isinstance(fields[1], str) or not fields[1]:
        _fail("parse_token", "Invalid Secret Key")
    if len(fields) < 3 or not isinstance(fields[2], str) or not fields[2]:
        _fail("parse_token", "No Bucket Found")
    return fields[0], fields[1], fields[2]


def encode_token(access_key, secret_key, bucket):
    """Build the base64 API token for the given credentials and bucket."""
    raw = f"{access_key}:{secret_key}:{bucket}"
    return base64.b64encode(raw.encode("ascii")).decode("ascii")


def resolve_credentials(service):
    """Return the (access key, secret key, bucket) a service operates with. An
    explicit `service.bucket` always wins over the bucket found in a token or in
    the credentials.

    :param Service service: Service configuration.

    :return: (access key, secret key, bucket)
    :rtype: tuple

    :raises ConfigurationError: If neither a token nor credentials are set, or no
        bucket can be found.
    """
    if service.token is not None:
        access_key, secret_key, bucket = parse_token(service.token)
    elif service.credentials:
        credentials = list(service.credentials)
        if len(credentials) < 2 or not credentials[0] or not credentials[1]:
            _fail("resolve_credentials", "Must pass an access key and a secret key")
        access_key, secret_key = credentials[0], credentials[1]
        bucket = credentials[2] if len(credentials) > 2 else None
    else:
        _fail("resolve_credentials", "Must pass a token or credentials")
    bucket = service.bucket or bucket
    if not bucket:
        _fail("resolve_credentials", "No Bucket Found")
    return access_key, secret_key, bucket


def connect(service):
    """Return the transport and bucket an operation should use.

    :param Service service: Service configuration.

    :return: (Transport, bucket)
    :rtype: tuple
    """
    if service.transport is not None:
        if service.bucket:
            return service.transport, service.bucket
        return service.transport, resolve_credentials(service)[2]
    access_key, secret_key, bucket = resolve_credentials(service)
    transport = S3Transport(
        access_key,
        secret_key,
        endpoint=service.endpoint,
        region=service.region,
        force_path_style=service.force_path_style,
    )
    return transport, bucket


def load_service(yaml_path, **overrides):
    """Create a `Service` from a `carstore.yaml` configuration file.

    :param str yaml_path: Path to the configuration file.
    :param overrides: Service fields that take precedence over the file (ex.
        `bucket="other"`). Fields set to None are ignored.

    :return: Service configuration.
    :rtype: Service
    """
    if not os.path.exists(yaml_path):
        exception_string = f"service - load_service: configuration file not found: {yaml_path}"
        logging.error(exception_string)
        raise ConfigurationError(exception_string)
    with open(yaml_path, "r", encoding="utf-8") as cs_yaml_file:
        yaml_data = yaml.safe_load(cs_yaml_file) or {}
    if not isinstance(yaml_data, dict):
        _fail("load_service", f"configuration file must be a mapping: {yaml_path}")

    unknown_keys = sorted(set(yaml_data) - set(SERVICE_YAML_KEYS))
    if unknown_keys:
        _fail("load_service", f"unknown configuration keys: {', '.join(unknown_keys)}")

    fields = {
        key: yaml_data[key]
        for key in SERVICE_YAML_KEYS
        if key in yaml_data and yaml_data[key] is not None
    }
    access_key = fields.pop("access_key", None)
    secret_key = fields.pop("secret_key", None)
    if access_key or secret_key:
        fields["credentials"] = (access_key, secret_key)
    fields.update({key: value for key, value in overrides.items() if value is not None})
    logging.debug(
        "service - load_service: Successfully loaded configuration from: %s", yaml_path
    )
    return Service(**fields)


def write_service_yaml(yaml_path, bucket, endpoint=DEFAULT_ENDPOINT, token=None):
    """Write a `carstore.yaml` configuration template.

    :param str yaml_path: Path of the file to create.
    :param str bucket: Bucket name.
    :param str endpoint: Endpoint URL of the store.
    :param str token: API token. When omitted, the file asks for an access key and a
        secret key instead.

    :raises FileExistsError: If the file already exists.
    """
    if os.path.exists(yaml_path):
        exception_string = (
            f"service - write_service_yaml: configuration file already exists: {yaml_path}"
        )
        logging.error(exception_string)
        raise FileExistsError(exception_string)
    if token:
        credentials = f'token: "{token}"'
    else:
        credentials = 'access_key: ""\nsecret_key: ""'
    carstore_configuration_yaml = textwrap.dedent(
        """\
        # Configuration of the remote store used by CarStore

        ############### Remote Store ###############
        endpoint: "{endpoint}"
        region: "{region}"
        # Address buckets as https://endpoint/bucket instead of https://bucket.endpoint
        force_path_style: {force_path_style}
        bucket: "{bucket}"

        ############### Credentials ###############
        # Either a base64 "access:secret:bucket" token, or an access key and a secret key
        {credentials}

        ############### Upload ###############
        # Attempts per uploaded part
        max_retries: {max_retries}
        # Parts uploaded at the same time
        part_concurrency: {part_concurrency}
        """
    ).format(
        endpoint=endpoint,
        region=DEFAULT_REGION,
        force_path_style=str(FORCE_PATH_STYLE).lower(),
        bucket=bucket,
        credentials=credentials,
        max_retries=MAX_STORE_RETRIES,
        part_concurrency=MAX_CONCURRENT_UPLOADS,
    )
    with open(yaml_path, "w", encoding="utf-8") as cs_yaml_file:
        cs_yaml_file.write(carstore_configuration_yaml)
    logging.debug(
        "service - write_service_yaml: Configuration file written to: %s", yaml_path
    )
