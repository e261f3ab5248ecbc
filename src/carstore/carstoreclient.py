"""CarStore Command Line App"""

import logging
import os
from argparse import ArgumentParser
from pathlib import Path
from carstore import client
from carstore.blob import File
from carstore.carstore_config import DEFAULT_ENDPOINT
from carstore.carstore_exceptions import ConfigurationError
from carstore.service import Service, load_service, write_service_yaml


class CarStoreParser:
    """Class to set up parsing arguments via argparse."""

    def __init__(self):
        """Initialize the argparse 'parser'."""

        program_name = "CarStore Command Line Client"
        description = (
            "Command line tool to encode files and directories into content addressed"
            + " archives (CAR), and to store, look up and delete them on an"
            + " S3-compatible object store."
        )

        self.parser = ArgumentParser(
            prog=program_name,
            description=description,
        )

        # Service related optional arguments
        self.parser.add_argument(
            "-config",
            dest="config_path",
            help="Path of a carstore.yaml configuration file",
        )
        self.parser.add_argument(
            "-createconfig",
            dest="create_config",
            action="store_true",
            help="Write a carstore.yaml template to the '-config' path",
        )
        self.parser.add_argument(
            "-token",
            dest="token",
            help="API token (base64 'access:secret:bucket')",
        )
        self.parser.add_argument(
            "-bucket",
            dest="bucket",
            help="Bucket to work with, overrides the token's bucket",
        )
        self.parser.add_argument(
            "-endpoint",
            dest="endpoint",
            help="Endpoint URL of the object store",
        )
        self.parser.add_argument(
            "-loglevel",
            dest="logging_level",
            help="Set logging level for the client",
        )
        self.parser.add_argument(
            "-logfile",
            dest="logging_file",
            help="Path of the log file, logs go to stderr when omitted",
        )

        # Individual API call related optional arguments
        self.parser.add_argument(
            "-path",
            dest="object_path",
            help="Path of the file, directory or archive to work with",
        )
        self.parser.add_argument(
            "-out",
            dest="out_path",
            help="Path of the archive to write",
        )
        self.parser.add_argument(
            "-name",
            dest="object_name",
            help="Object name to store under, defaults to the root cid",
        )
        self.parser.add_argument(
            "-cid",
            dest="object_cid",
            help="Root cid of a stored archive",
        )

        # Public API optional arguments
        self.parser.add_argument(
            "-encode",
            dest="client_encode",
            action="store_true",
            help="Flag to encode a file or a directory into a local archive",
        )
        self.parser.add_argument(
            "-storeblob",
            dest="client_storeblob",
            action="store_true",
            help="Flag to store a single file",
        )
        self.parser.add_argument(
            "-storedir",
            dest="client_storedir",
            action="store_true",
            help="Flag to store a directory",
        )
        self.parser.add_argument(
            "-storecar",
            dest="client_storecar",
            action="store_true",
            help="Flag to store an existing archive",
        )
        self.parser.add_argument(
            "-status",
            dest="client_status",
            action="store_true",
            help="Flag to get the status of a stored archive",
        )
        self.parser.add_argument(
            "-delete",
            dest="client_delete",
            action="store_true",
            help="Flag to delete a stored archive",
        )

    def get_parser_args(self, args=None):
        """Get command line arguments."""
        return self.parser.parse_args(args)


def load_files(directory):
    """Return a `File` for every regular file below `directory`, named by its path
    relative to the parent of `directory` (ex. "photos/cats/1.png"), in sorted
    order."""
    root = Path(directory)
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {directory}")
    files = []
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        name = path.relative_to(root.parent).as_posix()
        files.append(File.from_path(path, name=name))
    return files


class CarStoreClient:
    """Run CarStore operations for the command line.

    :param Service service: Service configuration, only needed for remote calls.
    """

    def __init__(self, service=None):
        self.service = service
        logging.info("CarStoreClient - Client initialized.")

    def _require_service(self):
        if self.service is None:
            raise ConfigurationError(
                "A '-config' file or a '-token' is required to reach the object store"
            )
        return self.service

    @staticmethod
    def encode(path, out_path):
        """Encode a file or a directory into an archive written to `out_path`.

        :return: Root cid.
        :rtype: CID
        """
        if os.path.isdir(path):
            encoder, content = client.encode_directory, load_files(path)
        else:
            encoder, content = client.encode_blob, File.from_path(path)
        with client.packed_archive(encoder, content) as packed:
            with open(out_path, "wb") as car_file:
                for chunk in packed.car:
                    car_file.write(chunk)
        logging.info(
            "CarStoreClient - encode: Wrote archive of %s with root cid %s to: %s",
            path,
            packed.cid,
            out_path,
        )
        return packed.cid

    def store_blob(self, path, object_name=None):
        return client.store_blob(
            self._require_service(), File.from_path(path), object_name
        )

    def store_directory(self, path, object_name=None):
        return client.store_directory(
            self._require_service(), load_files(path), object_name
        )

    def store_car(self, path, object_name=None):
        with open(path, "rb") as car_file:
            return client.store_car(self._require_service(), car_file, object_name)

    def status(self, cid, object_name=None):
        return client.status(self._require_service(), cid, object_name)

    def delete(self, cid, object_name=None):
        client.delete(self._require_service(), cid, object_name)


def build_service(args):
    """Create the `Service` described by the command line, or None when neither a
    configuration file nor a token is given."""
    config_path = getattr(args, "config_path")
    overrides = {
        "token": getattr(args, "token"),
        "bucket": getattr(args, "bucket"),
        "endpoint": getattr(args, "endpoint"),
    }
    if config_path is not None:
        return load_service(config_path, **overrides)
    if overrides["token"] is None:
        return None
    return Service(**{key: value for key, value in overrides.items() if value})


def main(argv=None):
    """Entry point of the CarStore client."""

    parser = CarStoreParser()
    args = parser.get_parser_args(argv)

    # Setup logging, create log file if it doesn't already exist
    logging_file = getattr(args, "logging_file")
    if logging_file is not None:
        Path(logging_file).parent.mkdir(parents=True, exist_ok=True)
    # Check for logging level
    logging_level_arg = getattr(args, "logging_level")
    if logging_level_arg is None:
        logging_level = "INFO"
    else:
        logging_level = logging_level_arg.upper()
    logging.basicConfig(
        filename=logging_file,
        level=logging_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if getattr(args, "create_config"):
        config_path = getattr(args, "config_path")
        bucket = getattr(args, "bucket")
        if config_path is None:
            raise ValueError("'-config' option is required")
        if bucket is None:
            raise ValueError("'-bucket' option is required")
        write_service_yaml(
            config_path,
            bucket,
            endpoint=getattr(args, "endpoint") or DEFAULT_ENDPOINT,
            token=getattr(args, "token"),
        )
        print(f"Configuration file written to: {config_path}")
        return

    # Collect arguments to process
    path = getattr(args, "object_path")
    object_name = getattr(args, "object_name")
    cid = getattr(args, "object_cid")

    if getattr(args, "client_encode"):
        if path is None:
            raise ValueError("'-path' option is required")
        out_path = getattr(args, "out_path")
        if out_path is None:
            raise ValueError("'-out' option is required")
        root_cid = CarStoreClient().encode(path, out_path)
        print(f"Root CID: {root_cid}")
        return

    carstore_c = CarStoreClient(build_service(args))
    if getattr(args, "client_storeblob"):
        if path is None:
            raise ValueError("'-path' option is required")
        stored_cid = carstore_c.store_blob(path, object_name)
        print(f"Stored CID: {stored_cid}")

    elif getattr(args, "client_storedir"):
        if path is None:
            raise ValueError("'-path' option is required")
        root_cid = carstore_c.store_directory(path, object_name)
        print(f"Root CID: {root_cid}")

    elif getattr(args, "client_storecar"):
        if path is None:
            raise ValueError("'-path' option is required")
        stored_cid = carstore_c.store_car(path, object_name)
        print(f"Stored CID: {stored_cid}")

    elif getattr(args, "client_status"):
        if cid is None:
            raise ValueError("'-cid' option is required")
        result = carstore_c.status(cid, object_name)
        print(f"CID: {result.cid}")
        print(f"Size: {result.size}")
        print(f"Pin Status: {result.pin.status}")
        print(f"Created: {result.created}")

    elif getattr(args, "client_delete"):
        if cid is None:
            raise ValueError("'-cid' option is required")
        carstore_c.delete(cid, object_name)
        print(f"Deleted: {object_name or cid}")


if __name__ == "__main__":
    main()
