"""Transport Interface"""

from abc import ABC, abstractmethod
from collections import namedtuple


class Transport(ABC):
    """Transport is the remote object store an archive is delivered to. Only the
    calls needed to deliver an archive through a multipart upload, look it up and
    remove it again are part of the interface: it is not a general object storage
    client.

    Implementations must be safe to call from several threads at once, since the
    parts of one upload are sent concurrently."""

    @abstractmethod
    def create_multipart_upload(self, bucket, key, metadata):
        """Open a multipart upload session for an object. The metadata given here is
        stored with the object once the session is completed, and is returned
        verbatim by `head_object`.

        :param str bucket: Name of the bucket.
        :param str key: Key of the object.
        :param dict metadata: Custom metadata to tag the object with
            (ex. {"import": "car", "cid": "bafy..."}).

        :return: str - Identifier of the upload session.
        """
        raise NotImplementedError()

    @abstractmethod
    def upload_part(self, bucket, key, upload_id, part_number, body, progress):
        """Upload one part of an open multipart upload session. While the body is
        being sent, `progress` is called with the cumulative number of bytes of this
        part sent so far. Values must be numbers that never decrease and never
        exceed `len(body)`.

        :param str bucket: Name of the bucket.
        :param str key: Key of the object.
        :param str upload_id: Identifier of the upload session.
        :param int part_number: 1-based position of the part in the object.
        :param bytes body: Content of the part.
        :param callable progress: Called with the cumulative bytes sent.

        :return: str - Entity tag of the stored part.
        """
        raise NotImplementedError()

    @abstractmethod
    def complete_multipart_upload(self, bucket, key, upload_id, parts):
        """Assemble the uploaded parts into the final object.

        :param str bucket: Name of the bucket.
        :param str key: Key of the object.
        :param str upload_id: Identifier of the upload session.
        :param list parts: (part number, entity tag) pairs, in part order.
        """
        raise NotImplementedError()

    @abstractmethod
    def abort_multipart_upload(self, bucket, key, upload_id):
        """Discard an upload session and every part uploaded to it.

        :param str bucket: Name of the bucket.
        :param str key: Key of the object.
        :param str upload_id: Identifier of the upload session.
        """
        raise NotImplementedError()

    @abstractmethod
    def head_object(self, bucket, key):
        """Look up the stored record of an object without fetching its content.

        :param str bucket: Name of the bucket.
        :param str key: Key of the object.

        :return: StoredObject - Key, size, last modified date and custom metadata.

        :raises ObjectNotFoundError: If there is no object for `key`.
        """
        raise NotImplementedError()

    @abstractmethod
    def delete_object(self, bucket, key):
        """Remove an object unconditionally. No existence check is made first.

        :param str bucket: Name of the bucket.
        :param str key: Key of the object.
        """
        raise NotImplementedError()

    @abstractmethod
    def backoff(self, attempt):
        """Return the number of seconds to wait before attempt number `attempt + 1`
        of a failed request.

        :param int attempt: 1-based number of the attempt that just failed.

        :return: float - Seconds to sleep.
        """
        raise NotImplementedError()


class StoredObject(
    namedtuple("StoredObject", ["key", "size", "last_modified", "metadata"])
):
    """Represents the remote record of a stored object as returned by
    `Transport.head_object`. Any field may be None when the remote store does not
    return it.

    :param str key: Key of the object.
    :param int size: Content length in bytes.
    :param datetime last_modified: Last modified date of the object.
    :param dict metadata: Custom metadata tags (ex. {"cid": "bafy..."}).
    """

    # Default value to prevent dangerous default value
    def __new__(cls, key, size=None, last_modified=None, metadata=None):
        return super(StoredObject, cls).__new__(
            cls, key, size, last_modified, metadata or {}
        )
