"""File-like resources accepted by the packer and the token encoder"""

import io
import mimetypes
import os
import time
from pathlib import Path


class Blob(object):
    """An immutable sequence of bytes with a known size and a MIME type.

    `parts` may be bytes, a string (encoded as utf-8), another `Blob`, or a list of
    any of those, concatenated in order. Blobs are the resource values of a token
    record: any `Blob` found in a record is stored and replaced by its URL.

    :param parts: Content of the blob.
    :param str type: MIME type of the content (ex. "image/png").
    """

    def __init__(self, parts=None, type=""):
        # pylint: disable=W0622
        self._data = _join_parts(parts)
        self._path = None
        self._size = len(self._data)
        self.type = type or ""

    @property
    def size(self):
        """Size of the content in bytes"""
        return self._size

    def stream(self, buffer_size=None):
        """Yield the content as a sequence of byte chunks. Every call starts over
        from the first byte.

        :param int buffer_size: Preferred size of the chunks.
        """
        if self._path is None:
            buffer_size = buffer_size or 65536
            for offset in range(0, self._size, buffer_size):
                yield self._data[offset : offset + buffer_size]
            return
        with Stream(self._path, buffer_size) as stream:
            yield from stream

    def read_bytes(self):
        """Return the whole content as bytes."""
        if self._path is None:
            return self._data
        return b"".join(self.stream())

    def __repr__(self):
        return f"{type(self).__name__}(size={self.size}, type={self.type!r})"


class File(Blob):
    """A `Blob` with a name and a last modified timestamp. When a `File` is part of
    a directory, its name is its path relative to that directory.

    :param parts: Content of the file.
    :param str name: File name or relative path (ex. "images/cat.png").
    :param str type: MIME type of the content.
    :param int last_modified: Milliseconds since the epoch.
    """

    def __init__(self, parts, name, type="", last_modified=None):
        # pylint: disable=W0622
        super().__init__(parts, type)
        self.name = name
        if last_modified is None:
            last_modified = int(time.time() * 1000)
        self.last_modified = last_modified

    @classmethod
    def from_path(cls, path, name=None, type=None):
        """Create a `File` whose content is read lazily from disk.

        :param path: Path to a regular file.
        :type path: str, os.PathLike
        :param str name: Name to give the file, defaults to the path's base name.
        :param str type: MIME type, guessed from the file extension when omitted.

        :return: File backed by `path`.
        :rtype: File
        """
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        if type is None:
            type = mimetypes.guess_type(path.name)[0] or ""
        file_stat = path.stat()
        file = cls(None, name or path.name, type, int(file_stat.st_mtime * 1000))
        file._path = path.as_posix()
        file._size = file_stat.st_size
        return file

    def __repr__(self):
        return (
            f"File(name={self.name!r}, size={self.size}, type={self.type!r})"
        )


def _join_parts(parts):
    if parts is None:
        return b""
    if not isinstance(parts, (list, tuple)):
        parts = [parts]
    chunks = []
    for part in parts:
        if isinstance(part, Blob):
            chunks.append(part.read_bytes())
        elif isinstance(part, str):
            chunks.append(part.encode("utf-8"))
        elif isinstance(part, (bytes, bytearray, memoryview)):
            chunks.append(bytes(part))
        else:
            raise TypeError(
                "Blob parts must be bytes, str or Blob objects."
                + f" Part type supplied: {type(part)}"
            )
    return b"".join(chunks)


class Stream(object):
    """Re-readable byte source over a file path or an open binary object.

    A path is opened on creation and closed by `close`. An object passed in stays
    open: `close` only puts it back where it was found. Every iteration starts
    from that position, so the same stream can be hashed, then packed.

    :param obj: Path of a regular file or a readable, seekable binary object.
    :param int buffer_size: Size of the chunks yielded, the file system block size
        when omitted.
    """

    def __init__(self, obj, buffer_size=None):
        if hasattr(obj, "read"):
            self._owned = False
            self._start = obj.tell()
        elif isinstance(obj, (str, os.PathLike)) and os.path.isfile(obj):
            obj = io.open(obj, "rb")
            self._owned = True
            self._start = 0
        else:
            raise ValueError("Object must be a valid file path or a readable object")
        self._obj = obj
        self._buffer_size = buffer_size or _block_size(obj)

    def __iter__(self):
        self._obj.seek(self._start)
        for data in iter(lambda: self._obj.read(self._buffer_size), b""):
            yield data
        if not self._owned:
            self._obj.seek(self._start)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        if self._owned:
            self._obj.close()
        else:
            self._obj.seek(self._start)


def _block_size(obj):
    try:
        return os.fstat(obj.fileno()).st_blksize
    except (AttributeError, OSError, io.UnsupportedOperation):
        return 8192
