"""Wire structures and the data-copy loop shared by the file transfer services."""

from __future__ import annotations

import enum
import logging
import struct
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional

log = logging.getLogger(__name__)

FILECOPY_VMNAME_SIZE = 32
PROGRESS_NOTIFY_DELTA = 1_000_000
MAX_PATH_LENGTH = 16384
LEGAL_EOF = 31415926
DVM_FILENAME_SIZE = 256
COPY_CHUNK_SIZE = 4096

UNIX_EPOCH_OFFSET = 11644478640

ENAMETOOLONG = 36
EDQUOT = 122

S_IFMT = 0o170000
S_IFSOCK = 0o140000
S_IFLNK = 0o120000
S_IFREG = 0o100000
S_IFBLK = 0o060000
S_IFDIR = 0o040000
S_IFCHR = 0o020000
S_IFIFO = 0o010000
S_ISUID = 0o004000
S_ISGID = 0o002000
S_ISVTX = 0o001000

RESULT_EXT_FORMAT = "<I"
RESULT_EXT_SIZE = struct.calcsize(RESULT_EXT_FORMAT)


def is_reg(mode: int) -> bool:
    """True if the mode describes a regular file."""
    return (mode & S_IFMT) == S_IFREG


def is_dir(mode: int) -> bool:
    """True if the mode describes a directory."""
    return (mode & S_IFMT) == S_IFDIR


def is_lnk(mode: int) -> bool:
    """True if the mode describes a symbolic link."""
    return (mode & S_IFMT) == S_IFLNK


@dataclass
class FileHeader:
    """Header preceding every entry of a file transfer stream."""

    namelen: int = 0
    mode: int = 0
    filelen: int = 0
    atime: int = 0
    atime_nsec: int = 0
    mtime: int = 0
    mtime_nsec: int = 0

    FORMAT = "<IIQIIII"
    SIZE = struct.calcsize(FORMAT)

    def pack(self) -> bytes:
        return struct.pack(
            self.FORMAT,
            self.namelen,
            self.mode,
            self.filelen,
            self.atime,
            self.atime_nsec,
            self.mtime,
            self.mtime_nsec,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "FileHeader":
        if len(data) != cls.SIZE:
            raise ValueError(f"file header must be {cls.SIZE} bytes, got {len(data)}")
        return cls(*struct.unpack(cls.FORMAT, data))


@dataclass
class ResultHeader:
    """Status and checksum sent back by the receiving side."""

    error_code: int = 0
    crc32: int = 0

    FORMAT = "<IIQ"
    SIZE = struct.calcsize(FORMAT)

    def pack(self) -> bytes:
        return struct.pack(self.FORMAT, self.error_code, 0, self.crc32)

    @classmethod
    def unpack(cls, data: bytes) -> "ResultHeader":
        if len(data) != cls.SIZE:
            raise ValueError(f"result header must be {cls.SIZE} bytes, got {len(data)}")
        error_code, _pad, crc = struct.unpack(cls.FORMAT, data)
        return cls(error_code, crc)


class CopyStatus(enum.IntEnum):
    OK = 0
    READ_EOF = 1
    READ_ERROR = 2
    WRITE_ERROR = 3


class ProgressType(enum.IntEnum):
    NORMAL = 0
    INIT = 1
    DONE = 2
    ERROR = 3


_STATUS_TEXT = {
    CopyStatus.OK: "OK",
    CopyStatus.READ_EOF: "Unexpected end of data while reading",
    CopyStatus.READ_ERROR: "Error reading",
    CopyStatus.WRITE_ERROR: "Error writing",
}


def status_to_string(status) -> str:
    """Human readable description of a copy status."""
    try:
        return _STATUS_TEXT[CopyStatus(status)]
    except ValueError:
        log.warning("Unknown status: %s", status)
        return "Unknown error"


class CopyError(Exception):
    """A file copy stopped before all data was transferred."""

    def __init__(self, status: CopyStatus):
        self.status = CopyStatus(status)
        super().__init__(status_to_string(self.status))


def read_exact(stream: BinaryIO, size: int) -> bytes:
    """Read exactly ``size`` bytes, raising EOFError if the stream ends first."""
    parts = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            raise EOFError(f"expected {size} bytes, got {size - remaining}")
        parts.append(chunk)
        remaining -= len(chunk)
    return b"".join(parts)


def _write_all(output: BinaryIO, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = output.write(view)
        if written is None:
            written = len(view)
        if written <= 0:
            raise OSError("write made no progress")
        view = view[written:]


def copy_file(
    output: BinaryIO,
    input_stream: BinaryIO,
    size: int,
    crc: Optional[int] = None,
    progress: Optional[Callable[[int, ProgressType], None]] = None,
) -> Optional[int]:
    """Copy ``size`` bytes from ``input_stream`` to ``output``.

    If ``crc`` is given, the CRC-32 is accumulated over the copied data and
    the updated value is returned. Raises CopyError on failure.
    """
    transferred = 0
    while transferred < size:
        to_read = min(COPY_CHUNK_SIZE, size - transferred)
        try:
            chunk = input_stream.read(to_read)
        except OSError as exc:
            log.error("read failed: %s", exc)
            raise CopyError(CopyStatus.READ_ERROR) from exc
        if not chunk:
            raise CopyError(CopyStatus.READ_EOF)
        if crc is not None:
            crc = zlib.crc32(chunk, crc)
        try:
            _write_all(output, chunk)
        except OSError as exc:
            raise CopyError(CopyStatus.WRITE_ERROR) from exc
        if progress is not None:
            progress(len(chunk), ProgressType.NORMAL)
        transferred += len(chunk)
    return crc