"""Receiving side of the inter-VM file copy: unpacks a stream into a directory."""

from __future__ import annotations

import argparse
import errno
import logging
import os
import re
import struct
import sys
import zlib
from pathlib import Path
from typing import BinaryIO, List, Optional

from .filecopy import (
    EDQUOT,
    ENAMETOOLONG,
    LEGAL_EOF,
    MAX_PATH_LENGTH,
    CopyError,
    FileHeader,
    ResultHeader,
    copy_file,
    is_dir,
    is_lnk,
    is_reg,
    read_exact,
)

log = logging.getLogger(__name__)

MAX_PATH = 260
INCOMING_DIR_ROOT = "QubesIncoming"
_DRIVE_PREFIX_LEN = len("X:\\")
_ERROR_PRIVILEGE_NOT_HELD = 1314
_HEX = "0123456789abcdef"


class TransferAborted(Exception):
    """The transfer stops with ``status``, naming the last file if known."""

    def __init__(self, status: int, last_name: Optional[bytes] = None):
        self.status = status
        self.last_name = last_name
        super().__init__(f"transfer aborted with status {status}")


def _is_continuation(byte: int) -> bool:
    return (byte & 0xC0) == 0x80


def decode_untrusted_name(data: bytes, limit: int = MAX_PATH) -> str:
    """Decode an untrusted UTF-8 path leniently.

    Colons become underscores, invalid bytes that are printable map 1:1 to
    the same code point and other invalid bytes become two hex digits.
    Decoding stops at the first NUL byte. ``limit`` counts UTF-16 units
    including a terminator; a longer result raises ValueError.
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")
    capacity = limit - 1
    nul = data.find(b"\0")
    if nul >= 0:
        data = data[:nul]
    n = len(data)
    out: List[str] = []
    units = 0
    pos = 0
    while pos < n:
        c = data[pos]
        pos += 1
        if units >= capacity:
            raise ValueError("name too long")
        if c < 0x80:
            out.append("_" if c == 0x3A else chr(c))
            units += 1
        elif 0xC2 <= c < 0xE0 and pos < n and _is_continuation(data[pos]):
            out.append(chr(((c & 0x1F) << 6) | (data[pos] & 0x3F)))
            pos += 1
            units += 1
        elif (
            0xE0 <= c < 0xF0
            and pos + 1 < n
            and not (c == 0xE0 and data[pos] < 0xA0)
            and _is_continuation(data[pos])
            and _is_continuation(data[pos + 1])
        ):
            code = ((c & 0x0F) << 12) | ((data[pos] & 0x3F) << 6) | (data[pos + 1] & 0x3F)
            out.append(chr(code))
            pos += 2
            units += 1
        elif (
            0xF0 <= c < 0xF5
            and pos + 2 < n
            and units + 1 < capacity
            and not (c == 0xF0 and data[pos] < 0x90)
            and not (c == 0xF4 and data[pos] >= 0x90)
            and _is_continuation(data[pos])
            and _is_continuation(data[pos + 1])
            and _is_continuation(data[pos + 2])
        ):
            code = (
                ((c & 0x07) << 18)
                | ((data[pos] & 0x3F) << 12)
                | ((data[pos + 1] & 0x3F) << 6)
                | (data[pos + 2] & 0x3F)
            )
            out.append(chr(code))
            pos += 3
            units += 2
        elif c >= 0xA0:
            out.append(chr(c))
            units += 1
        else:
            out.append(_HEX[c >> 4])
            units += 1
            if units < capacity:
                out.append(_HEX[c & 0x0F])
                units += 1
    return "".join(out)


def _utf16_units(text: str) -> int:
    return len(text.encode("utf-16-le", "surrogatepass")) // 2


def incoming_directory(documents, remote_domain: str) -> Path:
    """Directory that receives files sent from ``remote_domain``."""
    return Path(documents) / INCOMING_DIR_ROOT / remote_domain


class Receiver:
    """Unpacks a file transfer stream below ``root``."""

    def __init__(
        self,
        root,
        input_stream: BinaryIO,
        output_stream: BinaryIO,
        bytes_limit: int = 0,
        files_limit: int = 0,
    ):
        self.root = Path(root)
        self.input_stream = input_stream
        self.output_stream = output_stream
        self.bytes_limit = bytes_limit
        self.files_limit = files_limit
        self.total_bytes = 0
        self.total_files = 0
        self.crc = 0
        self._last_name: Optional[bytes] = None

    def _read_with_crc(self, size: int) -> bytes:
        data = read_exact(self.input_stream, size)
        self.crc = zlib.crc32(data, self.crc)
        return data

    def send_status(self, status: int, last_name: Optional[bytes] = None) -> None:
        """Write the result header, followed by the last file name if given."""
        log.debug("status %d", status)
        payload = ResultHeader(status, self.crc).pack()
        if last_name is not None:
            payload += struct.pack("<I", len(last_name)) + last_name
        try:
            self.output_stream.write(payload)
            self.output_stream.flush()
        except OSError as exc:
            log.error("sending status failed: %s", exc)

    def receive_files(self) -> int:
        """Receive entries until the end marker; return the status sent back."""
        self.crc = 0
        try:
            while True:
                try:
                    raw = self._read_with_crc(FileHeader.SIZE)
                except EOFError:
                    status = errno.EIO
                    break
                header = FileHeader.unpack(raw)
                if header.namelen == 0:
                    status = 0
                    break
                self.process_entry(header)
                self.total_files += 1
                if self.files_limit and self.total_files > self.files_limit:
                    raise TransferAborted(EDQUOT, self._last_name)
        except TransferAborted as exc:
            status = 0 if exc.status == LEGAL_EOF else exc.status
            log.debug("transfer aborted: status %d, last file %r", status, exc.last_name)
            self.send_status(status, exc.last_name)
            return status
        self.send_status(status)
        return status

    def process_entry(self, header: FileHeader) -> None:
        """Read the entry's name and create it. Raises TransferAborted."""
        if header.namelen > MAX_PATH_LENGTH - 1:
            raise TransferAborted(ENAMETOOLONG)
        try:
            raw_name = self._read_with_crc(header.namelen)
        except EOFError:
            raise TransferAborted(LEGAL_EOF) from None
        nul = raw_name.find(b"\0")
        name = raw_name if nul < 0 else raw_name[:nul]
        self._last_name = name
        if is_reg(header.mode):
            self._process_regular_file(header, name)
        elif is_lnk(header.mode):
            self._process_link(header, name)
        elif is_dir(header.mode):
            self._process_directory(name)
        else:
            raise TransferAborted(errno.EINVAL, name)

    def _decode_path(self, name: bytes) -> Path:
        try:
            decoded = decode_untrusted_name(name)
        except ValueError:
            raise TransferAborted(errno.EINVAL) from None
        if not decoded:
            raise TransferAborted(errno.EINVAL)
        if _DRIVE_PREFIX_LEN + _utf16_units(decoded) > MAX_PATH:
            raise TransferAborted(errno.EINVAL, name)
        return self._resolve(decoded)

    def _resolve(self, name: str) -> Path:
        parts: List[str] = []
        for part in re.split(r"[\\/]", name):
            if part in ("", "."):
                continue
            if part == "..":
                if parts:
                    parts.pop()
                continue
            parts.append(part)
        return self.root.joinpath(*parts)

    def _check_contained(self, path: Path, name: bytes) -> None:
        root_real = os.path.realpath(self.root)
        parent_real = os.path.realpath(path.parent)
        if os.path.commonpath([root_real, parent_real]) != root_real:
            raise TransferAborted(errno.EACCES, name)

    def _process_regular_file(self, header: FileHeader, name: bytes) -> None:
        path = self._decode_path(name)
        log.debug("file '%s'", path)
        self._check_contained(path, name)
        try:
            output = open(path, "xb")
        except FileExistsError:
            raise TransferAborted(errno.EEXIST, name) from None
        except PermissionError:
            raise TransferAborted(errno.EACCES, name) from None
        except (OSError, ValueError):
            raise TransferAborted(errno.EIO, name) from None
        with output:
            self.total_bytes += header.filelen
            if self.bytes_limit and self.total_bytes > self.bytes_limit:
                raise TransferAborted(EDQUOT, name)
            try:
                self.crc = copy_file(output, self.input_stream, header.filelen, self.crc)
            except CopyError:
                raise TransferAborted(errno.EIO, name) from None

    def _process_directory(self, name: bytes) -> None:
        path = self._decode_path(name)
        log.debug("dir '%s'", path)
        self._check_contained(path, name)
        try:
            path.mkdir()
        except FileExistsError:
            pass
        except (OSError, ValueError):
            raise TransferAborted(errno.ENOTDIR, name) from None

    def _process_link(self, header: FileHeader, name: bytes) -> None:
        path = self._decode_path(name)
        log.debug("link '%s'", path)
        if header.filelen > MAX_PATH - 1:
            raise TransferAborted(ENAMETOOLONG, name)
        try:
            raw_target = self._read_with_crc(header.filelen)
        except EOFError:
            raise TransferAborted(errno.EIO, name) from None
        try:
            target = decode_untrusted_name(raw_target)
        except ValueError:
            raise TransferAborted(errno.EINVAL, name) from None
        if not target:
            raise TransferAborted(errno.EINVAL, name)
        log.debug("target '%s'", target)
        if target.startswith(("/", "\\")):
            raise TransferAborted(errno.EPERM, name)
        self._check_contained(path, name)
        absolute_target = self._resolve(
            os.path.join(str(path.parent.relative_to(self.root)), target)
        )
        target_is_file = absolute_target.exists() and not absolute_target.is_dir()
        try:
            os.symlink(target, path, target_is_directory=not target_is_file)
        except FileExistsError:
            raise TransferAborted(errno.EEXIST, name) from None
        except PermissionError:
            raise TransferAborted(errno.EACCES, name) from None
        except OSError as exc:
            if getattr(exc, "winerror", None) == _ERROR_PRIVILEGE_NOT_HELD:
                raise TransferAborted(errno.EACCES, name) from None
            raise TransferAborted(errno.EIO, name) from None
        except (NotImplementedError, ValueError):
            raise TransferAborted(errno.EIO, name) from None


def main(argv=None) -> int:
    """Receive files from standard input into the incoming directory."""
    parser = argparse.ArgumentParser(
        description="Receive files sent by another VM into the incoming directory."
    )
    parser.parse_args(argv)

    remote_domain = os.environ.get("QREXEC_REMOTE_DOMAIN")
    if not remote_domain:
        print("QREXEC_REMOTE_DOMAIN is not set", file=sys.stderr)
        return 1
    target = incoming_directory(Path.home() / "Documents", remote_domain)
    try:
        target.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"cannot create {target}: {exc}", file=sys.stderr)
        return 1
    receiver = Receiver(target, sys.stdin.buffer, sys.stdout.buffer)
    return receiver.receive_files()


if __name__ == "__main__":
    sys.exit(main())