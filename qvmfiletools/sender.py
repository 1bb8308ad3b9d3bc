"""Sending side of the inter-VM file copy: packs files into a stream."""

from __future__ import annotations

import argparse
import errno
import logging
import os
import struct
import sys
import zlib
from typing import BinaryIO, Callable, NoReturn, Optional

from .errors import ErrorReporter, FileCopyFatalError
from .filecopy import (
    PROGRESS_NOTIFY_DELTA,
    RESULT_EXT_FORMAT,
    RESULT_EXT_SIZE,
    S_IFDIR,
    S_IFREG,
    UNIX_EPOCH_OFFSET,
    CopyError,
    CopyStatus,
    FileHeader,
    ProgressType,
    ResultHeader,
    copy_file,
    is_dir,
    read_exact,
    status_to_string,
)

log = logging.getLogger(__name__)

MAX_PATH = 260
LAST_FILE_PREFIX = "; Last file: "
DIRECTORY_MODE = 0o755 | S_IFDIR
FILE_MODE = 0o644 | S_IFREG

_TICKS_PER_SECOND = 10_000_000
_NS_PER_SECOND = 1_000_000_000
_UINT32_MASK = 0xFFFFFFFF


def windows_time_to_unix(filetime: int) -> tuple:
    """Convert a FILETIME tick count to ``(seconds, nanoseconds)``."""
    nsec = (filetime % _TICKS_PER_SECOND) * 100
    sec = (filetime // _TICKS_PER_SECOND - UNIX_EPOCH_OFFSET) & _UINT32_MASK
    return sec, nsec


def _split_ns(value_ns: int) -> tuple:
    sec, nsec = divmod(value_ns, _NS_PER_SECOND)
    return sec & _UINT32_MASK, nsec


class ProgressTracker:
    """Accumulates sent bytes and reports progress in coarse steps."""

    def __init__(
        self,
        total: int = 0,
        callback: Optional[Callable[[int, ProgressType], None]] = None,
    ):
        self.total = total
        self.callback = callback
        self.written = 0
        self._reported = 0

    @property
    def percent(self) -> int:
        """Share of the total already written, in whole percent."""
        if self.total <= 0:
            return 0
        return 100 * self.written // self.total

    def update(self, size: int, progress_type=ProgressType.NORMAL) -> bool:
        """Add ``size`` bytes; return True if the callback was notified."""
        progress_type = ProgressType(progress_type)
        self.written += size
        if (
            self.written > self._reported + PROGRESS_NOTIFY_DELTA
            or progress_type is not ProgressType.NORMAL
        ):
            self._reported = self.written
            if self.callback is not None:
                self.callback(self.written, progress_type)
            return True
        return False


class Sender:
    """Writes files and directories to a transfer stream and checks the result."""

    def __init__(
        self,
        input_stream: BinaryIO,
        output_stream: BinaryIO,
        reporter: Optional[ErrorReporter] = None,
        progress: Optional[ProgressTracker] = None,
    ):
        self.input_stream = input_stream
        self.output_stream = output_stream
        self.reporter = reporter if reporter is not None else ErrorReporter()
        self.progress = progress
        self.crc = 0
        self.cancelled = False

    def _fatal(self, error_code: int, message: str) -> NoReturn:
        self.reporter.report(error_code, True, message)
        raise FileCopyFatalError(error_code, message)

    def _write_with_crc(self, data: bytes) -> bool:
        self.crc = zlib.crc32(data, self.crc)
        try:
            self.output_stream.write(data)
        except OSError as exc:
            log.error("write failed: %s", exc)
            return False
        return True

    def _flush(self) -> None:
        try:
            self.output_stream.flush()
        except OSError as exc:
            log.error("flush failed: %s", exc)

    def _remote_failed(self) -> NoReturn:
        # the remote side is expected to have reported why it stopped reading
        self.wait_for_result()
        raise FileCopyFatalError(errno.EPIPE, "sending data to the remote side failed")

    def _write_headers(self, header: FileHeader, name: str) -> None:
        try:
            encoded = name.encode("utf-8")
        except UnicodeEncodeError:
            self._fatal(errno.EINVAL, f"Cannot convert path '{name}' to UTF-8")
        header.namelen = len(encoded)
        if not (self._write_with_crc(header.pack()) and self._write_with_crc(encoded)):
            self._remote_failed()

    def _progress_callback(self):
        return self.progress.update if self.progress is not None else None

    def _send_single(self, local: str, name: str) -> None:
        try:
            st = os.stat(local)
        except OSError as exc:
            self._fatal(exc.errno or 0, f"Cannot get time of file '{name}'")
        atime, atime_nsec = _split_ns(st.st_atime_ns)
        mtime, mtime_nsec = _split_ns(st.st_mtime_ns)
        directory = is_dir(st.st_mode)
        header = FileHeader(
            mode=DIRECTORY_MODE if directory else FILE_MODE,
            atime=atime,
            atime_nsec=atime_nsec,
            mtime=mtime,
            mtime_nsec=mtime_nsec,
        )
        if directory:
            header.filelen = 0
            self._write_headers(header, name)
            return
        try:
            source = open(local, "rb")
        except OSError as exc:
            self._fatal(exc.errno or 0, f"Cannot open file '{name}'")
        with source:
            try:
                header.filelen = os.fstat(source.fileno()).st_size
            except OSError as exc:
                self._fatal(exc.errno or 0, f"Cannot get size of file '{name}'")
            self._write_headers(header, name)
            try:
                self.crc = copy_file(
                    self.output_stream,
                    source,
                    header.filelen,
                    self.crc,
                    self._progress_callback(),
                )
            except CopyError as exc:
                if exc.status is CopyStatus.WRITE_ERROR:
                    self._remote_failed()
                self._fatal(
                    errno.EIO,
                    f"Error copying file '{name}': {status_to_string(exc.status)}",
                )

    def _walk(self, local: str, name: str, calculate: bool) -> int:
        try:
            st = os.stat(local)
        except OSError as exc:
            self._fatal(exc.errno or 0, f"Cannot get attributes of '{name}'")
        if not calculate:
            self._send_single(local, name)
        if not is_dir(st.st_mode):
            return st.st_size if calculate else 0
        try:
            entries = sorted(os.listdir(local))
        except OSError as exc:
            self._fatal(exc.errno or 0, f"Cannot list directory '{name}'")
        size = 0
        for entry in entries:
            # forward slashes are what the other end expects
            size += self._walk(os.path.join(local, entry), f"{name}/{entry}", calculate)
            if self.cancelled:
                break
        # directory metadata is sent again so the times come out right
        if not calculate:
            self._send_single(local, name)
        return size

    def total_size(self, path) -> int:
        """Total size in bytes of the files at or below ``path``."""
        path = os.fspath(path)
        return self._walk(path, path, calculate=True)

    def send_path(self, path) -> None:
        """Send ``path`` (a file or a whole directory) under its base name."""
        path = os.fspath(path)
        absolute = path if os.path.isabs(path) else os.path.join(os.getcwd(), path)
        separators = tuple(sep for sep in (os.sep, os.altsep) if sep)
        if len(absolute) > 1 and absolute.endswith(separators):
            absolute = absolute[:-1]
        base = os.path.basename(absolute)
        if not base:
            self._fatal(errno.EINVAL, f"Cannot determine the name of '{path}'")
        self._walk(absolute, base, calculate=False)

    def wait_for_result(self) -> ResultHeader:
        """Read the remote result; raise FileCopyFatalError on failure."""
        self._flush()
        try:
            header = ResultHeader.unpack(read_exact(self.input_stream, ResultHeader.SIZE))
        except (EOFError, OSError) as exc:
            log.error("reading result failed: %s", exc)
            raise FileCopyFatalError(errno.EIO, "no result received from remote") from None
        try:
            (namelen,) = struct.unpack(
                RESULT_EXT_FORMAT, read_exact(self.input_stream, RESULT_EXT_SIZE)
            )
        except (EOFError, OSError):
            # the remote uses the result header without the extension
            namelen = 0
        namelen = min(namelen, MAX_PATH)
        try:
            raw_name = read_exact(self.input_stream, namelen)
        except (EOFError, OSError):
            print("Failed to get last filename", file=sys.stderr)
            log.error("Failed to get last filename")
            raw_name = b""
        last_name = raw_name.decode("utf-8", "replace")
        suffix = f"{LAST_FILE_PREFIX}{last_name}" if raw_name else ""

        code = header.error_code
        if code == errno.EEXIST:
            self._fatal(
                errno.EEXIST,
                "File copy: not overwriting existing file. "
                f"Clean incoming dir, and retry copy{suffix}",
            )
        elif code == errno.EINVAL:
            self._fatal(errno.EINVAL, f"File copy: Corrupted data from packer{suffix}")
        elif code != 0:
            self._fatal(0, f"File copy: {os.strerror(code)}{suffix}")

        if header.crc32 != self.crc:
            self._fatal(0, "File transfer failed: checksum mismatch")
        return header

    def finish(self) -> ResultHeader:
        """Send the end-of-transfer marker and wait for the result."""
        self._write_with_crc(FileHeader().pack())
        return self.wait_for_result()


def main(argv=None) -> int:
    """Send the given files and directories over standard output."""
    parser = argparse.ArgumentParser(
        description="Send files and directories to another VM over standard output."
    )
    parser.add_argument("paths", nargs="*", help="files or directories to send")
    args = parser.parse_args(argv)

    tracker = ProgressTracker()

    def show(written: int, progress_type: ProgressType) -> None:
        if progress_type is ProgressType.NORMAL and written:
            log.info("sent %d%%", tracker.percent)
        else:
            log.info("progress: %s", progress_type.name.lower())

    tracker.callback = show
    reporter = ErrorReporter(
        sys.stderr,
        lambda failed: show(0, ProgressType.ERROR if failed else ProgressType.NORMAL),
    )
    sender = Sender(sys.stdin.buffer, sys.stdout.buffer, reporter, tracker)
    try:
        tracker.update(0, ProgressType.INIT)
        total = 0
        for path in args.paths:
            if sender.cancelled:
                break
            total += sender.total_size(path)
        tracker.total = total
        for path in args.paths:
            if sender.cancelled:
                break
            sender.send_path(path)
        sender.finish()
        tracker.update(0, ProgressType.DONE)
    except FileCopyFatalError as exc:
        log.error("file copy failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())