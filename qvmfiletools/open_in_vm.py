"""Send a file to a disposable VM for viewing and take back the edited copy."""

from __future__ import annotations

import argparse
import errno
import logging
import os
import shutil
import sys
import tempfile
from typing import BinaryIO

from .errors import ErrorReporter, FileCopyFatalError
from .filecopy import DVM_FILENAME_SIZE

log = logging.getLogger(__name__)

_TEMP_PREFIX = "qvm"


def _fatal(error_code: int, message: str) -> None:
    ErrorReporter().report(error_code, True, message)
    raise FileCopyFatalError(error_code, message)


def padded_filename(path: str) -> bytes:
    """Base name of ``path`` as UTF-8, NUL padded to the fixed wire size.

    Names that do not fit keep their last bytes, leaving room for a NUL.
    """
    base = path[max(path.rfind("\\"), path.rfind("/")) + 1 :]
    try:
        encoded = base.encode("utf-8")
    except UnicodeEncodeError:
        _fatal(errno.EINVAL, f"Failed to convert filename '{base}' to UTF8")
    if len(encoded) >= DVM_FILENAME_SIZE:
        encoded = encoded[len(encoded) - DVM_FILENAME_SIZE + 1 :]
    nul = encoded.find(b"\0")
    if nul >= 0:
        encoded = encoded[:nul]
    return encoded.ljust(DVM_FILENAME_SIZE, b"\0")


def send_file(path, output: BinaryIO) -> None:
    """Write the padded file name followed by the file's contents."""
    path = os.fspath(path)
    try:
        source = open(path, "rb")
    except OSError as exc:
        _fatal(exc.errno or 0, f"open '{path}'")
    with source:
        header = padded_filename(path)
        try:
            output.write(header)
        except OSError as exc:
            _fatal(exc.errno or 0, "send filename to dispVM")
        try:
            shutil.copyfileobj(source, output)
            output.flush()
        except OSError as exc:
            _fatal(exc.errno or 0, "send file to dispVM")
    print("File sent", file=sys.stderr)


def _move_replacing(source: str, destination: str) -> None:
    try:
        os.replace(source, destination)
    except OSError:
        shutil.copyfile(source, destination)
        os.unlink(source)


def receive_file(path, input_stream: BinaryIO) -> bool:
    """Replace ``path`` with the data read from ``input_stream``.

    Empty data leaves the file untouched. Returns True if it was replaced.
    """
    path = os.fspath(path)
    try:
        fd, temp_path = tempfile.mkstemp(prefix=_TEMP_PREFIX)
    except OSError as exc:
        _fatal(exc.errno or 0, "Failed to get temp file")
    try:
        with os.fdopen(fd, "wb") as temp_file:
            try:
                shutil.copyfileobj(input_stream, temp_file)
                temp_file.flush()
            except OSError as exc:
                _fatal(exc.errno or 0, "receiving file from dispVM")
            size = os.fstat(temp_file.fileno()).st_size
        if size == 0:
            os.unlink(temp_path)
            return False
        try:
            _move_replacing(temp_path, path)
        except OSError as exc:
            _fatal(exc.errno or 0, "rename")
        return True
    finally:
        if os.path.exists(temp_path):
            os.unlink(temp_path)


def main(argv=None) -> int:
    """Send a file to a disposable VM and store the copy it returns."""
    parser = argparse.ArgumentParser(
        description="Open a file in a disposable VM and take back the result."
    )
    parser.add_argument("paths", nargs="*", help="the file to open")
    args = parser.parse_args(argv)
    try:
        if len(args.paths) != 1:
            _fatal(errno.EINVAL, "OpenInVM - no file given?")
        print("OpenInVM starting", file=sys.stderr)
        path = args.paths[0]
        send_file(path, sys.stdout.buffer)
        sys.stdout.buffer.close()
        receive_file(path, sys.stdin.buffer)
    except FileCopyFatalError as exc:
        log.error("open in VM failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())