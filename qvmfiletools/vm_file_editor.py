"""Disposable VM side of open-in-VM: receive a file, open it, send it back if changed."""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import uuid
from typing import BinaryIO, Callable, Optional

from .filecopy import DVM_FILENAME_SIZE, read_exact

log = logging.getLogger(__name__)

_REPLACED_CHARACTERS = frozenset(b" !?\"#$%^&*()[]<>;`~")


def sanitize_filename(raw: bytes) -> str:
    """Turn the fixed-size untrusted file name field into a safe base name.

    Raises ValueError for names holding path separators or invalid UTF-8.
    """
    raw = bytes(raw[:DVM_FILENAME_SIZE])
    nul = raw.find(b"\0")
    if nul >= 0:
        raw = raw[:nul]
    if b"/" in raw:
        raise ValueError("filename contains /")
    if b"\\" in raw:
        raise ValueError("filename contains \\")
    cleaned = bytes(ord("_") if byte in _REPLACED_CHARACTERS else byte for byte in raw)
    try:
        name = cleaned.decode("utf-8")
    except UnicodeDecodeError:
        raise ValueError("Invalid file name") from None
    if not name:
        raise ValueError("empty file name")
    return name


def receive_file(path, input_stream: BinaryIO) -> None:
    """Create ``path`` (which must not exist) from the rest of ``input_stream``."""
    with open(path, "xb") as local:
        shutil.copyfileobj(input_stream, local)


def send_file(path, output: BinaryIO) -> None:
    """Copy the contents of ``path`` to ``output``."""
    with open(path, "rb") as local:
        shutil.copyfileobj(local, output)
    output.flush()


def _default_opener(path: str) -> int:
    if sys.platform == "win32":
        command = ["cmd", "/c", "start", "", "/wait", path]
    elif sys.platform == "darwin":
        command = ["open", "-W", path]
    else:
        command = ["xdg-open", path]
    return subprocess.run(command, check=False).returncode


def edit(
    input_stream: BinaryIO,
    output_stream: BinaryIO,
    opener: Optional[Callable[[str], int]] = None,
) -> int:
    """Receive a file, open it and send it back if it was modified.

    Returns the editor's exit code; the file is sent back only when that is 0.
    Raises ValueError for a bad file name and OSError for I/O failures.
    """
    if opener is None:
        opener = _default_opener
    try:
        raw = read_exact(input_stream, DVM_FILENAME_SIZE)
    except EOFError:
        raise ValueError("Failed get filename") from None
    name = sanitize_filename(raw)

    temp_dir = os.path.join(tempfile.gettempdir(), str(uuid.uuid4()))
    os.makedirs(temp_dir, exist_ok=True)
    path = os.path.join(temp_dir, name)
    try:
        receive_file(path, input_stream)
        before = os.stat(path).st_mtime_ns
        log.debug("Opening '%s'", path)
        code = opener(path)
        if code != 0:
            log.error("Process exit code: 0x%x", code)
            print(f"Editor failed: 0x{code:x}", file=sys.stderr)
            return code
        after = os.stat(path).st_mtime_ns
        if before != after:
            send_file(path, output_stream)
        return 0
    finally:
        if os.path.exists(path):
            os.unlink(path)
        try:
            os.rmdir(temp_dir)
        except OSError:
            pass


def main(argv=None) -> int:
    """Edit the file arriving on standard input and return the result."""
    parser = argparse.ArgumentParser(
        description="Open a file received on standard input and send it back if edited."
    )
    parser.parse_args(argv)
    try:
        return edit(sys.stdin.buffer, sys.stdout.buffer)
    except FileExistsError:
        print("File already exists, cleanup temp directory", file=sys.stderr)
    except (OSError, ValueError) as exc:
        print(f"File editing failed: {exc}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())