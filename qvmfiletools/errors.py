"""Reporting of file copy errors to the user and the transfer log."""

from __future__ import annotations

import logging
import os
import sys
from typing import Callable, Optional, TextIO

log = logging.getLogger(__name__)

MESSAGE_LIMIT = 1024


class FileCopyFatalError(Exception):
    """A fatal file copy error that ends the operation."""

    def __init__(self, error_code: int, message: str):
        self.error_code = error_code
        super().__init__(message)


class ErrorReporter:
    """Formats error messages, writes them out and notifies a callback."""

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        callback: Optional[Callable[[bool], None]] = None,
    ):
        self.stream = stream if stream is not None else sys.stderr
        self.callback = callback

    def _notify(self, error_occurred: bool) -> None:
        if self.callback is not None:
            self.callback(error_occurred)

    def _produce(self, error_code: int, message: str) -> str:
        text = message
        if error_code:
            text += ": " + os.strerror(error_code)
        text += "\n"
        if len(text) >= MESSAGE_LIMIT:
            log.error("error message too long (%d characters)", len(text))
            return text
        self.stream.write(text)
        self.stream.flush()
        return text

    def report(self, error_code: int, fatal: bool, message: str) -> None:
        """Report an error; raises FileCopyFatalError if ``fatal``."""
        self._notify(True)
        text = self._produce(error_code, message)
        if fatal:
            raise FileCopyFatalError(error_code, text.rstrip("\n"))
        self._notify(False)