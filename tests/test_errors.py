import errno
import io
import os

import pytest

from qvmfiletools.errors import ErrorReporter, FileCopyFatalError


def test_nonfatal_report_writes_and_notifies():
    calls = []
    out = io.StringIO()
    reporter = ErrorReporter(out, calls.append)
    reporter.report(0, False, "something happened")
    assert out.getvalue() == "something happened\n"
    assert calls == [True, False]


def test_error_code_description_appended():
    out = io.StringIO()
    ErrorReporter(out, None).report(errno.ENOENT, False, "open")
    assert out.getvalue() == "open: " + os.strerror(errno.ENOENT) + "\n"


def test_fatal_report_raises():
    calls = []
    out = io.StringIO()
    reporter = ErrorReporter(out, calls.append)
    with pytest.raises(FileCopyFatalError) as info:
        reporter.report(errno.EIO, True, "copy failed")
    assert info.value.error_code == errno.EIO
    assert calls == [True]
    assert out.getvalue().startswith("copy failed: ")


def test_too_long_message_not_written():
    out = io.StringIO()
    ErrorReporter(out, None).report(0, False, "x" * 2000)
    assert out.getvalue() == ""