import errno
import io
import struct
import zlib
from pathlib import Path

import pytest

from qvmfiletools.filecopy import (
    EDQUOT,
    ENAMETOOLONG,
    MAX_PATH_LENGTH,
    S_IFDIR,
    S_IFLNK,
    S_IFREG,
    FileHeader,
    ResultHeader,
)
from qvmfiletools.receiver import (
    INCOMING_DIR_ROOT,
    Receiver,
    TransferAborted,
    decode_untrusted_name,
    incoming_directory,
    main,
)

END = FileHeader().pack()


def entry(name: bytes, mode: int, data: bytes = b"", filelen=None) -> bytes:
    header = FileHeader(
        namelen=len(name),
        mode=mode,
        filelen=len(data) if filelen is None else filelen,
    )
    return header.pack() + name + data


def run(root, stream: bytes, **kwargs):
    out = io.BytesIO()
    status = Receiver(root, io.BytesIO(stream), out, **kwargs).receive_files()
    raw = out.getvalue()
    result = ResultHeader.unpack(raw[: ResultHeader.SIZE])
    rest = raw[ResultHeader.SIZE:]
    last = None
    if rest:
        (length,) = struct.unpack("<I", rest[:4])
        last = rest[4 : 4 + length]
    return status, result, last


def test_decode_ascii_passthrough():
    assert decode_untrusted_name(b"dir/file.txt") == "dir/file.txt"


def test_decode_replaces_colon():
    assert decode_untrusted_name(b"a:b") == "a_b"


def test_decode_valid_utf8():
    text = "zażółć ∑ 😀"
    assert decode_untrusted_name(text.encode("utf-8")) == text


def test_decode_invalid_low_byte_becomes_hex():
    assert decode_untrusted_name(b"x\x80y") == "x80y"


def test_decode_invalid_printable_byte_kept():
    assert decode_untrusted_name(b"\xa9") == "\xa9"


def test_decode_stops_at_nul():
    assert decode_untrusted_name(b"abc\0def") == "abc"


def test_decode_too_long_raises():
    with pytest.raises(ValueError):
        decode_untrusted_name(b"a" * 260)
    assert decode_untrusted_name(b"a" * 259) == "a" * 259


def test_incoming_directory(tmp_path):
    assert incoming_directory(tmp_path, "work") == tmp_path / INCOMING_DIR_ROOT / "work"


def test_receive_single_file(tmp_path):
    data = b"hello world" * 1000
    stream = entry(b"file.txt", S_IFREG | 0o644, data) + END
    status, result, last = run(tmp_path, stream)
    assert status == 0
    assert result.error_code == 0
    assert result.crc32 == zlib.crc32(stream)
    assert last is None
    assert (tmp_path / "file.txt").read_bytes() == data


def test_receive_directory_tree(tmp_path):
    stream = (
        entry(b"d", S_IFDIR | 0o755)
        + entry(b"d/inner", S_IFREG | 0o644, b"abc")
        + entry(b"d", S_IFDIR | 0o755)
        + END
    )
    status, result, _ = run(tmp_path, stream)
    assert status == 0
    assert (tmp_path / "d" / "inner").read_bytes() == b"abc"
    assert result.crc32 == zlib.crc32(stream)


def test_existing_file_reports_eexist(tmp_path):
    (tmp_path / "f").write_bytes(b"old")
    status, result, last = run(tmp_path, entry(b"f", S_IFREG, b"new") + END)
    assert status == errno.EEXIST
    assert result.error_code == errno.EEXIST
    assert last == b"f"
    assert (tmp_path / "f").read_bytes() == b"old"


def test_bytes_limit(tmp_path):
    stream = entry(b"a", S_IFREG, b"12345") + entry(b"b", S_IFREG, b"12345") + END
    status, _, last = run(tmp_path, stream, bytes_limit=7)
    assert status == EDQUOT
    assert last == b"b"


def test_files_limit(tmp_path):
    stream = entry(b"a", S_IFREG, b"x") + entry(b"b", S_IFREG, b"y") + END
    status, _, last = run(tmp_path, stream, files_limit=1)
    assert status == EDQUOT
    assert last == b"b"


def test_name_length_over_limit(tmp_path):
    header = FileHeader(namelen=MAX_PATH_LENGTH, mode=S_IFREG).pack()
    status, _, last = run(tmp_path, header)
    assert status == ENAMETOOLONG
    assert last is None


def test_truncated_name_is_legal_eof(tmp_path):
    header = FileHeader(namelen=10, mode=S_IFREG).pack()
    status, result, _ = run(tmp_path, header + b"abc")
    assert status == 0
    assert result.crc32 == zlib.crc32(header)


def test_truncated_data_is_eio(tmp_path):
    stream = entry(b"f", S_IFREG, b"abc", filelen=100)
    status, _, last = run(tmp_path, stream)
    assert status == errno.EIO
    assert last == b"f"


def test_missing_end_marker_is_eio(tmp_path):
    status, _, _ = run(tmp_path, entry(b"f", S_IFREG, b"abc"))
    assert status == errno.EIO
    assert (tmp_path / "f").read_bytes() == b"abc"


def test_unknown_mode_is_einval(tmp_path):
    status, _, last = run(tmp_path, entry(b"sock", 0o140000) + END)
    assert status == errno.EINVAL
    assert last == b"sock"


def test_absolute_link_denied(tmp_path):
    stream = entry(b"lnk", S_IFLNK | 0o777, b"/etc/passwd") + END
    status, _, last = run(tmp_path, stream)
    assert status == errno.EPERM
    assert last == b"lnk"
    assert not (tmp_path / "lnk").exists()


def test_link_target_too_long(tmp_path):
    stream = entry(b"lnk", S_IFLNK, b"", filelen=300)
    status, _, last = run(tmp_path, stream)
    assert status == ENAMETOOLONG
    assert last == b"lnk"


def test_parent_traversal_stays_in_root(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    status, _, _ = run(root, entry(b"../../evil", S_IFREG, b"x") + END)
    assert status == 0
    assert (root / "evil").read_bytes() == b"x"
    assert not (tmp_path / "evil").exists()


def test_colon_in_name_written_with_underscore(tmp_path):
    status, _, _ = run(tmp_path, entry(b"a:b", S_IFREG, b"z") + END)
    assert status == 0
    assert (tmp_path / "a_b").read_bytes() == b"z"


def test_process_entry_raises_transfer_aborted(tmp_path):
    receiver = Receiver(tmp_path, io.BytesIO(b""), io.BytesIO())
    with pytest.raises(TransferAborted) as info:
        receiver.process_entry(FileHeader(namelen=MAX_PATH_LENGTH, mode=S_IFREG))
    assert info.value.status == ENAMETOOLONG


def test_send_status_with_last_name(tmp_path):
    out = io.BytesIO()
    receiver = Receiver(tmp_path, io.BytesIO(b""), out)
    receiver.send_status(errno.EIO, b"name")
    raw = out.getvalue()
    assert ResultHeader.unpack(raw[:16]) == ResultHeader(errno.EIO, 0)
    assert raw[16:] == struct.pack("<I", 4) + b"name"


def test_main_without_remote_domain(monkeypatch):
    monkeypatch.delenv("QREXEC_REMOTE_DOMAIN", raising=False)
    assert main([]) == 1


def test_received_file_path_is_under_root(tmp_path):
    status, _, _ = run(tmp_path, entry(b"./x/../y", S_IFREG, b"q") + END)
    assert status == 0
    assert sorted(p.name for p in Path(tmp_path).iterdir()) == ["y"]