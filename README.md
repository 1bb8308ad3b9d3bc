# qvmfiletools

Services that move files between virtual machines over a pair of byte
streams: the standard input and output a qrexec-style service is started
with. The file copy services speak a small binary protocol and check the
transfer with a running CRC-32. Only the standard library is needed.

## Installation

```
pip install qvmfiletools
```

Tests need the `test` extra:

```
pip install "qvmfiletools[test]"
pytest
```

## Commands

| Command             | Module                         | What it does |
|---------------------|--------------------------------|--------------|
| `qvm-file-sender`   | `qvmfiletools.sender`          | Sends the files and directories named on its command line to standard output, then sends the end marker, reads the peer's result from standard input and checks its CRC-32. Exits with 1 on any fatal error. |
| `qvm-file-receiver` | `qvmfiletools.receiver`        | Reads such a stream from standard input and unpacks it into `~/Documents/QubesIncoming/<domain>`, where `<domain>` comes from the `QREXEC_REMOTE_DOMAIN` environment variable. Replies with a status code and the CRC-32 and exits with that status code. |
| `qvm-open-in-vm`    | `qvmfiletools.open_in_vm`      | Takes exactly one file: writes its NUL-padded 256-byte name and its contents to standard output, closes it, then reads the returned copy from standard input and puts it in place of the original. An empty reply leaves the file alone. |
| `qvm-file-editor`   | `qvmfiletools.vm_file_editor`  | The other side of `qvm-open-in-vm`: receives the file into a fresh temporary directory, opens it with the system opener (`xdg-open`, `open -W`, or `start /wait`), waits for that command to exit, and sends the file back only if its modification time changed. The temporary copy is removed afterwards. |

Each command is started with its standard input and output connected to the
peer, for example:

```
qvm-file-sender report.pdf photos/
```

## The protocol in short

Every entry is a fixed-size `FileHeader` (name length, mode, length, and
access and modification times) followed by the UTF-8 name and, for regular
files and symbolic links, the data. Directories are sent before and again
after their contents, so their times come out right. A header whose name
length is zero ends the transfer. The receiver answers with a `ResultHeader`
holding an error number and the CRC-32 of everything it read, optionally
followed by the length and bytes of the name of the last file it processed.

The receiver:

- never overwrites existing files (`EEXIST`);
- decodes names leniently: `:` becomes `_`, invalid printable bytes map to
  the same code point, other invalid bytes become two hex digits;
- drops `.` and `..` components and refuses entries whose parent lies
  outside the target directory (`EACCES`);
- refuses absolute symbolic link targets (`EPERM`);
- can stop a transfer that goes over a byte or file limit (`EDQUOT`).

## Using it from Python

```python
from qvmfiletools.filecopy import FileHeader, copy_file, read_exact
from qvmfiletools.receiver import Receiver
from qvmfiletools.sender import Sender

header = FileHeader.unpack(read_exact(stream, FileHeader.SIZE))

receiver = Receiver(root, input_stream, output_stream, bytes_limit=0, files_limit=0)
status = receiver.receive_files()

sender = Sender(input_stream, output_stream)
sender.send_path("photos")
sender.finish()          # end marker, then wait_for_result()
```

- `qvmfiletools.filecopy` holds the wire structures (`FileHeader`,
  `ResultHeader`), the `CopyStatus` and `ProgressType` enums, the mode
  helpers `is_reg`, `is_dir` and `is_lnk`, `read_exact`, and `copy_file`,
  which copies exactly `size` bytes, updating a CRC-32 and calling an
  optional progress callback; it raises `CopyError` when the input ends
  early or a read or write fails. `status_to_string` turns a `CopyStatus`
  into a readable message.
- `qvmfiletools.errors` has `ErrorReporter`, which writes an error message
  (with the text for its error number) to a stream, tells an optional
  callback that an error occurred, and raises `FileCopyFatalError` when the
  error is fatal.
- `qvmfiletools.receiver` has `Receiver`, `TransferAborted`,
  `decode_untrusted_name` and `incoming_directory`.
- `qvmfiletools.sender` has `Sender`, `ProgressTracker` (reports progress
  at most once per million bytes, plus on start, finish and error) and
  `windows_time_to_unix`.
- `qvmfiletools.open_in_vm` has `padded_filename`, `send_file` and
  `receive_file`.
- `qvmfiletools.vm_file_editor` has `sanitize_filename` (rejects `/` and
  `\`, replaces shell-unfriendly characters with `_`), `receive_file`,
  `send_file` and `edit`, which takes an `opener` callable returning an
  exit code.

## What it does not do

- There is no progress window or dialog: the sender reports progress and
  errors through the `logging` module and standard error, and cannot be
  cancelled from outside.
- The sender follows symbolic links rather than sending them as links.
- The byte and file limits of `Receiver` are not settable from the
  `qvm-file-receiver` command; it runs without limits.
- Nothing here sets up the connection between the machines: every command
  expects its standard input and output to be connected to the peer
  already.