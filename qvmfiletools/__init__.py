"""File copy, open-in-VM and file-editor services over inter-VM byte streams."""

__version__ = "0.1.0"

__all__ = ["filecopy", "errors", "receiver", "sender", "open_in_vm", "vm_file_editor"]