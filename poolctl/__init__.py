"""Pool lifecycle and device orchestration for NAS storage."""

__version__ = "0.1.0"
