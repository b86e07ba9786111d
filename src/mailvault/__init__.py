"""mailvault: incremental, read-only IMAP mailbox archiver."""

__version__ = "0.1.0"

__all__ = ["__version__"]
