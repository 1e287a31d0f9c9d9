"""Plan executor: runs structured work plans against a tool-calling model."""

__version__ = "0.1.0"
