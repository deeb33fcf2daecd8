"""Online payment of library fines."""

__version__ = "0.1.0"
