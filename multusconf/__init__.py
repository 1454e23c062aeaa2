"""Loading, validation and merging of multi-network CNI configuration."""

__version__ = "0.1.0"
__all__ = ["types", "delegate", "conf"]