"""Route programming and verification harness."""

__version__ = "0.1.0"
