"""fastdz - Deep Zoom tile pyramid generator."""

__version__ = "0.1.0"
