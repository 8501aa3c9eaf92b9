"""ORBIT Uploader: background-capable upload tracking for ORBIT Camera data."""

__version__ = "0.3.0"
