"""PULSE resilient data-fetch and cache-aside layer."""

__version__ = "0.1.0"
