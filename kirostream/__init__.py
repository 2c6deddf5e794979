"""Decoding of binary event streams into SSE events, with tool-call tracking."""

__version__ = "0.1.0"