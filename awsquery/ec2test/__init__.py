"""An in-memory EC2 simulator with request recording and attribute filters."""

__all__ = ["filter", "model", "server"]