"""
CLI tools for FeedMux.

This module provides command-line tools for:
- seed: Write timestamp documents on an interval to drive change feeds

Invariants:
    - Tools talk to the store directly; no running server is required
"""

from .seed import SeedWriter

__all__ = ["SeedWriter"]
