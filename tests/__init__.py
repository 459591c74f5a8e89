"""
FeedMux Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, recording channel)
- integration/: WebSocket server tests (aiohttp test server, in-memory store)
- e2e/: End-to-end tests against a real MongoDB replica set
"""
