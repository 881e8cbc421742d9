# backend/push_console/__init__.py
"""
Push notification admin console backend package.

This package contains:
- main: FastAPI application entrypoint
- upstream: client for the remote document-store and segment handlers
- notifications: notification lifecycle and audience resolution
- segments: read-only customer segment inspection
"""
