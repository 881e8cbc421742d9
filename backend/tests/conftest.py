# backend/tests/conftest.py
"""
Pytest configuration for the push console backend tests.

- Ensures that the project root (backend/) is added to sys.path
  so that `import push_console.*` works correctly in tests.
- Ensures required environment variables for tests are set
  with safe dummy values (e.g., PUSH_CONSOLE_API_BASE_URL).
- Resets cached settings / shared services between tests.
"""

import os
import sys
from pathlib import Path

import pytest


def _ensure_project_root_in_sys_path() -> None:
    # This file is located at: backend/tests/conftest.py
    # parents[1] -> backend/
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)

    if project_root_str not in sys.path:
        # Insert at the beginning so it has priority over site-packages, etc.
        sys.path.insert(0, project_root_str)


def _ensure_test_env_vars() -> None:
    """
    Set dummy environment variables required for tests.

    These values point at a non-existent host; tests never reach it because
    HTTP is replaced with httpx.MockTransport or dummy clients.
    """
    os.environ.setdefault("PUSH_CONSOLE_API_BASE_URL", "http://upstream.test")


_ensure_project_root_in_sys_path()
_ensure_test_env_vars()


@pytest.fixture(autouse=True)
def _reset_shared_state():
    from push_console.notifications.factory import reset_notification_service
    from push_console.segments.router import get_segment_service

    reset_notification_service()
    get_segment_service.cache_clear()
    yield
    reset_notification_service()
    get_segment_service.cache_clear()
