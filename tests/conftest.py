"""Shared fixtures for PlanTrack tests."""

import pytest

from plantrack.config import get_settings
from plantrack.outline import parse_document
from plantrack.plantrack_logging import performance_monitor

SAMPLE_PLAN = """\
# Add request tracing

Trace every inbound request end to end.

## Summary of changes

- Add a tracing middleware
- Log trace ids with every request

## Execution Steps

### Step 1: Prepare configuration

#### 1.1: Add settings

- Add `TRACE_ENABLED` to **config/settings.py**
- Document the flag in **docs/**

#### 1.2: Wire defaults

- Set the default in **config/defaults.toml**

### Step 2: Implement middleware

- Create **app/tracing.py**

#### 2.1: Register middleware

- Register it in **app/main.py**

### Step 3: Verify

- Run **`pytest -q`**

### Step 4: Release

- Tag the release

## Manual testing plan

- Send a request and check the trace id header
"""

SAMPLE_ACTIONS = ("1.1.1", "1.1.2", "1.2.1", "2.0.1", "2.1.1", "3.0.1", "4.0.1")


@pytest.fixture
def sample_text():
    return SAMPLE_PLAN


@pytest.fixture
def sample_actions():
    return SAMPLE_ACTIONS


@pytest.fixture
def sample_document():
    return parse_document(SAMPLE_PLAN).document


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """Keep PLANTRACK_* variables from the host out of every test."""
    for name in ("PROJECT_ROOT", "STORAGE_DIR", "ORDERED", "LENIENT_NUMBERING", "SKIPPED_COUNTS_AS_DONE"):
        monkeypatch.delenv(f"PLANTRACK_{name}", raising=False)
    get_settings.cache_clear()
    performance_monitor.clear()
    yield
    get_settings.cache_clear()
