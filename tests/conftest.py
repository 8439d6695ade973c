"""Shared test configuration — adds project root to sys.path."""

import sys
from pathlib import Path

import pytest

# Ensure project root is importable from all test files
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


@pytest.fixture
def fast_retry():
    """Retry policy with no backoff so exhausted retries don't slow tests."""
    from tenacity import wait_none
    from remote_retry import RetryPolicy
    return RetryPolicy(max_attempts=3, backoff=wait_none())


def _make_job(**overrides):
    """Short straddle: two legs at 150 (premium 300), 10% stop, trailing 10%/5%."""
    from job_record import JobRecord
    data = {
        "id": "STRADDLE-1",
        "user": "AB1234",
        "legs": [
            {"symbol": "NIFTY24JUN22500CE", "entry_price": 150.0},
            {"symbol": "NIFTY24JUN22500PE", "entry_price": 150.0},
        ],
        "risk": {"stop_percent": 10, "trail_percent": 10, "trail_trigger_percent": 5},
        "square_off_orders": [
            {"symbol": "NIFTY24JUN22500CE", "transaction_type": "SELL",
             "quantity": 50, "average_price": 150.0},
            {"symbol": "NIFTY24JUN22500PE", "transaction_type": "SELL",
             "quantity": 50, "average_price": 150.0},
        ],
    }
    data.update(overrides)
    return JobRecord.from_dict(data)


@pytest.fixture
def make_job():
    """Factory for JobRecords; keyword overrides replace top-level fields."""
    return _make_job
