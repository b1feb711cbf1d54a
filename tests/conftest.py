import json
from pathlib import Path

import pytest

FIXTURES = Path(__file__).resolve().parent / "fixtures"


class FakeClock:
    """Monotonic clock that only moves when the code under test sleeps."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def sample_document_path():
    return FIXTURES / "audit_document.json"


@pytest.fixture
def sample_document(sample_document_path):
    return json.loads(sample_document_path.read_text(encoding="utf-8"))


@pytest.fixture
def clock():
    return FakeClock()
