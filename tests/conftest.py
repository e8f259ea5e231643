"""Shared pytest fixtures."""

import pytest

from helpers import FakeCluster, RecordingProducer


@pytest.fixture
def producer() -> RecordingProducer:
    return RecordingProducer()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()
