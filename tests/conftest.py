"""
Fixtures compartilhadas dos testes.
"""
import os

os.environ.setdefault("LOG_TO_FILE", "false")

import pytest

from narrative_dispatch.services.llm.provider_registry import ProviderRegistry
from tests.helpers import FakeClock, FakeSleep, make_profile


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def registry():
    return ProviderRegistry([make_profile()])
