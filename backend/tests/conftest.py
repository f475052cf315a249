"""Pytest configuration and fixtures for the drip faucet."""

import os
import sys

# Backend modules are flat scripts; make them importable without installing
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from drip_queue import RequestQueue
from fakes import ManualTicker, RecordingIssuer


@pytest.fixture
def queue() -> RequestQueue:
    return RequestQueue(drip_amount=1)


@pytest.fixture
def issuer() -> RecordingIssuer:
    return RecordingIssuer()


@pytest.fixture
def ticker() -> ManualTicker:
    return ManualTicker()
