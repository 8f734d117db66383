"""Shared fixtures for the transport and connection tests."""

from unittest.mock import MagicMock

import pytest
import usb.util

from usb_fakes import make_cdc_device


@pytest.fixture
def usb_util(monkeypatch):
    """Replace the pyusb helpers that need a real backend."""
    mocks = MagicMock()
    monkeypatch.setattr(usb.util, "claim_interface", mocks.claim_interface)
    monkeypatch.setattr(usb.util, "release_interface", mocks.release_interface)
    monkeypatch.setattr(usb.util, "dispose_resources", mocks.dispose_resources)
    return mocks


@pytest.fixture
def cdc_device():
    return make_cdc_device()
