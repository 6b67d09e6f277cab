"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

import pytest

# Settings are read at import time; keep tests off real services.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CELERY__ALWAYS_EAGER", "true")
os.environ.setdefault("PAYMENT__RETRY__MAX", "0")
os.environ.setdefault("PAYMENT__PAYPAL__NVP_USER", "nvp_user")
os.environ.setdefault("PAYMENT__PAYPAL__NVP_PASSWORD", "nvp_password")
os.environ.setdefault("PAYMENT__PAYPAL__NVP_SIGNATURE", "nvp_signature")


@pytest.fixture
def publisher():
    from tests.fakes import RecordingPublisher

    return RecordingPublisher()


@pytest.fixture
def scheduler():
    from tests.fakes import RecordingScheduler

    return RecordingScheduler()


@pytest.fixture
def alerts():
    from tests.fakes import RecordingAlertSink

    return RecordingAlertSink()
