import pytest

from fakes import FakeGmailClient, NoSleep


@pytest.fixture
def fake_client():
    return FakeGmailClient()


@pytest.fixture
def no_sleep():
    return NoSleep()
