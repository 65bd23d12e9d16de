from __future__ import annotations

import pytest

from fakes import BOT_USER_ID, FakeAdapter, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def adapter() -> FakeAdapter:
    fake = FakeAdapter()
    fake.add_user(BOT_USER_ID, "relaybot", global_name="Relay")
    fake.add_user("2000", "alice", global_name="Alice A.")
    fake.add_user("2001", "bob")
    return fake
