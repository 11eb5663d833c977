import pytest

from support_agent.config import parse_business_rules
from tests.fakes import RULES, FakeMailbox, FakeRecorder, FakeRedis


@pytest.fixture
def rules():
    return parse_business_rules(RULES)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def mailbox():
    return FakeMailbox()


@pytest.fixture
def recorder():
    return FakeRecorder()
