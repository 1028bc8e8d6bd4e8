import pytest

from relayvault.adapters.memory_relay.relay import MemoryRelay
from relayvault.core.backoff import BackoffPolicy
from relayvault.core.channel import ResilientChannel
from relayvault.core.rate_limiter import RateLimiter
from relayvault.domain.secrets.identity import DirectKeyIdentity
from relayvault.domain.secrets.manager import SecretManager

FAST = BackoffPolicy(max_attempts=3, initial_delay=0.001, multiplier=2.0, max_delay=0.004)


@pytest.fixture
def relay():
    return MemoryRelay()


@pytest.fixture
def owner():
    return DirectKeyIdentity.generate()


@pytest.fixture
def session_factory(relay):
    """Build a fresh SecretManager session against the shared relay."""
    sessions = []

    def make(identity):
        channel = ResilientChannel(
            relay,
            publish_limiter=RateLimiter(1000, 1.0),
            query_limiter=RateLimiter(1000, 1.0),
            publish_policy=FAST,
            query_policy=FAST,
            query_timeout=1.0,
        )
        manager = SecretManager(channel, identity)
        sessions.append(manager)
        return manager

    yield make
    for manager in sessions:
        manager.close()
