"""End-to-end write/read scenarios over the in-memory relay."""
import pytest

from relayvault.domain.secrets.gift_wrap import get_secrets_filter, unwrap_gift_wrap, wrap_secrets
from relayvault.domain.secrets.identity import DirectKeyIdentity
from relayvault.domain.secrets.models import NostrEvent
from relayvault.domain.secrets.resolver import resolve_address
from relayvault.errors import DecryptionError


@pytest.mark.asyncio
async def test_fetch_ignores_other_owners_in_same_batch(relay, owner, session_factory):
    bundle = {"API_KEY": "sk_live_abc", "DEBUG": "false"}
    mine = await wrap_secrets(bundle, "myproj|production", owner)
    other = DirectKeyIdentity.generate()
    theirs = await wrap_secrets({"API_KEY": "sk_other"}, "myproj|production", other)

    # Both records in one batch, as a relay would hand them back
    batch = [mine.event, theirs.event]
    records = []
    for event in batch:
        try:
            records.append(await unwrap_gift_wrap(event, owner))
        except DecryptionError:
            continue
    assert resolve_address(records, "myproj|production", author=owner.public_key) == bundle

    # Same through the facade
    for event in batch:
        await relay.publish(event.to_dict())
    manager = session_factory(owner)
    assert await manager.fetch_secrets("myproj|production") == bundle


@pytest.mark.asyncio
async def test_later_write_wins_regardless_of_arrival(relay, owner, session_factory):
    older = await wrap_secrets({"VERSION": "1000"}, "app|prod", owner, now=1000)
    newer = await wrap_secrets({"VERSION": "2000"}, "app|prod", owner, now=2000)

    # Arrival order is newest first
    await relay.publish(newer.event.to_dict())
    await relay.publish(older.event.to_dict())

    manager = session_factory(owner)
    assert await manager.fetch_secrets("app|prod") == {"VERSION": "2000"}


@pytest.mark.asyncio
async def test_full_lifecycle(relay, owner, session_factory):
    writer = session_factory(owner)
    await writer.publish_secrets({"DB_URL": "postgres://x", "TOKEN": "t1"}, "shop|prod")
    await writer.publish_secrets({"DB_URL": "postgres://dev"}, "shop|dev")

    reader = session_factory(owner)
    assert await reader.fetch_all_environments("shop", ["prod", "dev", "test"]) == {
        "prod": {"DB_URL": "postgres://x", "TOKEN": "t1"},
        "dev": {"DB_URL": "postgres://dev"},
        "test": {},
    }
    assert await reader.list_addresses() == {"shop|prod", "shop|dev"}

    # Relays only ever see envelopes; nothing identifies the project
    for raw in await relay.query(get_secrets_filter(owner.public_key)):
        event = NostrEvent.model_validate(raw)
        assert event.pubkey != owner.public_key
        assert "shop|" not in event.to_json()
        assert "postgres://" not in event.to_json()


@pytest.mark.asyncio
async def test_owners_are_isolated(relay, session_factory):
    alice, bob = DirectKeyIdentity.generate(), DirectKeyIdentity.generate()
    await session_factory(alice).publish_secrets({"WHO": "alice"}, "shared|prod")
    await session_factory(bob).publish_secrets({"WHO": "bob"}, "shared|prod")

    assert await session_factory(alice).fetch_secrets("shared|prod") == {"WHO": "alice"}
    assert await session_factory(bob).fetch_secrets("shared|prod") == {"WHO": "bob"}
