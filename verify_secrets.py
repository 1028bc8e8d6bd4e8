import asyncio
import sys

from relayvault.adapters.memory_relay.relay import MemoryRelay
from relayvault.core.channel import build_channel
from relayvault.domain.secrets.gift_wrap import get_secrets_filter
from relayvault.domain.secrets.identity import DirectKeyIdentity
from relayvault.domain.secrets.manager import SecretManager
from relayvault.logging_hardening import setup_logging_redaction


async def verify_secrets():
    print("Verifying Secret Storage over Relays...")
    setup_logging_redaction()
    relay = MemoryRelay()
    owner = DirectKeyIdentity.generate()
    print(f"   Owner: {owner.npub}")

    address = "verify|production"
    value = "super-sensitive-api-key"

    print(f"1. Publishing bundle to '{address}'")
    writer = SecretManager(build_channel(relay), owner)
    await writer.publish_secrets({"API_KEY": value}, address)

    print("2. Fetching from a fresh session...")
    reader = SecretManager(build_channel(relay), owner)
    retrieved = await reader.fetch_secrets(address)
    if retrieved == {"API_KEY": value}:
        print("   [SUCCESS] Decrypted bundle matches original.")
    else:
        print(f"   [FAILURE] Bundle mismatch. Got keys: {sorted(retrieved or {})}")
        sys.exit(1)

    print("3. Inspecting what the relay stores...")
    for raw in await relay.query(get_secrets_filter(owner.public_key)):
        if value in str(raw) or address in str(raw):
            print("   [FAILURE] Plaintext visible on the relay! Encryption NOT working.")
            sys.exit(1)
        if raw["pubkey"] == owner.public_key:
            print("   [FAILURE] Envelope signed by the owner key.")
            sys.exit(1)
    print("   [SUCCESS] Relay only holds opaque envelopes.")

    print("4. Deleting environment...")
    await writer.delete_environment(address)
    after = await SecretManager(build_channel(relay), owner).fetch_secrets(address)
    if after != {}:
        print(f"   [FAILURE] Bundle still present after delete: {sorted(after or {})}")
        sys.exit(1)
    print("   [SUCCESS] Address resolves to an empty bundle.")

    writer.close()
    reader.close()
    print("5. Cleanup complete.")


if __name__ == "__main__":
    asyncio.run(verify_secrets())
