"""Secrets Domain Models."""
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Event kinds
KIND_SEAL = 13
KIND_DELETION = 5
KIND_GIFT_WRAP = 1059
KIND_SECRET_BUNDLE = 30078

# Tag markers
TAG_RECIPIENT = "p"
TAG_TYPE = "t"
TAG_ADDRESS = "d"
TAG_EVENT = "e"
SECRETS_TYPE_TAG = "redshift-secrets"

# Seal and Envelope timestamps are drawn from [now - TWO_DAYS, now]
TWO_DAYS = 2 * 24 * 60 * 60

HEX_32 = r"^[0-9a-f]{64}$"
HEX_64 = r"^[0-9a-f]{128}$"

SecretBundle = Dict[str, str]


def compact_json(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


class UnsignedEvent(BaseModel):
    """
    Event template before hashing and signing.

    Fields follow NIP-01; ``tags`` is a list of string lists.
    """
    model_config = ConfigDict(frozen=True)

    pubkey: str = Field(..., pattern=HEX_32)
    created_at: int = Field(..., ge=0)
    kind: int = Field(..., ge=0, le=65535)
    tags: List[List[str]] = Field(default_factory=list)
    content: str

    def tag_value(self, name: str) -> Optional[str]:
        """Return the first value of the first tag named ``name``."""
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag[1]
        return None

    def has_tag(self, name: str, value: str) -> bool:
        return any(len(tag) >= 2 and tag[0] == name and tag[1] == value for tag in self.tags)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()

    def to_json(self) -> str:
        return compact_json(self.to_dict())


class Rumor(UnsignedEvent):
    """Innermost record: hashed but never signed, never transmitted standalone."""
    id: str = Field(..., pattern=HEX_32)


class NostrEvent(Rumor):
    """A signed event as it travels over a relay."""
    sig: str = Field(..., pattern=HEX_64)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[List[str]]) -> List[List[str]]:
        for tag in v:
            if not tag:
                raise ValueError("Empty tag")
        return v


@dataclass(frozen=True)
class GiftWrapResult:
    """Output of a wrap: the Envelope to transmit and the Rumor for local bookkeeping."""
    event: NostrEvent
    rumor: Rumor


@dataclass(frozen=True)
class UnwrapResult:
    """A fully decrypted record.

    ``created_at`` is the Rumor's timestamp, the only one that counts for
    conflict resolution. ``pubkey`` is the real author.
    """
    secrets: SecretBundle
    address: str
    created_at: int
    pubkey: str
    rumor_id: str
    event_id: str

    @property
    def is_tombstone(self) -> bool:
        return not self.secrets
