"""Secret bundle validation and helpers."""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from relayvault.errors import ValidationError
from .models import SecretBundle, compact_json


def validate_bundle(bundle: Any) -> SecretBundle:
    """Validate a bundle before it is wrapped.

    Only flat string-to-string mappings are accepted. Returns a plain copy.
    """
    if not isinstance(bundle, Mapping):
        raise ValidationError(f"Secret bundle must be a mapping, got {type(bundle).__name__}")

    validated: SecretBundle = {}
    for key, value in bundle.items():
        if not isinstance(key, str) or not key:
            raise ValidationError(f"Secret keys must be non-empty strings, got {key!r}")
        if not isinstance(value, str):
            raise ValidationError(f"Secret {key!r} must have a string value, got {type(value).__name__}")
        validated[key] = value
    return validated


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return compact_json(value)


def parse_bundle(content: str) -> SecretBundle:
    """Parse decrypted Rumor content into a bundle.

    Raises ValueError for malformed JSON, arrays and other non-objects.
    Non-string values written by older clients are stringified as JSON
    (``true``, ``42``, ``{"a":1}``).
    """
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("Secret bundle content must be a JSON object")
    return {key: _stringify(value) for key, value in data.items()}


def merge_secrets(base: Mapping[str, str], overlay: Mapping[str, str]) -> SecretBundle:
    """Merge two bundles, overlay wins."""
    merged = dict(base)
    merged.update(overlay)
    return merged


def inject_secrets(base_env: Mapping[str, Optional[str]], secrets: Mapping[str, Any]) -> Dict[str, str]:
    """Build a process environment: ``base_env`` with ``secrets`` layered on top."""
    env = {key: value for key, value in base_env.items() if value is not None}
    for key, value in secrets.items():
        if value is not None:
            env[key] = _stringify(value)
    return env


@dataclass
class MissingSecret:
    key: str
    exists_in: List[str] = field(default_factory=list)


def calculate_missing_secrets(
    all_env_secrets: Mapping[str, Mapping[str, str]],
    current_env: str,
) -> List[MissingSecret]:
    """Keys present in some other environment but absent from ``current_env``, sorted by key."""
    current_keys = set(all_env_secrets.get(current_env, {}))
    key_to_envs: Dict[str, List[str]] = {}

    for env_slug, bundle in all_env_secrets.items():
        if env_slug == current_env:
            continue
        for key in bundle:
            if key not in current_keys:
                key_to_envs.setdefault(key, []).append(env_slug)

    return [MissingSecret(key=k, exists_in=envs) for k, envs in sorted(key_to_envs.items())]
