"""Address tokens binding a bundle to a project and environment.

The token is ``<project_id>|<environment>`` and travels only inside the
encrypted Rumor, so relays never see it.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional

from relayvault.errors import ValidationError

ADDRESS_SEPARATOR = "|"


@dataclass(frozen=True)
class Address:
    project_id: str
    environment: str

    @property
    def token(self) -> str:
        return f"{self.project_id}{ADDRESS_SEPARATOR}{self.environment}"


def _check_component(name: str, value: str) -> None:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{name} must be a non-empty string")
    if ADDRESS_SEPARATOR in value:
        raise ValidationError(f"{name} must not contain {ADDRESS_SEPARATOR!r}: {value!r}")


def create_address(project_id: str, environment: str) -> str:
    _check_component("project_id", project_id)
    _check_component("environment", environment)
    return Address(project_id, environment).token


def parse_address(token: str) -> Optional[Address]:
    """Split a token into its parts. Returns None unless it has exactly one separator and two non-empty parts."""
    if not isinstance(token, str):
        return None
    parts = token.split(ADDRESS_SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    return Address(parts[0], parts[1])


def require_address(token: str) -> Address:
    address = parse_address(token)
    if address is None:
        raise ValidationError(f"Invalid address token: {token!r}")
    return address


def extract_projects(tokens: Iterable[str]) -> List[str]:
    projects = {a.project_id for a in map(parse_address, tokens) if a}
    return sorted(projects)


def extract_environments(tokens: Iterable[str], project_id: str) -> List[str]:
    environments = {
        a.environment for a in map(parse_address, tokens)
        if a and a.project_id == project_id
    }
    return sorted(environments)
