"""Last-writer-wins resolution over decrypted records.

Pure functions: they take a snapshot of records and build new outputs. The
winner for each (author, address) is the record with the greatest Rumor
``created_at``; ties go to the smallest Rumor id, then the smallest Envelope
id. That is a total order, so the result does not depend on input order or
on duplicates. Tombstones (empty bundles) are ordinary values here.
"""
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .address import create_address, parse_address
from .models import SecretBundle, UnwrapResult

GroupKey = Tuple[str, str]


def supersedes(candidate: UnwrapResult, current: UnwrapResult) -> bool:
    """True if ``candidate`` should replace ``current`` for the same address."""
    if candidate.created_at != current.created_at:
        return candidate.created_at > current.created_at
    return (candidate.rumor_id, candidate.event_id) < (current.rumor_id, current.event_id)


def _matching(records: Iterable[UnwrapResult], author: Optional[str]) -> Iterable[UnwrapResult]:
    if author is None:
        return records
    return (r for r in records if r.pubkey == author)


def resolve_latest(records: Iterable[UnwrapResult], author: Optional[str] = None) -> Dict[GroupKey, UnwrapResult]:
    """Winning record per ``(author_pubkey, address)``."""
    latest: Dict[GroupKey, UnwrapResult] = {}
    for record in _matching(records, author):
        key = (record.pubkey, record.address)
        current = latest.get(key)
        if current is None or supersedes(record, current):
            latest[key] = record
    return latest


def resolve_record(
    records: Iterable[UnwrapResult],
    address: str,
    author: Optional[str] = None,
) -> Optional[UnwrapResult]:
    winner: Optional[UnwrapResult] = None
    for record in _matching(records, author):
        if record.address != address:
            continue
        if winner is None or supersedes(record, winner):
            winner = record
    return winner


def resolve_address(
    records: Iterable[UnwrapResult],
    address: str,
    author: Optional[str] = None,
) -> Optional[SecretBundle]:
    """Current bundle for one address, or None if no record exists at all.

    A tombstone resolves to ``{}``, not None. When ``author`` is None and
    several authors wrote to the address, the newest write across authors wins.
    """
    winner = resolve_record(records, address, author)
    return dict(winner.secrets) if winner is not None else None


def resolve_environments(
    records: Iterable[UnwrapResult],
    project_id: str,
    environment_slugs: Iterable[str],
    author: Optional[str] = None,
) -> Dict[str, SecretBundle]:
    """Bundle per environment slug; slugs with no record map to ``{}``."""
    slugs: List[str] = list(environment_slugs)
    if not slugs:
        return {}

    wanted = {create_address(project_id, slug): slug for slug in slugs}
    winners: Dict[str, UnwrapResult] = {}
    for record in _matching(records, author):
        slug = wanted.get(record.address)
        if slug is None:
            continue
        current = winners.get(slug)
        if current is None or supersedes(record, current):
            winners[slug] = record

    return {slug: dict(winners[slug].secrets) if slug in winners else {} for slug in slugs}


def collect_addresses(records: Iterable[UnwrapResult], author: Optional[str] = None) -> Set[str]:
    """Distinct well-formed addresses seen in the records, tombstoned or not."""
    return {r.address for r in _matching(records, author) if parse_address(r.address)}
