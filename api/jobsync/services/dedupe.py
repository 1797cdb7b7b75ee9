from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Literal, Protocol

from jobsync.services.repository import ListingRecord, RepositoryConflictError

logger = logging.getLogger(__name__)

DedupeCriterion = Literal["title", "company", "salary", "description"]
DEDUPE_CRITERIA: tuple[str, ...] = ("title", "company", "salary", "description")

_WHITESPACE_RE = re.compile(r"\s+")


class DedupeRepository(Protocol):
    async def list_listings(self, *, source_name: str | None = None) -> list[ListingRecord]: ...

    async def delete_listings(self, listing_ids: list[int]) -> int: ...


@dataclass(slots=True)
class DuplicateGroup:
    key: tuple[str, ...]
    kept_id: int
    removed_ids: list[int]


@dataclass(slots=True)
class DedupeReport:
    criteria: list[str]
    dry_run: bool
    listings_scanned: int = 0
    duplicates_found: int = 0
    duplicates_removed: int = 0
    groups: list[DuplicateGroup] = field(default_factory=list)
    failed_groups: list[DuplicateGroup] = field(default_factory=list)


def normalize_value(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value).strip().casefold()


def criterion_value(listing: ListingRecord, criterion: str) -> str:
    if criterion == "title":
        return normalize_value(listing.title)
    if criterion == "company":
        return normalize_value(listing.company)
    if criterion == "salary":
        return normalize_value(listing.pay_range)
    if criterion == "description":
        return normalize_value(listing.description_raw or listing.description_summary)
    raise ValueError(f"unknown dedupe criterion {criterion!r}")


def validate_criteria(criteria: list[str]) -> list[str]:
    ordered = [criterion for criterion in DEDUPE_CRITERIA if criterion in set(criteria)]
    unknown = sorted(set(criteria) - set(DEDUPE_CRITERIA))
    if unknown:
        raise ValueError(f"unknown dedupe criteria: {', '.join(unknown)}")
    if not ordered:
        raise ValueError("at least one dedupe criterion is required")
    return ordered


def find_duplicate_groups(listings: list[ListingRecord], criteria: list[str]) -> list[DuplicateGroup]:
    """Group listings whose chosen criteria are all equal after normalization.

    The earliest-created listing of each group is kept, ties going to the
    lowest id. Listings with an empty value for any criterion are never grouped.
    """
    ordered_criteria = validate_criteria(criteria)
    buckets: dict[tuple[str, ...], list[ListingRecord]] = {}
    for listing in listings:
        key = tuple(criterion_value(listing, criterion) for criterion in ordered_criteria)
        if not all(key):
            continue
        buckets.setdefault(key, []).append(listing)

    groups: list[DuplicateGroup] = []
    for key, members in buckets.items():
        if len(members) < 2:
            continue
        members.sort(key=lambda listing: (listing.created_at, listing.id))
        groups.append(
            DuplicateGroup(
                key=key,
                kept_id=members[0].id,
                removed_ids=[listing.id for listing in members[1:]],
            )
        )
    groups.sort(key=lambda group: group.kept_id)
    return groups


async def run_dedupe(
    repository: DedupeRepository,
    *,
    criteria: list[str],
    dry_run: bool = True,
    source_name: str | None = None,
) -> DedupeReport:
    ordered_criteria = validate_criteria(criteria)
    listings = await repository.list_listings(source_name=source_name)
    groups = find_duplicate_groups(listings, ordered_criteria)
    report = DedupeReport(
        criteria=ordered_criteria,
        dry_run=dry_run,
        listings_scanned=len(listings),
        duplicates_found=sum(len(group.removed_ids) for group in groups),
        groups=groups,
    )
    if dry_run:
        return report

    for group in groups:
        try:
            report.duplicates_removed += await repository.delete_listings(group.removed_ids)
        except RepositoryConflictError:
            logger.warning("dedupe group skipped kept_id=%s removed_ids=%s", group.kept_id, group.removed_ids)
            report.failed_groups.append(group)

    logger.info(
        "dedupe finished criteria=%s scanned=%s found=%s removed=%s",
        ",".join(ordered_criteria),
        report.listings_scanned,
        report.duplicates_found,
        report.duplicates_removed,
    )
    return report
