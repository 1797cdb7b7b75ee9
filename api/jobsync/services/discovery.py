from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal, Protocol

from jobsync.services.repository import CandidateCompanyRecord, CompanyProbeUpdate
from jobsync.sources.base import BoardSource, NormalizationError, SourceFetchError, SourceNotFoundError

logger = logging.getLogger(__name__)

ProbeOutcome = Literal["success", "not_found", "transient"]

SAMPLE_TITLE_LIMIT = 5
DEFAULT_BUCKET = "saas-products"
# Highest score wins; earlier buckets win ties.
SUGGESTION_BUCKETS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("tech-giants", ("enterprise", "global", "director", "vp", "principal")),
    ("saas-products", ("product", "saas", "software", "application")),
    ("developer-tools", ("developer", "api", "sdk", "platform", "tools", "engineering")),
    ("crypto-web3", ("crypto", "blockchain", "web3", "token", "defi", "nft")),
)

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True)
class ProbeResult:
    source: str
    slug: str
    outcome: ProbeOutcome
    job_count: int = 0
    remote_job_count: int = 0
    departments: list[str] = field(default_factory=list)
    sample_jobs: list[str] = field(default_factory=list)
    suggested_category: str | None = None
    error: str | None = None

    @property
    def has_remote_jobs(self) -> bool:
        return self.outcome == "success" and self.remote_job_count > 0


@dataclass(slots=True)
class ProbeDecision:
    update: CompanyProbeUpdate
    message: str
    level: str
    companies_added: int = 0
    companies_deleted: int = 0


@dataclass(slots=True)
class SeedReport:
    source: str
    generated: int = 0
    inserted: int = 0
    skipped_known: int = 0


def suggest_bucket(titles: list[str], departments: list[str]) -> str:
    text = " ".join([*titles, *departments]).lower()
    best_bucket = DEFAULT_BUCKET
    best_score = 0
    for bucket, keywords in SUGGESTION_BUCKETS:
        score = sum(1 for keyword in keywords if keyword in text)
        if score > best_score:
            best_bucket = bucket
            best_score = score
    return best_bucket


def generate_slug_variations(company_name: str) -> list[str]:
    """Hyphenated, concatenated and verbatim slug guesses for a company name."""
    cleaned = _SLUG_STRIP_RE.sub("", company_name.lower()).strip()
    if not cleaned:
        return []
    hyphenated = _WHITESPACE_RE.sub("-", cleaned)
    concatenated = _WHITESPACE_RE.sub("", cleaned)
    variations: list[str] = []
    for variation in (hyphenated, concatenated, cleaned):
        if variation not in variations:
            variations.append(variation)
    return variations


def candidate_slugs(company_names: list[str], known_slugs: set[str]) -> list[str]:
    slugs: list[str] = []
    seen = set(known_slugs)
    for name in company_names:
        for slug in generate_slug_variations(name):
            if slug in seen:
                continue
            seen.add(slug)
            slugs.append(slug)
    return slugs


class CompanyProber:
    """Classifies a candidate slug against a board provider.

    Transient failures are retried by the source's ProviderClient up to its
    attempt cap; a probe still failing afterwards reports `transient`.
    """

    def __init__(self, source: BoardSource) -> None:
        self.source = source

    async def probe(self, slug: str) -> ProbeResult:
        source_name = self.source.source_name
        try:
            payload = await self.source.fetch_board(slug)
            postings = self.source.postings(payload)
        except SourceNotFoundError as exc:
            return ProbeResult(source=source_name, slug=slug, outcome="not_found", error=str(exc))
        except SourceFetchError as exc:
            outcome: ProbeOutcome = "transient" if exc.transient else "not_found"
            return ProbeResult(source=source_name, slug=slug, outcome=outcome, error=str(exc))
        except NormalizationError as exc:
            return ProbeResult(source=source_name, slug=slug, outcome="not_found", error=str(exc))

        remote = [posting for posting in postings if self.source.is_remote(posting)]
        departments: list[str] = []
        for posting in remote:
            for department in self.source.posting_departments(posting):
                if department not in departments:
                    departments.append(department)
        sample_jobs = [self.source.posting_title(posting) for posting in remote[:SAMPLE_TITLE_LIMIT]]
        return ProbeResult(
            source=source_name,
            slug=slug,
            outcome="success",
            job_count=len(postings),
            remote_job_count=len(remote),
            departments=departments,
            sample_jobs=sample_jobs,
            suggested_category=suggest_bucket(sample_jobs, departments) if remote else None,
        )


def decide_probe(company: CandidateCompanyRecord, result: ProbeResult, *, checked_at: datetime) -> ProbeDecision:
    """Turn a probe result into the candidate's next status and a log line.

    Pending and not_found candidates become `added` only with remote postings;
    anything else leaves them `not_found` for this run. Added companies are
    demoted only when the provider confirms the board is gone.
    """
    label = f"{result.source}/{result.slug}"
    update = CompanyProbeUpdate(
        status=company.status,
        checked_at=checked_at,
        job_count=result.job_count,
        remote_job_count=result.remote_job_count,
        departments=result.departments,
        suggested_category=result.suggested_category,
        sample_jobs=result.sample_jobs,
    )

    if company.status == "added":
        if result.outcome == "not_found":
            update.status = "not_found"
            return ProbeDecision(update, f"{label}: board gone, removed from sync set", "warning", companies_deleted=1)
        if result.outcome == "transient":
            update.job_count = company.job_count
            update.remote_job_count = company.remote_job_count
            update.departments = company.departments
            update.sample_jobs = company.sample_jobs
            return ProbeDecision(update, f"{label}: probe failed ({result.error}); keeping", "warning")
        return ProbeDecision(update, f"{label}: still active, {result.remote_job_count} remote job(s)", "info")

    if result.has_remote_jobs:
        update.status = "added"
        return ProbeDecision(
            update,
            f"{label}: found {result.remote_job_count} remote job(s), suggested {result.suggested_category}",
            "success",
            companies_added=1,
        )

    update.status = "not_found"
    if result.outcome == "success":
        return ProbeDecision(update, f"{label}: no remote jobs", "info")
    if result.outcome == "transient":
        return ProbeDecision(update, f"{label}: probe failed after retries ({result.error})", "warning")
    return ProbeDecision(update, f"{label}: no board", "info")


class CandidateRepository(Protocol):
    async def list_candidate_companies(
        self,
        *,
        source: str | None = None,
        status: str | None = None,
    ) -> list[CandidateCompanyRecord]: ...

    async def list_candidate_companies_due(
        self,
        *,
        source: str,
        status: str,
        checked_before: datetime | None,
        limit: int,
    ) -> list[CandidateCompanyRecord]: ...

    async def add_candidate_companies(self, *, source: str, slugs: list[str]) -> int: ...

    async def delete_candidate_companies(self, *, source: str, slugs: list[str]) -> int: ...


async def plan_probes(
    repository: CandidateRepository,
    *,
    source: str,
    now: datetime,
    batch_size: int,
    recheck_after_hours: int,
) -> list[CandidateCompanyRecord]:
    """Pending candidates first, then added and not_found ones past the re-check age."""
    recheck_before = now - timedelta(hours=recheck_after_hours)
    planned = await repository.list_candidate_companies_due(
        source=source, status="pending", checked_before=None, limit=batch_size
    )
    for status in ("added", "not_found"):
        planned.extend(
            await repository.list_candidate_companies_due(
                source=source, status=status, checked_before=recheck_before, limit=batch_size
            )
        )
    return planned


async def prune_not_found(repository: CandidateRepository, *, source: str, prune_after_checks: int) -> list[str]:
    candidates = await repository.list_candidate_companies(source=source, status="not_found")
    exhausted = [company.slug for company in candidates if company.check_count >= prune_after_checks]
    if exhausted:
        await repository.delete_candidate_companies(source=source, slugs=exhausted)
    return exhausted


async def seed_candidates(
    repository: CandidateRepository,
    *,
    source: str,
    company_names: list[str],
) -> SeedReport:
    known = {company.slug for company in await repository.list_candidate_companies(source=source)}
    generated = [slug for name in company_names for slug in generate_slug_variations(name)]
    slugs = candidate_slugs(company_names, known)
    inserted = await repository.add_candidate_companies(source=source, slugs=slugs)
    logger.info("seeded candidate companies source=%s generated=%s inserted=%s", source, len(generated), inserted)
    return SeedReport(
        source=source,
        generated=len(set(generated)),
        inserted=inserted,
        skipped_known=len(set(generated) & known),
    )
