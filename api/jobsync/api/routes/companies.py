from fastapi import APIRouter, Depends, HTTPException, Query, status

from jobsync.schemas.companies import (
    CandidateCompaniesCreate,
    CandidateCompaniesCreated,
    CandidateCompanyOut,
    SeedOut,
    SeedRequest,
)
from jobsync.services.discovery import seed_candidates
from jobsync.services.repository import (
    PostgresRepository,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from jobsync.sources.company_sources import CURATED_COMPANY_NAMES

router = APIRouter()


@router.get("", response_model=list[CandidateCompanyOut])
async def list_companies(
    source: str | None = Query(default=None),
    company_status: str | None = Query(default=None, alias="status"),
    repository: PostgresRepository = Depends(get_repository),
) -> list[CandidateCompanyOut]:
    try:
        companies = await repository.list_candidate_companies(source=source, status=company_status)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [
        CandidateCompanyOut(
            source=company.source,
            slug=company.slug,
            status=company.status,
            name=company.name,
            job_count=company.job_count,
            remote_job_count=company.remote_job_count,
            departments=company.departments,
            suggested_category=company.suggested_category,
            sample_jobs=company.sample_jobs,
            check_count=company.check_count,
            last_checked_at=company.last_checked_at,
        )
        for company in companies
    ]


@router.post("", response_model=CandidateCompaniesCreated, status_code=status.HTTP_201_CREATED)
async def add_companies(
    payload: CandidateCompaniesCreate,
    repository: PostgresRepository = Depends(get_repository),
) -> CandidateCompaniesCreated:
    slugs = [slug.strip().lower() for slug in payload.slugs if slug.strip()]
    if not slugs:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="at least one slug is required")
    try:
        inserted = await repository.add_candidate_companies(source=payload.source, slugs=slugs)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CandidateCompaniesCreated(source=payload.source, inserted=inserted)


@router.post("/seed", response_model=SeedOut)
async def seed_companies(
    payload: SeedRequest,
    repository: PostgresRepository = Depends(get_repository),
) -> SeedOut:
    try:
        report = await seed_candidates(
            repository,
            source=payload.source,
            company_names=payload.company_names or CURATED_COMPANY_NAMES,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SeedOut(
        source=report.source,
        generated=report.generated,
        inserted=report.inserted,
        skipped_known=report.skipped_known,
    )
