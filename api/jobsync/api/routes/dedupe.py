from fastapi import APIRouter, Depends, HTTPException, status

from jobsync.schemas.dedupe import DedupeOut, DedupeRequest, DuplicateGroupOut
from jobsync.services.dedupe import DuplicateGroup, run_dedupe
from jobsync.services.repository import PostgresRepository, RepositoryUnavailableError, get_repository

router = APIRouter()


@router.post("", response_model=DedupeOut)
async def deduplicate_listings(
    payload: DedupeRequest,
    repository: PostgresRepository = Depends(get_repository),
) -> DedupeOut:
    try:
        report = await run_dedupe(
            repository,
            criteria=list(payload.criteria),
            dry_run=payload.dry_run,
            source_name=payload.source_name,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DedupeOut(
        criteria=report.criteria,
        dry_run=report.dry_run,
        listings_scanned=report.listings_scanned,
        duplicates_found=report.duplicates_found,
        duplicates_removed=report.duplicates_removed,
        groups=[_group_out(group) for group in report.groups],
        failed_groups=[_group_out(group) for group in report.failed_groups],
    )


def _group_out(group: DuplicateGroup) -> DuplicateGroupOut:
    return DuplicateGroupOut(key=list(group.key), kept_id=group.kept_id, removed_ids=group.removed_ids)
