from fastapi import APIRouter, Depends, HTTPException, status

from jobsync.schemas.listings import OrphanedListingOut, PruneOut, PruneRequest, SourcePruneOut
from jobsync.services.orchestrator import SyncOrchestrator, get_orchestrator
from jobsync.services.repository import RepositoryUnavailableError, RepositoryValidationError
from jobsync.sources.base import NormalizationError

router = APIRouter()


@router.post("/prune", response_model=PruneOut)
async def prune_listings(
    payload: PruneRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> PruneOut:
    try:
        results = await orchestrator.prune_listings(payload.sources, dry_run=payload.dry_run)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except NormalizationError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    orphaned = [listing for result in results for listing in result.orphaned]
    return PruneOut(
        dry_run=payload.dry_run,
        jobs_to_delete=len(orphaned),
        jobs_deleted=sum(result.deleted for result in results),
        sources=[
            SourcePruneOut(
                source=result.source_name,
                checked=result.checked,
                orphaned=len(result.orphaned),
                deleted=result.deleted,
                skipped_reason=result.skipped_reason,
            )
            for result in results
        ],
        orphaned_listings=[
            OrphanedListingOut(
                id=listing.id,
                title=listing.title,
                company=listing.company,
                source_name=listing.source_name,
                source_url=listing.source_url,
            )
            for listing in orphaned
        ],
    )
