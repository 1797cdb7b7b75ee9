from pydantic import BaseModel, Field


class PruneRequest(BaseModel):
    sources: list[str] | None = None
    dry_run: bool = True


class OrphanedListingOut(BaseModel):
    id: int
    title: str
    company: str
    source_name: str
    source_url: str


class SourcePruneOut(BaseModel):
    source: str
    checked: int
    orphaned: int
    deleted: int
    skipped_reason: str | None = None


class PruneOut(BaseModel):
    dry_run: bool
    jobs_to_delete: int
    jobs_deleted: int
    sources: list[SourcePruneOut]
    orphaned_listings: list[OrphanedListingOut] = Field(default_factory=list)
