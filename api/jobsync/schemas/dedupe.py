from typing import Literal

from pydantic import BaseModel, Field


class DedupeRequest(BaseModel):
    criteria: list[Literal["title", "company", "salary", "description"]] = Field(
        default_factory=lambda: ["title", "company"],
        min_length=1,
    )
    dry_run: bool = True
    source_name: str | None = None


class DuplicateGroupOut(BaseModel):
    key: list[str]
    kept_id: int
    removed_ids: list[int]


class DedupeOut(BaseModel):
    criteria: list[str]
    dry_run: bool
    listings_scanned: int
    duplicates_found: int
    duplicates_removed: int
    groups: list[DuplicateGroupOut]
    failed_groups: list[DuplicateGroupOut] = Field(default_factory=list)
