from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

BoardSourceName = Literal["greenhouse", "lever", "workable"]


class CandidateCompanyOut(BaseModel):
    source: str
    slug: str
    status: str
    name: str | None = None
    job_count: int = 0
    remote_job_count: int = 0
    departments: list[str] = Field(default_factory=list)
    suggested_category: str | None = None
    sample_jobs: list[str] = Field(default_factory=list)
    check_count: int = 0
    last_checked_at: datetime | None = None


class CandidateCompaniesCreate(BaseModel):
    source: BoardSourceName
    slugs: list[str] = Field(min_length=1)


class CandidateCompaniesCreated(BaseModel):
    source: str
    inserted: int


class SeedRequest(BaseModel):
    source: BoardSourceName
    company_names: list[str] | None = None


class SeedOut(BaseModel):
    source: str
    generated: int
    inserted: int
    skipped_known: int
