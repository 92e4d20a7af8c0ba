from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_repo
from docs_parser.packages import ParsingRepository

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}")
def get_job(job_id: str, repo: ParsingRepository = Depends(get_repo)):
    job = repo.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return {
        "id": job.id,
        "package_id": job.package_id,
        "version_id": job.version_id,
        "state": job.state,
        "phase": job.phase,
        "current_page": job.current_page,
        "total_pages": job.total_pages,
        "error_message": job.error_message,
    }
