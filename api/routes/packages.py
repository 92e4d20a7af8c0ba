from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from api.dependencies import build_package_id, get_indexer, get_parser, get_repo, get_storage
from docs_parser.packages import (
    DOCXParse,
    Indexer,
    LocalPackageStorage,
    PackageRecord,
    PackageStatus,
    ParsingRepository,
    VersionRecord,
    parse_job_id,
)

router = APIRouter(prefix="/packages", tags=["packages"])

DOCX_CONTENT_TYPES = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/octet-stream",
)


def _version_payload(version: VersionRecord) -> dict:
    return {
        "package_id": version.package_id,
        "version_id": version.id,
        "status": version.status,
        "page_count": version.page_count,
        "declared_page_count": version.declared_page_count,
        "engine_version": version.engine_version,
        "error_message": version.error_message or None,
        "job_id": parse_job_id(version.package_id, version.id),
    }


def _require_version(repo: ParsingRepository, package_id: str, version_id: str) -> VersionRecord:
    version = repo.get_version(package_id, version_id)
    if not version:
        raise HTTPException(status_code=404, detail=f"Version not found: {package_id}/{version_id}")
    return version


def _execute(parser: DOCXParse, package_id: str, version_id: str) -> None:
    # With an inline queue the chain runs here, so document errors surface in the request.
    try:
        parser.execute(package_id, version_id)
    except (ValueError, FileNotFoundError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("")
def list_packages(repo: ParsingRepository = Depends(get_repo)):
    return [
        {
            "id": p.id,
            "title": p.title,
            "versions": [_version_payload(v) for v in repo.list_versions(p.id)],
        }
        for p in repo.list_packages()
    ]


@router.post("/upload")
async def upload_package(
    file: UploadFile = File(...),
    title: str = Form(...),
    package_id: Optional[str] = Form(None),
    version_id: Optional[str] = Form(None),
    repo: ParsingRepository = Depends(get_repo),
    storage: LocalPackageStorage = Depends(get_storage),
    parser: DOCXParse = Depends(get_parser),
):
    if file.content_type not in DOCX_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="Only DOCX uploads are supported")
    payload = await file.read()
    if not payload:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    if package_id:
        package = repo.get_package(package_id)
        if not package:
            raise HTTPException(status_code=404, detail=f"Package not found: {package_id}")
    else:
        package = PackageRecord(id=build_package_id(title), title=title)
        if repo.get_package(package.id):
            raise HTTPException(status_code=409, detail=f"Package already exists: {package.id}")
        repo.save_package(package)

    version_id = version_id or f"v{len(repo.list_versions(package.id)) + 1}"
    if repo.get_version(package.id, version_id):
        raise HTTPException(status_code=409, detail=f"Version already exists: {package.id}/{version_id}")

    original_path = storage.write_original_bytes(package.id, version_id, payload)
    repo.save_version(
        VersionRecord(
            id=version_id,
            package_id=package.id,
            original_file_path=str(original_path),
            status=PackageStatus.UPLOADED,
        )
    )

    _execute(parser, package.id, version_id)
    return {"package_id": package.id, "version_id": version_id, "job_id": parse_job_id(package.id, version_id)}


@router.post("/{package_id}/versions/{version_id}/parse")
def trigger_parse(
    package_id: str,
    version_id: str,
    repo: ParsingRepository = Depends(get_repo),
    parser: DOCXParse = Depends(get_parser),
):
    _require_version(repo, package_id, version_id)
    _execute(parser, package_id, version_id)
    return {"package_id": package_id, "version_id": version_id, "job_id": parse_job_id(package_id, version_id)}


@router.get("/{package_id}/versions/{version_id}")
def get_version(package_id: str, version_id: str, repo: ParsingRepository = Depends(get_repo)):
    return _version_payload(_require_version(repo, package_id, version_id))


@router.get("/{package_id}/versions/{version_id}/pages")
def list_pages(package_id: str, version_id: str, repo: ParsingRepository = Depends(get_repo)):
    _require_version(repo, package_id, version_id)
    return [
        {"page": p.page_number, "title": p.title, "parse_status": p.parse_status}
        for p in repo.list_pages_for_version(package_id, version_id)
    ]


@router.get("/{package_id}/versions/{version_id}/pages/{page_number}")
def get_parsed_page(
    package_id: str,
    version_id: str,
    page_number: int,
    repo: ParsingRepository = Depends(get_repo),
):
    page = repo.get_page(package_id, version_id, page_number)
    if not page:
        raise HTTPException(status_code=404, detail=f"Page not found: {package_id}/{version_id} page {page_number}")
    blocks = repo.list_blocks_for_page(package_id, version_id, page_number)
    return {
        "page": page_number,
        "title": page.title,
        "blocks": [
            {
                "id": blk.id,
                "block_type": blk.block_type,
                "level": blk.level,
                "reading_order": blk.reading_order,
                "text": blk.text,
                "markup": blk.markup,
                "asset_id": blk.asset_id,
            }
            for blk in blocks
        ],
    }


@router.get("/{package_id}/versions/{version_id}/search")
def search_version(
    package_id: str,
    version_id: str,
    query: str,
    limit: int = 20,
    repo: ParsingRepository = Depends(get_repo),
    indexer: Indexer = Depends(get_indexer),
):
    if not query or not query.strip():
        raise HTTPException(status_code=400, detail="Query must not be empty")
    _require_version(repo, package_id, version_id)

    hits = []
    for hit in indexer.search(query, package_id=package_id, version_id=version_id, limit=limit):
        hits.append(
            {
                "block_id": hit.get("block_id"),
                "page_id": hit.get("page_id"),
                "page_number": int(hit.get("page_number") or 0),
                "reading_order": int(hit.get("reading_order") or 0),
                "text": hit.get("text") or "",
            }
        )
    return {"hits": hits}
