"""Scan endpoints: start a scan in the background, then poll its record and findings."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from vibetrace.core.config import get_settings
from vibetrace.core.database import SessionLocal
from vibetrace.schemas.findings import FindingOut
from vibetrace.schemas.scan import ScanCreateRequest, ScanCreateResponse, ScanOut
from vibetrace.services.pipeline import ScanJob, ScanPipeline, spawn_scan
from vibetrace.services.scan_store import ScanStore

router = APIRouter()


def get_scan_store() -> ScanStore:
    return ScanStore(SessionLocal)


def get_pipeline(store: Annotated[ScanStore, Depends(get_scan_store)]) -> ScanPipeline:
    return ScanPipeline(store, get_settings())


@router.post("", response_model=ScanCreateResponse, status_code=202)
async def create_scan(
    body: ScanCreateRequest,
    store: Annotated[ScanStore, Depends(get_scan_store)],
    pipeline: Annotated[ScanPipeline, Depends(get_pipeline)],
) -> ScanCreateResponse:
    """
    Create a scan in status 'queued' and start it without waiting.

    At least one of repo_full_name (with access_token) or target_url is required.
    Progress and results are observed by polling GET /scans/{scan_id}.
    """
    if not store.user_exists(body.user_id):
        raise HTTPException(status_code=404, detail="User not found.")

    repository_id = None
    if body.repo_full_name:
        repository_id = store.get_or_create_repository(body.user_id, body.repo_full_name)
    scan_id = store.create_scan(body.user_id, repository_id=repository_id, target_url=body.target_url)

    spawn_scan(
        pipeline,
        ScanJob(
            scan_id=scan_id,
            user_id=body.user_id,
            repo_full_name=body.repo_full_name,
            credential=body.access_token,
            target_url=body.target_url,
            repository_id=repository_id,
        ),
    )
    return ScanCreateResponse(scan_id=scan_id, status="queued")


@router.get("/{scan_id}", response_model=ScanOut)
def get_scan(
    scan_id: int,
    store: Annotated[ScanStore, Depends(get_scan_store)],
) -> ScanOut:
    """Current status, counters and score of a scan (score is null until complete)."""
    scan = store.get_scan(scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail="Scan not found.")
    return ScanOut.model_validate(scan)


@router.get("/{scan_id}/findings", response_model=list[FindingOut])
def list_scan_findings(
    scan_id: int,
    store: Annotated[ScanStore, Depends(get_scan_store)],
) -> list[FindingOut]:
    """Persisted findings of a scan with their narratives; raw tool output is not returned."""
    if store.get_scan(scan_id) is None:
        raise HTTPException(status_code=404, detail="Scan not found.")
    return [FindingOut.model_validate(f) for f in store.list_findings(scan_id)]
