"""REST API routes for the subtitle uploader."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from uploader.core.discovery import discover
from uploader.core.errors import (
    ConfigurationError,
    NetworkError,
    NotFoundError,
    ServerRejection,
    UploaderError,
    ValidationError,
)
from uploader.models.identity import MovieIdentity
from uploader.models.stages import StageName
from uploader.models.upload import UploadOptions
from uploader.services.pipeline import PipelineOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["pipeline"])


# Request/Response Models
class DropRequest(BaseModel):
    """Request model for loading a folder."""

    root: str


class DropResponse(BaseModel):
    generation: int
    files: int
    groups: int
    orphans: int


class IdentityRequest(BaseModel):
    """Request model for a manual movie selection."""

    path: str
    imdb_id: str
    title: str
    year: int | None = None
    kind: str = "movie"
    season: int | None = None
    episode: int | None = None
    parent_imdb_id: str | None = None
    parent_title: str | None = None


class RetryRequest(BaseModel):
    path: str
    stage: StageName


class UploadRequest(BaseModel):
    """Request model for an upload batch. No paths means every subtitle."""

    paths: list[str] | None = None
    options: UploadOptions | None = None
    per_file_options: dict[str, UploadOptions] | None = None


_STATUS_BY_ERROR: list[tuple[type[UploaderError], int]] = [
    (NotFoundError, 404),
    (ValidationError, 400),
    (ConfigurationError, 503),
    (NetworkError, 502),
    (ServerRejection, 502),
]


def _http_error(error: UploaderError) -> HTTPException:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def get_pipeline(request: Request) -> PipelineOrchestrator:
    """Dependency: the orchestrator built at application start."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not started")
    return pipeline


@router.post("/drops", response_model=DropResponse)
async def load_drop(request: DropRequest, pipeline: PipelineOrchestrator = Depends(get_pipeline)):
    """Scan a folder, pair its files and start processing them."""
    try:
        files = await discover(request.root)
    except UploaderError as e:
        raise _http_error(e) from None

    generation = await pipeline.load(files, root=request.root)
    pairing = pipeline.ctx.pairing
    return DropResponse(
        generation=generation,
        files=len(pipeline.ctx.files),
        groups=len(pairing.groups),
        orphans=len(pairing.orphans),
    )


@router.delete("/drops")
async def clear_drop(pipeline: PipelineOrchestrator = Depends(get_pipeline)):
    """Discard the current file set."""
    generation = await pipeline.clear()
    return {"status": "cleared", "generation": generation}


@router.get("/files")
async def list_files(pipeline: PipelineOrchestrator = Depends(get_pipeline)):
    """Every loaded file with its per-stage state."""
    return pipeline.snapshot()


@router.get("/groups")
async def list_groups(pipeline: PipelineOrchestrator = Depends(get_pipeline)):
    """Paired groups and orphaned subtitles."""
    return pipeline.ctx.pairing.to_dict()


@router.post("/files/identity")
async def set_identity(request: IdentityRequest, pipeline: PipelineOrchestrator = Depends(get_pipeline)):
    """Assign a movie to a file by hand."""
    try:
        identity = MovieIdentity(**request.model_dump(exclude={"path"}), source="manual")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None

    try:
        updated = await pipeline.set_identity(request.path, identity)
    except UploaderError as e:
        raise _http_error(e) from None
    return {"status": "ok", "updated": updated, "identity": identity.model_dump()}


@router.get("/movies/search")
async def search_movies(
    q: str = Query(..., min_length=2),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    """Candidate movies for manual selection."""
    try:
        results = await pipeline.search_movies(q)
    except UploaderError as e:
        raise _http_error(e) from None
    return [identity.model_dump() for identity in results]


@router.post("/files/retry")
async def retry_stage(request: RetryRequest, pipeline: PipelineOrchestrator = Depends(get_pipeline)):
    """Reset a stage and run it again."""
    try:
        await pipeline.retry_stage(request.path, request.stage)
    except UploaderError as e:
        raise _http_error(e) from None
    return {"status": "scheduled", "path": request.path, "stage": request.stage.value}


@router.post("/upload")
async def upload(request: UploadRequest, pipeline: PipelineOrchestrator = Depends(get_pipeline)):
    """Submit upload-ready subtitles. Per-file failures are reported, not raised."""
    report = await pipeline.upload(
        paths=request.paths,
        options=request.options,
        per_file_options=request.per_file_options,
    )
    return report.to_dict()


@router.get("/cache")
async def cache_stats(pipeline: PipelineOrchestrator = Depends(get_pipeline)):
    return await pipeline.ctx.cache.stats()


@router.delete("/cache")
async def clear_cache(pipeline: PipelineOrchestrator = Depends(get_pipeline)):
    """Remove every cached remote result."""
    removed = await pipeline.ctx.cache.clear()
    logger.info(f"Cache cleared via API ({removed} entries)")
    return {"status": "cleared", "removed": removed}
