"""REST API for the asset-reducer service."""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

try:
    from fastapi import BackgroundTasks, FastAPI, File, HTTPException, UploadFile
    from fastapi.responses import FileResponse
    from pydantic import BaseModel, Field
    HAS_API = True
except ImportError:
    HAS_API = False

from asset_reducer import __version__
from asset_reducer.batch import BatchOrchestrator, unique_levels
from asset_reducer.cache import QualityCache
from asset_reducer.config import load_settings
from asset_reducer.errors import InvalidParameter, ReducerError
from asset_reducer.models import QualityLevel, UnitResult
from asset_reducer.quality_spec import parse_preset_list
from asset_reducer.reducer import AssetReducer

logger = logging.getLogger(__name__)

if HAS_API:
    # =========================================================================
    # Models
    # =========================================================================

    class JobStatus(str, Enum):
        PENDING = "pending"
        PROCESSING = "processing"
        COMPLETED = "completed"
        FAILED = "failed"

    class JobResponse(BaseModel):
        """Response for job creation."""
        job_id: str
        status: JobStatus
        message: str
        qualities: list[str]
        created_at: datetime

    class LevelOutput(BaseModel):
        """One produced quality level."""
        quality: str
        status: str
        triangle_count: int = 0
        download_url: Optional[str] = None
        error_message: Optional[str] = None

    class JobStatusResponse(BaseModel):
        """Response for job status query."""
        job_id: str
        status: JobStatus
        progress: float = 0.0
        outputs: list[LevelOutput] = Field(default_factory=list)
        error_message: Optional[str] = None
        created_at: datetime
        completed_at: Optional[datetime] = None

    class AnalysisResponse(BaseModel):
        """Response for asset analysis."""
        triangle_count: int
        vertex_count: int
        part_count: int
        node_count: int
        material_count: int
        texture_count: int
        has_normals: bool
        has_uvs: bool
        boundary_edge_count: int
        bounds_min: tuple[float, float, float]
        bounds_max: tuple[float, float, float]
        texture_formats: dict[str, int]
        suggested_levels: list[dict]

    # =========================================================================
    # In-memory job store (replace with Redis/DB in production)
    # =========================================================================

    class JobStore:
        """Simple in-memory job store."""

        def __init__(self):
            self.jobs: dict[str, dict] = {}

        def create(self, job_type: str, params: dict) -> str:
            job_id = str(uuid.uuid4())[:8]
            self.jobs[job_id] = {
                "id": job_id,
                "type": job_type,
                "status": JobStatus.PENDING,
                "params": params,
                "progress": 0.0,
                "result": None,
                "error": None,
                "created_at": datetime.now(),
                "completed_at": None,
            }
            return job_id

        def get(self, job_id: str) -> Optional[dict]:
            return self.jobs.get(job_id)

        def update(self, job_id: str, **kwargs):
            if job_id in self.jobs:
                self.jobs[job_id].update(kwargs)

        def set_completed(self, job_id: str, result: dict):
            self.update(
                job_id,
                status=JobStatus.COMPLETED,
                result=result,
                completed_at=datetime.now(),
                progress=1.0,
            )

        def set_failed(self, job_id: str, error: str, result: Optional[dict] = None):
            self.update(
                job_id,
                status=JobStatus.FAILED,
                error=error,
                result=result,
                completed_at=datetime.now(),
            )

    # =========================================================================
    # App
    # =========================================================================

    app = FastAPI(
        title="Asset Reducer API",
        description="Multi-quality polygon and texture reduction service",
        version=__version__,
    )

    settings = load_settings()
    UPLOAD_DIR = settings.upload_dir
    OUTPUT_DIR = settings.output_dir

    job_store = JobStore()
    reducer = AssetReducer()

    async def _save_upload(file: UploadFile) -> Path:
        filename = Path(file.filename or "").name
        if not filename or not reducer.store.can_load(filename):
            raise HTTPException(400, f"Unsupported file type: {file.filename}")
        upload_path = UPLOAD_DIR / str(uuid.uuid4())[:8] / filename
        upload_path.parent.mkdir(parents=True, exist_ok=True)
        with open(upload_path, "wb") as f:
            content = await file.read()
            f.write(content)
        return upload_path

    def _parse_levels(qualities: str, ratio: Optional[float]) -> list[QualityLevel]:
        try:
            return unique_levels(parse_preset_list(qualities, ratio))
        except InvalidParameter as e:
            raise HTTPException(400, e.message)

    # =========================================================================
    # Endpoints
    # =========================================================================

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
        }

    @app.post("/analyze", response_model=AnalysisResponse)
    async def analyze_asset(file: UploadFile = File(...)):
        """Analyze an asset file without reducing it."""
        file_path = await _save_upload(file)
        try:
            loop = asyncio.get_running_loop()
            asset = await loop.run_in_executor(None, reducer.store.load, file_path)
            analysis = reducer.analyze(asset)
        except ReducerError as e:
            raise HTTPException(400, e.message)
        finally:
            shutil.rmtree(file_path.parent, ignore_errors=True)

        return AnalysisResponse(
            triangle_count=analysis.triangle_count,
            vertex_count=analysis.vertex_count,
            part_count=analysis.part_count,
            node_count=analysis.node_count,
            material_count=analysis.material_count,
            texture_count=analysis.texture_count,
            has_normals=analysis.has_normals,
            has_uvs=analysis.has_uvs,
            boundary_edge_count=analysis.boundary_edge_count,
            bounds_min=analysis.bounds_min,
            bounds_max=analysis.bounds_max,
            texture_formats=analysis.texture_formats,
            suggested_levels=[
                {"quality": level.suffix, "target_ratio": level.target_ratio, "triangles": triangles}
                for level, triangles in analysis.suggested_levels
            ],
        )

    @app.post("/reduce", response_model=JobResponse)
    async def reduce_asset(
        background_tasks: BackgroundTasks,
        file: UploadFile = File(...),
        qualities: str = "standard,minimal",
        ratio: Optional[float] = None,
    ):
        """Submit an asset for reduction. Returns job ID for status polling.

        ``qualities`` is a comma-separated preset list; ``custom`` entries
        take their target ratio from ``ratio``.
        """
        levels = _parse_levels(qualities, ratio)
        file_path = await _save_upload(file)

        job_id = job_store.create("reduce", {
            "file_path": str(file_path),
            "filename": file_path.name,
            "levels": levels,
        })

        background_tasks.add_task(process_reduce_job, job_id)

        return JobResponse(
            job_id=job_id,
            status=JobStatus.PENDING,
            message="Job submitted successfully",
            qualities=[level.suffix for level in levels],
            created_at=job_store.get(job_id)["created_at"],
        )

    @app.get("/jobs/{job_id}", response_model=JobStatusResponse)
    async def get_job_status(job_id: str):
        """Get status of a reduction job."""
        job = job_store.get(job_id)
        if not job:
            raise HTTPException(404, "Job not found")

        result = job.get("result") or {}
        outputs = [
            LevelOutput(
                quality=suffix,
                status=output["status"],
                triangle_count=output["triangle_count"],
                download_url=f"/download/{job_id}/{suffix}" if output["path"] else None,
                error_message=output["error"],
            )
            for suffix, output in result.get("outputs", {}).items()
        ]

        return JobStatusResponse(
            job_id=job_id,
            status=job["status"],
            progress=job["progress"],
            outputs=outputs,
            error_message=job.get("error"),
            created_at=job["created_at"],
            completed_at=job.get("completed_at"),
        )

    @app.get("/download/{job_id}/{quality}")
    async def download_result(job_id: str, quality: str):
        """Download one produced quality level."""
        job = job_store.get(job_id)
        if not job:
            raise HTTPException(404, "Job not found")

        if job["status"] not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise HTTPException(400, "Job not completed")

        output = (job.get("result") or {}).get("outputs", {}).get(quality)
        if not output or not output["path"]:
            raise HTTPException(404, f"No output for quality {quality}")

        output_path = Path(output["path"])
        if not output_path.exists():
            raise HTTPException(404, "Output file not found")

        return FileResponse(
            output_path,
            filename=output_path.name,
            media_type="application/octet-stream",
        )

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _run_export(job_id: str, source: Path, levels: list[QualityLevel]) -> list[UnitResult]:
        job_dir = OUTPUT_DIR / job_id
        job_dir.mkdir(parents=True, exist_ok=True)
        plan = [(level, job_dir / f"{source.stem}_{level.suffix}{settings.artifact_ext}") for level in levels]

        def on_progress(current: int, total: int, label: str) -> None:
            job_store.update(job_id, progress=(current - 1) / total)

        with QualityCache(job_dir, overwrite=True, max_workers=settings.persist_workers) as cache:
            return BatchOrchestrator(cache, reducer=reducer).export(source, plan, progress=on_progress)

    async def process_reduce_job(job_id: str):
        """Process a reduction job in the background."""
        job = job_store.get(job_id)
        if not job:
            return

        job_store.update(job_id, status=JobStatus.PROCESSING)

        params = job["params"]
        file_path = Path(params["file_path"])

        try:
            # Run reduction (blocking, in thread pool)
            loop = asyncio.get_running_loop()
            units = await loop.run_in_executor(
                None,
                lambda: _run_export(job_id, file_path, params["levels"]),
            )

            result = {
                "outputs": {
                    unit.quality.suffix: {
                        "status": unit.status.value,
                        "triangle_count": unit.triangle_count,
                        "path": str(unit.path) if unit.success and unit.path else None,
                        "error": unit.error_message,
                    }
                    for unit in units
                },
            }
            failed = [unit for unit in units if not unit.success]
            if failed:
                job_store.set_failed(
                    job_id,
                    f"{len(failed)} of {len(units)} quality levels failed",
                    result,
                )
            else:
                job_store.set_completed(job_id, result)

        except ReducerError as e:
            logger.error("Job %s failed: %s", job_id, e)
            job_store.set_failed(job_id, e.message)

        except Exception as e:
            logger.exception("Job %s failed", job_id)
            job_store.set_failed(job_id, str(e))

        finally:
            # Clean up upload
            shutil.rmtree(file_path.parent, ignore_errors=True)

    # =========================================================================
    # Run
    # =========================================================================

    def run_server(host: str = "0.0.0.0", port: int = 8000):
        """Run the API server."""
        import uvicorn
        uvicorn.run(app, host=host, port=port)

else:
    app = None

    def run_server(*args, **kwargs):
        raise ImportError("API dependencies not installed. Run: pip install asset-reducer[api]")
