"""Background worker for processing reduction jobs from a queue."""

from __future__ import annotations

import json
import logging
import os
import signal
import time
import urllib.request
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

try:
    import redis
    HAS_REDIS = True
except ImportError:
    HAS_REDIS = False

try:
    import boto3
    HAS_BOTO = True
except ImportError:
    HAS_BOTO = False

from asset_reducer.batch import BatchOrchestrator, unique_levels
from asset_reducer.cache import FolderLayout, QualityCache
from asset_reducer.config import Settings, load_settings
from asset_reducer.errors import InvalidParameter
from asset_reducer.models import QualityLevel, SimplificationOptions, UnitResult
from asset_reducer.quality_spec import parse_preset_list
from asset_reducer.reducer import AssetReducer

logger = logging.getLogger(__name__)

_OPTION_FIELDS = set(SimplificationOptions.__dataclass_fields__) - {"target_ratio"}


def job_levels(params: dict) -> list[QualityLevel]:
    """Quality levels of a job.

    ``params["qualities"]`` is a preset list (list or comma string);
    ``custom`` entries use ``params["ratio"]`` and ``params["options"]``.
    """
    qualities = params.get("qualities", "standard,minimal")
    if isinstance(qualities, (list, tuple)):
        qualities = ",".join(str(q) for q in qualities)
    options = params.get("options") or {}
    unknown = set(options) - _OPTION_FIELDS
    if unknown:
        raise InvalidParameter("options", sorted(unknown), f"keys among {sorted(_OPTION_FIELDS)}")
    return unique_levels(parse_preset_list(qualities, params.get("ratio"), options))


def _units_payload(units: list[UnitResult]) -> list[dict]:
    return [
        {
            "source": unit.source.name,
            "quality": unit.quality.suffix,
            "status": unit.status.value,
            "triangle_count": unit.triangle_count,
            "path": str(unit.path) if unit.success and unit.path else None,
            "error": unit.error_message,
        }
        for unit in units
    ]


class FileQueue:
    """JSON-lines job queue on the local filesystem.

    One job per line; :meth:`pop` removes the first line. Results are
    appended to ``<queue>.results``.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.results_path = self.path.with_name(self.path.name + ".results")

    def push(self, job: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(job) + "\n")

    def pop(self) -> Optional[dict]:
        if not self.path.exists():
            return None
        lines = [line for line in self.path.read_text(encoding="utf-8").splitlines() if line.strip()]
        if not lines:
            return None
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text("".join(line + "\n" for line in lines[1:]), encoding="utf-8")
        os.replace(tmp, self.path)
        return json.loads(lines[0])

    def publish(self, message: dict) -> None:
        with open(self.results_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(message) + "\n")

    def results(self) -> list[dict]:
        if not self.results_path.exists():
            return []
        return [json.loads(line) for line in self.results_path.read_text(encoding="utf-8").splitlines() if line]


class Worker:
    """Background worker that processes jobs from a queue.

    Supports:
    - Redis (redis://host:port/db)
    - AWS SQS (sqs://queue-name or full URL)
    - Local file-based queue (file:///path/to/jobs.jsonl)

    Job types are ``reduce`` (one asset, several quality levels), ``batch``
    (a folder of assets) and ``analyze``.

    Example:
        worker = Worker("redis://localhost:6379/0")
        worker.run()
    """

    def __init__(
        self,
        queue_url: str,
        upload_dir: Optional[Path] = None,
        output_dir: Optional[Path] = None,
        s3_bucket: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """Initialize worker.

        Args:
            queue_url: Queue connection URL
            upload_dir: Local directory for downloaded files
            output_dir: Local directory for output files
            s3_bucket: S3 bucket for input/output (if using S3)
            settings: Settings, defaults to the environment
        """
        self.settings = settings or load_settings()
        self.queue_url = queue_url
        self.upload_dir = Path(upload_dir or self.settings.upload_dir)
        self.output_dir = Path(output_dir or self.settings.output_dir)
        self.s3_bucket = s3_bucket or self.settings.s3_bucket

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.reducer = AssetReducer()
        self.running = False

        # Parse queue URL
        parsed = urlparse(queue_url)
        self.queue_type = parsed.scheme

        if self.queue_type == "redis":
            if not HAS_REDIS:
                raise ImportError("redis package required for Redis queue")
            self.redis = redis.from_url(queue_url)
            self.queue_name = self.settings.queue_name
        elif self.queue_type == "sqs":
            if not HAS_BOTO:
                raise ImportError("boto3 package required for SQS queue")
            self.sqs = boto3.client("sqs")
            self.queue_name = queue_url  # Full SQS URL or queue name
        elif self.queue_type == "file":
            self.file_queue = FileQueue(Path(parsed.netloc + parsed.path))
            self.queue_name = str(self.file_queue.path)
        else:
            raise ValueError(f"Unsupported queue type: {self.queue_type}")

        # S3 client for file transfer
        if self.s3_bucket and HAS_BOTO:
            self.s3 = boto3.client("s3")
        else:
            self.s3 = None

    def run(self, stop_when_empty: bool = False) -> None:
        """Run the worker loop."""
        self.running = True

        # Handle shutdown signals
        def shutdown(signum, frame):
            logger.info("Shutting down worker...")
            self.running = False

        signal.signal(signal.SIGINT, shutdown)
        signal.signal(signal.SIGTERM, shutdown)

        logger.info("Worker started, listening to %s", self.queue_url)

        while self.running:
            try:
                if self.run_once():
                    continue
                if stop_when_empty:
                    break
                time.sleep(1)  # No job, wait before polling again
            except Exception:
                logger.exception("Error fetching job")
                time.sleep(5)  # Wait before retrying

    def run_once(self) -> bool:
        """Process the next job, if any; returns whether one was found."""
        job = self._get_job()
        if not job:
            return False
        self._process_job(job)
        return True

    def _get_job(self) -> Optional[dict]:
        """Get next job from queue."""
        if self.queue_type == "redis":
            # Blocking pop with timeout
            result = self.redis.blpop(self.queue_name, timeout=5)
            if result:
                _, job_data = result
                return json.loads(job_data)

        elif self.queue_type == "sqs":
            response = self.sqs.receive_message(
                QueueUrl=self.queue_name,
                MaxNumberOfMessages=1,
                WaitTimeSeconds=5,
            )
            messages = response.get("Messages", [])
            if messages:
                msg = messages[0]
                # Delete from queue (we'll process it)
                self.sqs.delete_message(
                    QueueUrl=self.queue_name,
                    ReceiptHandle=msg["ReceiptHandle"],
                )
                return json.loads(msg["Body"])

        elif self.queue_type == "file":
            return self.file_queue.pop()

        return None

    def _process_job(self, job: dict) -> None:
        """Process a single job."""
        job_id = job.get("job_id", "unknown")
        logger.info("Processing job %s", job_id)

        try:
            job_type = job.get("type", "reduce")

            if job_type == "reduce":
                self._process_reduce_job(job)
            elif job_type == "batch":
                self._process_batch_job(job)
            elif job_type == "analyze":
                self._process_analyze_job(job)
            else:
                raise ValueError(f"Unknown job type: {job_type}")

            logger.info("Job %s finished", job_id)

        except Exception as e:
            logger.exception("Job %s failed", job_id)
            self._report_failure(job, str(e))

    def _process_reduce_job(self, job: dict) -> None:
        """Produce several quality levels of one asset."""
        job_id = job["job_id"]
        levels = job_levels(job.get("params", {}))

        input_path, downloaded = self._download_input(job)
        output_dir = self.output_dir / job_id
        output_dir.mkdir(parents=True, exist_ok=True)
        plan = [
            (level, output_dir / f"{input_path.stem}_{level.suffix}{self.settings.artifact_ext}")
            for level in levels
        ]

        try:
            with QualityCache(output_dir, overwrite=True, max_workers=self.settings.persist_workers) as cache:
                units = BatchOrchestrator(cache, reducer=self.reducer).export(input_path, plan)
        finally:
            if downloaded:
                input_path.unlink(missing_ok=True)

        outputs = self._upload_units(units, job)
        failed = [unit for unit in units if not unit.success]
        if failed:
            self._report_failure(job, f"{len(failed)} of {len(units)} quality levels failed", outputs)
        else:
            self._report_success(job, {"outputs": outputs})

    def _process_batch_job(self, job: dict) -> None:
        """Process every asset of a local folder."""
        job_id = job["job_id"]
        params = job.get("params", {})
        levels = job_levels(params)

        folder = Path(job.get("input", {}).get("folder", ""))
        output_root = Path(params.get("output_dir") or self.output_dir / job_id)
        layout = FolderLayout(output_root, self.settings.artifact_ext)

        with QualityCache(
            layout,
            overwrite=bool(params.get("overwrite", False)),
            max_workers=self.settings.persist_workers,
        ) as cache:
            for level in levels:
                layout.folder_for(level).mkdir(parents=True, exist_ok=True)
            result = BatchOrchestrator(cache, reducer=self.reducer).run_folder(folder, levels)

        self._report_success(job, {
            **result.summary(),
            "outputs": self._upload_units(result.units, job),
        })

    def _process_analyze_job(self, job: dict) -> None:
        """Process an analysis job."""
        input_path, downloaded = self._download_input(job)
        try:
            analysis = self.reducer.analyze(self.reducer.store.load(input_path))
        finally:
            if downloaded:
                input_path.unlink(missing_ok=True)

        self._report_success(job, {
            "triangle_count": analysis.triangle_count,
            "vertex_count": analysis.vertex_count,
            "part_count": analysis.part_count,
            "material_count": analysis.material_count,
            "has_uvs": analysis.has_uvs,
            "suggested_levels": [
                {"quality": level.suffix, "triangles": triangles}
                for level, triangles in analysis.suggested_levels
            ],
        })

    def _download_input(self, job: dict) -> tuple[Path, bool]:
        """Download input file from S3 or use local path.

        Returns the path and whether it was downloaded (and may be deleted).
        """
        input_info = job.get("input", {})

        if "s3_key" in input_info and self.s3:
            # Download from S3
            local_path = self.upload_dir / Path(input_info["s3_key"]).name
            self.s3.download_file(self.s3_bucket, input_info["s3_key"], str(local_path))
            return local_path, True

        elif "local_path" in input_info:
            return Path(input_info["local_path"]), False

        elif "url" in input_info:
            # Download from URL
            local_path = self.upload_dir / Path(urlparse(input_info["url"]).path).name
            urllib.request.urlretrieve(input_info["url"], local_path)
            return local_path, True

        raise ValueError("No input source specified in job")

    def _upload_units(self, units: list[UnitResult], job: dict) -> list[dict]:
        outputs = _units_payload(units)
        for output, unit in zip(outputs, units):
            if output["path"]:
                output["url"] = self._upload_output(unit.path, job)
        return outputs

    def _upload_output(self, local_path: Path, job: dict) -> str:
        """Upload output file to S3 or return local path."""
        if self.s3 and self.s3_bucket:
            s3_key = f"outputs/{job['job_id']}/{local_path.parent.name}/{local_path.name}"
            self.s3.upload_file(str(local_path), self.s3_bucket, s3_key)
            return f"s3://{self.s3_bucket}/{s3_key}"

        return str(local_path)

    def _report_success(self, job: dict, result: dict) -> None:
        """Report job success (webhook, Redis, etc.)."""
        self._publish(job, {"job_id": job.get("job_id"), "status": "completed", "result": result})

    def _report_failure(self, job: dict, error: str, outputs: Optional[list[dict]] = None) -> None:
        """Report job failure."""
        message: dict[str, Any] = {"job_id": job.get("job_id"), "status": "failed", "error": error}
        if outputs is not None:
            message["result"] = {"outputs": outputs}
        self._publish(job, message)

    def _publish(self, job: dict, message: dict) -> None:
        webhook_url = job.get("webhook_url")
        if webhook_url:
            req = urllib.request.Request(
                webhook_url,
                data=json.dumps(message).encode(),
                headers={"Content-Type": "application/json"},
            )
            try:
                urllib.request.urlopen(req, timeout=10)
            except OSError as e:
                logger.warning("Webhook %s failed for job %s: %s", webhook_url, message["job_id"], e)

        # Also publish to the results channel of the queue
        if self.queue_type == "redis":
            self.redis.publish(f"assetreduce:results:{message['job_id']}", json.dumps(message))
        elif self.queue_type == "file":
            self.file_queue.publish(message)


def run_worker(queue_url: str) -> None:
    """Run the worker."""
    worker = Worker(queue_url)
    worker.run()
