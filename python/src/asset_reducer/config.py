"""Environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

ENV_PREFIX = "ASSET_REDUCER_"

DEFAULT_ARTIFACT_EXT = ".lodz"


@dataclass(frozen=True)
class Settings:
    """Runtime settings shared by the CLI, API and worker."""

    cache_dir: Path
    artifact_ext: str = DEFAULT_ARTIFACT_EXT
    persist_workers: int = 4
    log_level: str = "INFO"
    upload_dir: Path = Path("/tmp/assetreduce/uploads")
    output_dir: Path = Path("/tmp/assetreduce/outputs")
    queue_name: str = "assetreduce:jobs"
    s3_bucket: Optional[str] = None


def _normalize_ext(ext: str) -> str:
    ext = ext.strip()
    return ext if ext.startswith(".") else f".{ext}"


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from ``ASSET_REDUCER_*`` environment variables."""
    env = os.environ if env is None else env

    def get(key: str, default: Optional[str] = None) -> Optional[str]:
        value = env.get(ENV_PREFIX + key)
        return value if value else default

    workers = get("PERSIST_WORKERS", "4")
    try:
        persist_workers = max(1, int(workers))
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}PERSIST_WORKERS must be an integer, got {workers!r}") from None

    return Settings(
        cache_dir=Path(get("CACHE_DIR", str(Path.home() / ".cache" / "assetreduce"))),
        artifact_ext=_normalize_ext(get("ARTIFACT_EXT", DEFAULT_ARTIFACT_EXT)),
        persist_workers=persist_workers,
        log_level=get("LOG_LEVEL", "INFO").upper(),
        upload_dir=Path(get("UPLOAD_DIR", "/tmp/assetreduce/uploads")),
        output_dir=Path(get("OUTPUT_DIR", "/tmp/assetreduce/outputs")),
        queue_name=get("QUEUE_NAME", "assetreduce:jobs"),
        s3_bucket=get("S3_BUCKET"),
    )
