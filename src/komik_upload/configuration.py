from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import HealthReport

# Load environment variables from .env file
load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [_HERE.parent / "config/config.yaml"]

if os.environ.get("KOMIK_UPLOAD_CONFIG"):
    _CANDIDATE_CONFIG_PATHS.insert(0, Path(os.environ["KOMIK_UPLOAD_CONFIG"]))

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
if CONFIG_PATH is None:  # pragma: no cover - fail fast in misconfigured environments
    raise FileNotFoundError("Default config.yaml could not be located; set KOMIK_UPLOAD_CONFIG or reinstall the package.")

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "KOMIK_DATA_DIR": "paths.data_dir",
    "KOMIK_MASTER_KEY": "auth.master_key",
    "KOMIK_STORAGE_BACKEND": "storage.backend",
    "KOMIK_STORAGE_ROOT": "storage.local_root",
    "S3_BUCKET_NAME": "storage.bucket",
}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the effective configuration.

    Precedence, lowest first: bundled config.yaml, environment variables
    (including those loaded from .env), then explicit overrides.
    """
    base = OmegaConf.create(get_default_config_container(resolve=False))
    OmegaConf.set_struct(base, True)

    for env_name, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            OmegaConf.update(base, key, value)

    if overrides:
        base = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides)))
    return base


def build_health_report(config: DictConfig, storage_ready: bool) -> HealthReport:
    storage = config.storage
    thumbnail = config.thumbnail
    return HealthReport(
        status="healthy" if storage_ready else "degraded",
        primary_remote=str(storage.primary_target),
        backup_remotes=[str(target) for target in storage.backup_targets],
        mirror_enabled=bool(storage.mirror_enabled),
        temp_dir=str(config.paths.staging_dir),
        max_file_size_mb=int(config.upload.max_file_size_mb),
        allowed_extensions=sorted(str(ext) for ext in config.upload.allowed_extensions),
        active_storage_group={
            "backend": str(storage.backend),
            "primary_remote": str(storage.primary_target),
            "bucket": str(storage.bucket) if storage.backend == "s3" else None,
            "key_prefix": str(storage.key_prefix),
            "max_connections": int(storage.max_connections),
            "requests_per_second": float(storage.requests_per_second),
        },
        thumbnail={
            "enabled": bool(thumbnail.enabled),
            "target_size": f"{thumbnail.target_width}x{thumbnail.target_height}",
            "aspect_ratio": str(thumbnail.aspect_ratio),
            "quality": int(thumbnail.quality),
        },
        features={str(name): bool(flag) for name, flag in config.features.items()},
    )
