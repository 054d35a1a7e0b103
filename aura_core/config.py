import os
from dataclasses import dataclass
from functools import lru_cache

from aura_core.storage.paths import (
    backend_scheme,
    data_root,
    has_uri_scheme,
    join_uri,
    normalize_bucket_uri,
)

DEFAULT_STAGE_PERCENTAGES = (5, 30, 100)


@dataclass(frozen=True)
class Config:
    env: str
    log_level: str
    storage_backend: str
    local_data_root: str | None
    data_bucket: str
    data_prefix: str
    device_db_path: str | None
    stage_percentages: tuple[int, ...]
    rollout_poll_interval_s: float
    rollout_max_workers: int
    rollout_runner_enabled: bool
    health_window_s: float
    health_max_silent_fraction: float
    health_read_backoff_s: float
    health_read_max_attempts: int
    firmware_max_bytes: int
    firmware_download_base_url: str | None
    api_prefix: str
    fleet_api_key: str | None
    device_cert_validity_days: int = 365
    pki_ca_key_bits: int = 4096

    def data_root_uri(self) -> str:
        if self.storage_backend == "local":
            if not self.local_data_root:
                raise ValueError("LOCAL_DATA_ROOT is required for local storage")
            return self.local_data_root
        return data_root(self.bucket_uri(self.data_bucket), self.data_prefix)

    def storage_scheme(self) -> str | None:
        return backend_scheme(self.storage_backend)

    def bucket_uri(self, bucket: str) -> str:
        scheme = self.storage_scheme()
        if scheme is None and not has_uri_scheme(bucket):
            raise ValueError(
                "Bucket must include a URI scheme when STORAGE_BACKEND="
                f"{self.storage_backend} (example: s3://bucket)"
            )
        return normalize_bucket_uri(bucket, scheme=scheme)

    def registry_db_path(self) -> str:
        if self.device_db_path:
            return self.device_db_path
        if self.storage_backend != "local":
            raise ValueError("DEVICE_DB_PATH is required for remote storage backends")
        return join_uri(self.data_root_uri(), "control", "devices.db")

    @classmethod
    def from_env(cls) -> "Config":
        missing: list[str] = []

        def require(name: str) -> str:
            value = os.getenv(name)
            if value is None or value == "":
                missing.append(name)
                return ""
            return value

        storage_backend = os.getenv("STORAGE_BACKEND", "local").strip().lower()
        allowed_backends = {"local", "gcs", "gs", "s3", "azure", "memory", "remote"}
        if storage_backend not in allowed_backends:
            allowed = ", ".join(sorted(allowed_backends))
            raise ValueError(f"STORAGE_BACKEND must be one of: {allowed}")

        remote_required = storage_backend != "local"
        data_bucket = require("DATA_BUCKET") if remote_required else os.getenv(
            "DATA_BUCKET", ""
        )
        data_prefix = os.getenv("DATA_PREFIX", "aura").strip("/")
        local_data_root = os.getenv("LOCAL_DATA_ROOT")
        if storage_backend == "local" and not local_data_root:
            missing.append("LOCAL_DATA_ROOT")
        env = require("ENV")
        log_level = require("LOG_LEVEL")

        stage_percentages = parse_stage_percentages(
            os.getenv("ROLLOUT_STAGE_PERCENTAGES")
        )
        rollout_poll_interval_s = _parse_float(
            os.getenv("ROLLOUT_POLL_INTERVAL_S", "10")
        )
        rollout_max_workers = int(os.getenv("ROLLOUT_MAX_WORKERS", "4"))
        rollout_runner_enabled = _parse_bool(os.getenv("ROLLOUT_RUNNER"), True)
        health_window_s = _parse_float(os.getenv("HEALTH_WINDOW_S", "300"))
        health_max_silent_fraction = _parse_float(
            os.getenv("HEALTH_MAX_SILENT_FRACTION", "0")
        )
        if not 0.0 <= health_max_silent_fraction <= 1.0:
            raise ValueError("HEALTH_MAX_SILENT_FRACTION must be between 0 and 1")
        health_read_backoff_s = _parse_float(os.getenv("HEALTH_READ_BACKOFF_S", "0.5"))
        health_read_max_attempts = int(os.getenv("HEALTH_READ_MAX_ATTEMPTS", "5"))
        firmware_max_bytes = int(os.getenv("FIRMWARE_MAX_BYTES", str(64 * 1024 * 1024)))
        firmware_download_base_url = os.getenv("FIRMWARE_DOWNLOAD_BASE_URL")
        api_prefix = "/" + os.getenv("API_PREFIX", "/api/v1").strip("/")
        fleet_api_key = os.getenv("FLEET_API_KEY") or None
        device_cert_validity_days = int(os.getenv("DEVICE_CERT_VALIDITY_DAYS", "365"))
        if device_cert_validity_days < 1:
            raise ValueError("DEVICE_CERT_VALIDITY_DAYS must be positive")
        pki_ca_key_bits = int(os.getenv("PKI_CA_KEY_BITS", "4096"))
        if pki_ca_key_bits < 2048:
            raise ValueError("PKI_CA_KEY_BITS must be at least 2048")

        if remote_required and backend_scheme(storage_backend) is None:
            if data_bucket and not has_uri_scheme(data_bucket):
                raise ValueError(
                    "DATA_BUCKET must include a URI scheme when STORAGE_BACKEND="
                    f"{storage_backend} (example: s3://bucket)"
                )

        if missing:
            missing_str = ", ".join(missing)
            raise ValueError(f"Missing required env vars: {missing_str}")

        return cls(
            env=env,
            log_level=log_level,
            storage_backend=storage_backend,
            local_data_root=local_data_root,
            data_bucket=data_bucket,
            data_prefix=data_prefix,
            device_db_path=os.getenv("DEVICE_DB_PATH") or None,
            stage_percentages=stage_percentages,
            rollout_poll_interval_s=rollout_poll_interval_s,
            rollout_max_workers=max(1, rollout_max_workers),
            rollout_runner_enabled=rollout_runner_enabled,
            health_window_s=health_window_s,
            health_max_silent_fraction=health_max_silent_fraction,
            health_read_backoff_s=health_read_backoff_s,
            health_read_max_attempts=max(1, health_read_max_attempts),
            firmware_max_bytes=firmware_max_bytes,
            firmware_download_base_url=firmware_download_base_url,
            api_prefix=api_prefix,
            fleet_api_key=fleet_api_key,
            device_cert_validity_days=device_cert_validity_days,
            pki_ca_key_bits=pki_ca_key_bits,
        )


def parse_stage_percentages(value: str | None) -> tuple[int, ...]:
    """Cumulative cohort boundaries, one per rollout stage."""
    if not value:
        return DEFAULT_STAGE_PERCENTAGES
    cleaned: list[int] = []
    for raw in value.split(","):
        raw = raw.strip()
        if not raw:
            continue
        try:
            pct = int(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid stage percentage: {raw}") from exc
        cleaned.append(max(1, min(100, pct)))
    if len(cleaned) != len(DEFAULT_STAGE_PERCENTAGES):
        raise ValueError(
            "ROLLOUT_STAGE_PERCENTAGES needs one value per stage "
            "(canary, staging, production)"
        )
    if cleaned != sorted(cleaned):
        raise ValueError("ROLLOUT_STAGE_PERCENTAGES must be increasing")
    cleaned[-1] = 100
    return tuple(cleaned)


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid float value: {value}") from exc


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.from_env()
