from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str


@dataclass
class AppConfig:
    database_path: str
    owner_id: str
    provider_name: str
    model: str
    max_tokens: int
    temperature: float
    extractor_timeout_seconds: float
    history_limit: int
    chat_enabled: bool
    reconcile_dry_run: bool
    reconcile_batch_size: int
    reconcile_on_submit: bool
    sweep_interval_seconds: float
    claim_lease_seconds: float
    cache_directory: str
    service_api_key: str | None
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict, environ: dict | None = None) -> AppConfig:
    """Build an ``AppConfig`` from ``config.json`` values.

    ``ATMO_ENABLE_CHAT`` and ``ATMO_RECONCILE_DRY_RUN`` in the environment
    override the corresponding keys when set.
    """
    env = os.environ if environ is None else environ
    chat_enabled = _to_bool(config.get("ChatEnabled", True), default=True)
    if env.get("ATMO_ENABLE_CHAT") is not None:
        chat_enabled = _to_bool(env.get("ATMO_ENABLE_CHAT"), default=chat_enabled)
    dry_run = _to_bool(config.get("ReconcileDryRun", False), default=False)
    if env.get("ATMO_RECONCILE_DRY_RUN") is not None:
        dry_run = _to_bool(env.get("ATMO_RECONCILE_DRY_RUN"), default=dry_run)

    return AppConfig(
        database_path=str(config.get("DatabasePath", ".atmo/workspace.db")),
        owner_id=str(config.get("OwnerId", "local-user")).strip() or "local-user",
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", "claude-sonnet-4-5-20250929"),
        max_tokens=int(config.get("MaxTokens", 2048)),
        temperature=float(config.get("Temperature", 0.7)),
        extractor_timeout_seconds=float(config.get("ExtractorTimeoutSeconds", 60)),
        history_limit=int(config.get("HistoryLimit", 10)),
        chat_enabled=chat_enabled,
        reconcile_dry_run=dry_run,
        reconcile_batch_size=int(config.get("ReconcileBatchSize", 100)),
        reconcile_on_submit=_to_bool(config.get("ReconcileOnSubmit", True), default=True),
        sweep_interval_seconds=float(config.get("SweepIntervalSeconds", 60)),
        claim_lease_seconds=float(config.get("ClaimLeaseSeconds", 300)),
        cache_directory=str(config.get("CacheDirectory", ".atmo/cache")),
        service_api_key=str(config.get("ServiceApiKey", "")).strip() or None,
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    if provider_name == "openai":
        provider_api_key = os.environ.get("OPENAI_API_KEY", "")
        provider_env_var = "OPENAI_API_KEY"
    else:
        provider_api_key = os.environ.get("ANTHROPIC_API_KEY", "")
        provider_env_var = "ANTHROPIC_API_KEY"

    return RuntimeEnv(
        provider_api_key=provider_api_key,
        provider_env_var=provider_env_var,
    )
