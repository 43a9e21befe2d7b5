import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "SIMCRM_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_MASK = "********"


class RateLimitConfig(BaseModel):
    max_concurrent_requests: int = 5
    max_retries: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter_factor: float = 0.1


class GenerationConfig(BaseModel):
    model_id: str = "gpt-4o-mini"
    temperature: float = 0.8
    max_tokens: int = 800
    cache_ttl_s: float = 3600.0
    strict: Optional[bool] = None

    model_config = {"protected_namespaces": ()}


class ReferenceConfig(BaseModel):
    strict: Optional[bool] = None
    search_fallback: bool = True


class ExecutorConfig(BaseModel):
    dedupe: bool = True
    auto_create_properties: bool = True
    property_group: str = "simcrm"


class RunnerConfig(BaseModel):
    enabled: bool = True
    poll_interval_s: float = 5.0
    batch_size: int = 50
    max_step_attempts: int = 3
    retry_base_delay_s: float = 60.0


class PlannerConfig(BaseModel):
    max_sets: int = 20
    dependent_offset_minutes: float = 5.0
    set_jitter_fraction: float = 0.25
    first_set_max_delay_minutes: float = 2.0


class AppSettings(BaseModel):
    database_path: str = "simcrm.db"
    host: str = "0.0.0.0"
    port: int = 8000
    crm_base_url: str = "https://api.hubapi.com"
    crm_access_token: Optional[str] = None
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: Optional[str] = None
    strict_mode: bool = False
    structured_logging: bool = False
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    references: ReferenceConfig = Field(default_factory=ReferenceConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)

    @property
    def generation_strict(self) -> bool:
        if self.generation.strict is None:
            return self.strict_mode
        return self.generation.strict

    @property
    def references_strict(self) -> bool:
        if self.references.strict is None:
            return self.strict_mode
        return self.references.strict

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in ("crm_access_token", "llm_api_key"):
            if data.get(key):
                data[key] = SECRET_MASK
        return data


def _truthy(value: Any) -> bool:
    return str(value).strip().lower() in ENV_OVERRIDE_TRUE


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "crm_base_url": os.getenv("CRM_BASE_URL"),
        "crm_access_token": os.getenv("CRM_ACCESS_TOKEN") or os.getenv("HUBSPOT_ACCESS_TOKEN"),
        "llm_base_url": os.getenv("LLM_BASE_URL"),
        "llm_api_key": os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY"),
        "strict_mode": os.getenv("STRICT_MODE"),
        "structured_logging": os.getenv("STRUCTURED_LOGGING"),
    }
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    for key in ("strict_mode", "structured_logging"):
        if key in cleaned:
            cleaned[key] = _truthy(cleaned[key])
    rate_limit = {
        "max_concurrent_requests": os.getenv("MAX_CONCURRENT_REQUESTS"),
        "max_retries": os.getenv("MAX_RETRIES"),
        "base_delay_s": os.getenv("BASE_DELAY_S"),
        "max_delay_s": os.getenv("MAX_DELAY_S"),
        "jitter_factor": os.getenv("JITTER_FACTOR"),
    }
    rate_limit = {k: v for k, v in rate_limit.items() if v not in (None, "")}
    if rate_limit:
        cleaned["rate_limit"] = rate_limit
    cache_ttl = os.getenv("CONTENT_CACHE_TTL_S")
    model_id = os.getenv("LLM_MODEL")
    generation: Dict[str, Any] = {}
    if cache_ttl:
        generation["cache_ttl_s"] = float(cache_ttl)
    if model_id:
        generation["model_id"] = model_id
    if generation:
        cleaned["generation"] = generation
    poll_interval = os.getenv("RUNNER_POLL_INTERVAL_S")
    if poll_interval:
        cleaned["runner"] = {"poll_interval_s": float(poll_interval)}
    return cleaned


def _env_overrides_config() -> bool:
    return _truthy(os.getenv(ENV_OVERRIDE_KEY, ""))


def merge_sections(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = merge_sections(file_data, env_data)
    else:
        merged = merge_sections(env_data, file_data)
    for key in ("crm_access_token", "llm_api_key"):
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
