import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "GRAPHAGENT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    # Single base URL kept for env-only setups; per-role endpoints take precedence.
    llm_base_url: str = "http://127.0.0.1:1234/v1"
    llm_api_key: Optional[str] = None

    planner_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="qwen/qwen3-8b")
    )
    worker_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="qwen/qwen3-4b")
    )

    tavily_api_key: Optional[str] = None
    tavily_base_url: str = "https://api.tavily.com"
    database_path: str = "graph_data.db"
    host: str = "0.0.0.0"
    port: int = 8000

    summary_soft_limit: int = 2000
    summary_hard_limit: int = 1000
    condense_max_tokens: int = 300
    final_summary_max_tokens: int = 500
    turn_max_tokens: int = 2048
    worker_max_iterations: int = 6

    stale_timeout_minutes: int = 15
    reaper_interval_s: float = 60.0
    cancel_on_reap: bool = False

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in ("tavily_api_key", "llm_api_key"):
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "llm_base_url": os.getenv("LLM_BASE_URL"),
        "llm_api_key": os.getenv("LLM_API_KEY"),
        "planner_model": os.getenv("PLANNER_MODEL"),
        "worker_model": os.getenv("WORKER_MODEL"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "stale_timeout_minutes": os.getenv("STALE_TIMEOUT_MINUTES"),
        "reaper_interval_s": os.getenv("REAPER_INTERVAL_S"),
        "cancel_on_reap": os.getenv("CANCEL_ON_REAP"),
        "worker_max_iterations": os.getenv("WORKER_MAX_ITERATIONS"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("port", "stale_timeout_minutes", "worker_max_iterations"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    if "reaper_interval_s" in cleaned:
        cleaned["reaper_interval_s"] = float(cleaned["reaper_interval_s"])
    if "cancel_on_reap" in cleaned:
        cleaned["cancel_on_reap"] = str(cleaned["cancel_on_reap"]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _apply_model_env(merged: Dict[str, Any], env_data: Dict[str, Any], file_data: Dict[str, Any]) -> None:
    """Fold PLANNER_MODEL/WORKER_MODEL/LLM_BASE_URL into the per-role endpoints.

    An endpoint written in config.json is left alone unless env overrides are enabled.
    """
    allow_env = _env_overrides_config()
    base_url = merged.get("llm_base_url")
    for key, model_key in (("planner_endpoint", "planner_model"), ("worker_endpoint", "worker_model")):
        if key in file_data and not allow_env:
            continue
        endpoint = merged.get(key)
        if not isinstance(endpoint, dict):
            endpoint = AppSettings.model_fields[key].default_factory().model_dump()
        if env_data.get(model_key):
            endpoint["model_id"] = env_data[model_key]
        if base_url and (env_data.get("llm_base_url") or key not in file_data):
            endpoint["base_url"] = base_url
        merged[key] = endpoint


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
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("tavily_api_key") and env_data.get("tavily_api_key"):
        merged["tavily_api_key"] = env_data["tavily_api_key"]
    _apply_model_env(merged, env_data, file_data)
    merged.pop("planner_model", None)
    merged.pop("worker_model", None)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
