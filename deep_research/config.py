import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "DEEP_RESEARCH_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
ROLES = ("planner", "verifier", "executor", "synthesizer")


class EndpointConfig(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    model_id: str
    api_key: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class ModelRouting(BaseModel):
    """Role -> endpoint table handed to the reasoning client at construction."""

    planner: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(model_id="anthropic/claude-3.5-sonnet")
    )
    verifier: EndpointConfig = Field(default_factory=lambda: EndpointConfig(model_id="openai/gpt-4o-mini"))
    executor: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(model_id="mistralai/mixtral-8x7b-instruct")
    )
    synthesizer: EndpointConfig = Field(default_factory=lambda: EndpointConfig(model_id="openai/gpt-4o"))

    def endpoint(self, role: str) -> EndpointConfig:
        if role not in ROLES:
            raise ValueError(f"unknown model role: {role}")
        return getattr(self, role)

    model_config = {"protected_namespaces": ()}


class OrchestrationLimits(BaseModel):
    max_steps: int = 10
    max_retries: int = 3
    step_timeout_s: float = 60.0
    total_timeout_s: float = 300.0
    max_tokens: int = 4096


class AppSettings(BaseModel):
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = DEFAULT_BASE_URL
    http_referer: str = "https://deep-research-agent.local"
    app_title: str = "Deep Research Agent"
    routing: ModelRouting = Field(default_factory=ModelRouting)
    limits: OrchestrationLimits = Field(default_factory=OrchestrationLimits)
    max_output_tokens: Optional[int] = None
    database_path: str = "research_sessions.db"
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("openrouter_api_key"):
            data["openrouter_api_key"] = "********"
        for role in ROLES:
            endpoint = data["routing"].get(role) or {}
            if endpoint.get("api_key"):
                endpoint["api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "openrouter_api_key": os.getenv("OPENROUTER_API_KEY"),
        "openrouter_base_url": os.getenv("OPENROUTER_API_BASE"),
        "model_planner": os.getenv("MODEL_PLANNER"),
        "model_verifier": os.getenv("MODEL_VERIFIER"),
        "model_executor": os.getenv("MODEL_EXECUTOR"),
        "model_synthesizer": os.getenv("MODEL_SYNTHESIZER"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "total_timeout_s": os.getenv("TOTAL_TIMEOUT_S"),
        "step_timeout_s": os.getenv("STEP_TIMEOUT_S"),
        "max_retries": os.getenv("MAX_RETRIES"),
        "max_steps": os.getenv("MAX_STEPS"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "max_output_tokens" in cleaned:
        cleaned["max_output_tokens"] = int(cleaned["max_output_tokens"])
    limits: Dict[str, Any] = {}
    for key in ("total_timeout_s", "step_timeout_s"):
        if key in cleaned:
            limits[key] = float(cleaned.pop(key))
    for key in ("max_retries", "max_steps"):
        if key in cleaned:
            limits[key] = int(cleaned.pop(key))
    if limits:
        cleaned["limits"] = limits
    routing: Dict[str, Any] = {}
    for role in ROLES:
        model_id = cleaned.pop(f"model_{role}", None)
        if model_id:
            routing[role] = {"model_id": model_id}
    if routing:
        cleaned["routing"] = routing
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge_nested(low: Dict[str, Any], high: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(low)
    for key, value in high.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_nested(merged[key], value)
        else:
            merged[key] = value
    return merged


def _backfill_endpoints(merged: Dict[str, Any]) -> None:
    """Point every role at the shared base URL/key unless the role sets its own."""
    base_url = merged.get("openrouter_base_url") or DEFAULT_BASE_URL
    api_key = merged.get("openrouter_api_key")
    defaults = ModelRouting().model_dump()
    routing = merged.get("routing") or {}
    for role in ROLES:
        endpoint = routing.get(role)
        if not isinstance(endpoint, dict):
            endpoint = {}
        endpoint.setdefault("model_id", defaults[role]["model_id"])
        if not endpoint.get("base_url"):
            endpoint["base_url"] = base_url
        if not endpoint.get("api_key") and api_key:
            endpoint["api_key"] = api_key
        routing[role] = endpoint
    merged["routing"] = routing


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except json.JSONDecodeError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge_nested(file_data, env_data)
    else:
        merged = _merge_nested(env_data, file_data)
    if not merged.get("openrouter_api_key") and env_data.get("openrouter_api_key"):
        merged["openrouter_api_key"] = env_data["openrouter_api_key"]
    _backfill_endpoints(merged)
    return AppSettings(**merged)
