import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("slm-settings.json")
ENV_OVERRIDE_KEY = "SLM_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
DEFAULT_CACHE_PATHS = [
    "~/.cache/huggingface/hub",
    "~/Library/Caches/huggingface/hub",
    "~/.cache/mlx-lm",
]


class BackendBinaries(BaseModel):
    python_exe: str = "python3"
    ollama_path: str = "ollama"
    llama_server_path: str = "llama-server"


class AppSettings(BaseModel):
    config_dir: str = "~/.config/slm-manager"
    instances_file: str = "model-instances.json"

    # Local control API
    host: str = "127.0.0.1"
    port: int = 8318

    health_check_interval_s: float = 10.0
    health_probe_timeout_s: float = 3.0

    hub_base_url: str = "https://huggingface.co"
    search_limit: int = 20
    search_timeout_s: float = 10.0
    cache_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_CACHE_PATHS))

    log_max_entries: int = 500
    log_trim_count: int = 100
    stop_timeout_s: float = 5.0
    discover_on_startup: bool = True
    start_all_on_startup: bool = False

    binaries: BackendBinaries = Field(default_factory=BackendBinaries)

    model_config = {"protected_namespaces": ()}

    def instances_path(self) -> Path:
        return Path(self.config_dir).expanduser() / self.instances_file

    def to_safe_dict(self) -> dict:
        return self.model_dump()


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "config_dir": os.getenv("SLM_CONFIG_DIR"),
        "host": os.getenv("SLM_API_HOST"),
        "port": os.getenv("SLM_API_PORT"),
        "health_check_interval_s": os.getenv("SLM_HEALTH_INTERVAL_S"),
        "health_probe_timeout_s": os.getenv("SLM_HEALTH_TIMEOUT_S"),
        "hub_base_url": os.getenv("SLM_HUB_BASE_URL"),
        "python_exe": os.getenv("SLM_PYTHON_EXE"),
        "ollama_path": os.getenv("SLM_OLLAMA_PATH"),
        "llama_server_path": os.getenv("SLM_LLAMA_SERVER_PATH"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "health_check_interval_s" in cleaned:
        cleaned["health_check_interval_s"] = float(cleaned["health_check_interval_s"])
    if "health_probe_timeout_s" in cleaned:
        cleaned["health_probe_timeout_s"] = float(cleaned["health_probe_timeout_s"])
    binaries = {}
    for key in ("python_exe", "ollama_path", "llama_server_path"):
        if key in cleaned:
            binaries[key] = cleaned.pop(key)
    if binaries:
        cleaned["binaries"] = binaries
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge_binaries(first: Dict[str, Any], second: Dict[str, Any]) -> Dict[str, Any]:
    low = first.get("binaries") if isinstance(first.get("binaries"), dict) else {}
    high = second.get("binaries") if isinstance(second.get("binaries"), dict) else {}
    return {**low, **high}


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
        if not isinstance(file_data, dict):
            file_data = {}
    # Settings file wins by default; env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
        merged["binaries"] = _merge_binaries(file_data, env_data)
    else:
        merged = {**env_data, **file_data}
        merged["binaries"] = _merge_binaries(env_data, file_data)
    hub_cache = os.getenv("HF_HUB_CACHE")
    if hub_cache:
        paths = list(merged.get("cache_paths") or DEFAULT_CACHE_PATHS)
        if hub_cache not in paths:
            paths.insert(0, hub_cache)
        merged["cache_paths"] = paths
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
