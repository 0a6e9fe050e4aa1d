import json
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .models import GenerationOptions

CONFIG_ROOT_DIR = Path.home() / ".spokable"
REDACTED = "***REDACTED***"

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert at converting technical documentation into natural, spoken language "
    "optimized for text-to-speech systems."
)
DEFAULT_TRANSFORM_PROMPT = (
    "Convert the following text into a natural, spoken format that is easy to listen to. "
    "Maintain accuracy while making it conversational. Expand acronyms on first use. "
    "Convert formulas and special symbols into spoken words. Convert tables into narrative sentences. "
    "Describe figures and images clearly. Replace code blocks with descriptive explanations of what "
    "the code does (do not read code line-by-line). Preserve the logical order and headings. "
    "Add natural transitions between sections. Remove inline citations and footnotes. "
    "Make the output TTS-friendly with good rhythm (commas and pauses)."
)
DEFAULT_MODEL_PRIORITY = [
    "gemini-2.0-flash-exp",
    "gemini-2.5-flash",
    "gemini-2.5-pro",
    "gemini-2.0-flash",
]

_PROMPT_KEYS = ("system_prompt", "transform_prompt")
_SECRET_KEYS = ("api_key", "backup_api_key")
_SECRET_ENV = {"api_key": "GEMINI_API_KEY", "backup_api_key": "GEMINI_BACKUP_API_KEY"}
_INT_KEYS = {"batch_size", "overlap_size", "max_retries", "parallel_chunks", "top_k", "max_output_tokens"}
_FLOAT_KEYS = {"api_timeout", "retry_delay", "rate_limit_delay", "temperature", "top_p"}
_BOOL_KEYS = {"turbo_mode"}


def get_default_config_dir() -> Path:
    env_override = os.getenv("SPOKABLE_CONFIG_DIR")
    if env_override:
        return Path(env_override).expanduser()
    return CONFIG_ROOT_DIR


def get_default_config_path() -> Path:
    return get_default_config_dir() / "config.json"


DEFAULT_CONFIG_PATH = get_default_config_path()


class AppConfig:
    """Settings manager: reads, validates and saves the flat key/value configuration."""

    def __init__(self, config_path: Path):
        self.config_path = Path(config_path)
        self.load_warning: Optional[str] = None
        self.defaults: Dict[str, Any] = {
            "api_key": "",
            "backup_api_key": "",
            "api_timeout": 60,
            "batch_size": 10000,
            "overlap_size": 200,
            "max_retries": 3,
            "retry_delay": 2.0,
            "rate_limit_delay": 1.0,
            "turbo_mode": False,
            "parallel_chunks": 3,
            "system_prompt": DEFAULT_SYSTEM_PROMPT,
            "transform_prompt": DEFAULT_TRANSFORM_PROMPT,
            "model_priority": list(DEFAULT_MODEL_PRIORITY),
            "temperature": 1.0,
            "top_p": 0.95,
            "top_k": 40,
            "max_output_tokens": 4000,
            "storage_dir": str(get_default_config_dir() / "storage"),
        }
        self.settings = self.load_config()

    @property
    def is_yaml(self) -> bool:
        return self.config_path.suffix.lower() in {".yaml", ".yml"}

    def _preserve_corrupt_config(self) -> Optional[Path]:
        """Keep a copy of the unreadable config so users can inspect what went wrong."""
        if not self.config_path.exists():
            return None
        suffix = self.config_path.suffix or ".json"
        backup = self.config_path.with_suffix(suffix + ".corrupt")
        counter = 1
        while backup.exists():
            backup = self.config_path.with_suffix(f"{suffix}.corrupt{counter}")
            counter += 1
        try:
            shutil.copy2(self.config_path, backup)
            return backup
        except OSError:
            return None

    def _read_file(self) -> Any:
        with open(self.config_path, "r", encoding="utf-8") as f:
            if self.is_yaml:
                return yaml.safe_load(f)
            return json.load(f)

    def load_config(self) -> Dict[str, Any]:
        """Load the configuration from disk, merged over the defaults."""
        self.load_warning = None
        if self.config_path.exists():
            try:
                raw_settings = self._read_file()
                if isinstance(raw_settings, dict):
                    return {**self.defaults, **raw_settings}
                if raw_settings is not None:
                    self.load_warning = f"Config at {self.config_path} is not a mapping. Using defaults."
            except (json.JSONDecodeError, yaml.YAMLError, OSError) as exc:
                backup = self._preserve_corrupt_config()
                note = f"Failed to parse config at {self.config_path}: {exc}. Using defaults."
                if backup:
                    note += f" Saved unreadable copy as {backup.name}."
                self.load_warning = note
        return dict(self.defaults)

    def save_config(self):
        """Persist the current settings, creating directories as needed."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            if self.is_yaml:
                yaml.safe_dump(self.settings, f, allow_unicode=True, sort_keys=False)
            else:
                json.dump(self.settings, f, indent=4, ensure_ascii=False)

    def get(self, key: str) -> Any:
        """Return a setting coerced to the type of its default."""
        if key in _SECRET_KEYS:
            return (self.settings.get(key) or os.getenv(_SECRET_ENV[key], "")).strip()
        if key == "model_priority":
            value = self.settings.get(key)
            if isinstance(value, str):
                value = [part.strip() for part in value.split(",")]
            if isinstance(value, list):
                models = [str(item).strip() for item in value if str(item).strip()]
                if models:
                    return models
            return list(self.defaults["model_priority"])
        if key in _INT_KEYS:
            try:
                return int(self.settings.get(key, self.defaults.get(key, 0)))
            except (TypeError, ValueError):
                return int(self.defaults.get(key, 0))
        if key in _FLOAT_KEYS:
            try:
                return float(self.settings.get(key, self.defaults.get(key, 0.0)))
            except (TypeError, ValueError):
                return float(self.defaults.get(key, 0.0))
        if key in _BOOL_KEYS:
            return bool(self.settings.get(key, self.defaults.get(key, False)))
        return self.settings.get(key, self.defaults.get(key))

    def set(self, key: str, value: Any):
        """Update a setting and save the configuration immediately."""
        self.settings[key] = value
        self.save_config()

    def reset_prompts(self) -> None:
        for key in _PROMPT_KEYS:
            self.settings[key] = self.defaults[key]
        self.save_config()

    def export_json(self) -> str:
        exported = dict(self.settings)
        for key in _SECRET_KEYS:
            if exported.get(key):
                exported[key] = REDACTED
        return json.dumps(exported, indent=2, ensure_ascii=False)

    def validate(self) -> List[str]:
        errors: List[str] = []
        if not self.get("api_key"):
            errors.append("API key is required")
        if not 1000 <= self.get("batch_size") <= 50000:
            errors.append("Batch size must be between 1000 and 50000")
        if not 0 <= self.get("max_retries") <= 10:
            errors.append("Max retries must be between 0 and 10")
        if not 1 <= self.get("parallel_chunks") <= 10:
            errors.append("Parallel chunks must be between 1 and 10")
        if not 0 <= self.get("temperature") <= 2:
            errors.append("Temperature must be between 0 and 2")
        return errors


@dataclass
class EngineSettings:
    api_key: str
    models: List[str] = field(default_factory=lambda: list(DEFAULT_MODEL_PRIORITY))
    backup_api_key: str = ""
    system_prompt: str = ""
    transform_prompt: str = ""
    batch_size: int = 10000
    overlap_size: int = 200
    max_retries: int = 3
    retry_delay: float = 2.0
    rate_limit_delay: float = 1.0
    dispatch_width: int = 1
    timeout: float = 60.0
    options: GenerationOptions = field(default_factory=GenerationOptions)

    @classmethod
    def from_config(cls, config: AppConfig) -> "EngineSettings":
        width = config.get("parallel_chunks") if config.get("turbo_mode") else 1
        return cls(
            api_key=config.get("api_key"),
            backup_api_key=config.get("backup_api_key"),
            models=config.get("model_priority"),
            system_prompt=config.get("system_prompt") or "",
            transform_prompt=config.get("transform_prompt") or "",
            batch_size=config.get("batch_size"),
            overlap_size=config.get("overlap_size"),
            max_retries=config.get("max_retries"),
            retry_delay=config.get("retry_delay"),
            rate_limit_delay=config.get("rate_limit_delay"),
            dispatch_width=max(1, width),
            timeout=config.get("api_timeout"),
            options=GenerationOptions(
                temperature=config.get("temperature"),
                top_p=config.get("top_p"),
                top_k=config.get("top_k"),
                max_output_tokens=config.get("max_output_tokens"),
                system_instruction=config.get("system_prompt") or "",
            ),
        )
