from typing import Any, Dict, List, Literal, Optional
from pathlib import Path
import json
import os

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = structlog.get_logger(__name__)


DEFAULT_OLLAMA_URL = "http://localhost:11434"


class LLMSettings(BaseModel):
    """Language model and embedding provider configuration"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider: Literal["ollama", "openai", "none"] = "ollama"
    endpoint: str = DEFAULT_OLLAMA_URL
    model: str = "llama3"
    embedding_model: str = "nomic-embed-text"
    api_key: str = ""


class SystemSettings(BaseModel):
    """Runtime-mutable settings, persisted as settings.json"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    llm: LLMSettings = Field(default_factory=LLMSettings)
    auto_process_interval: float = Field(default=15.0, gt=0, description="Seconds between scheduled cycles")
    cycle_limit: int = Field(default=10, ge=1)
    step_limit: int = Field(default=5, ge=1)
    suggestion_probability: float = Field(default=0.15, ge=0.0, le=1.0)
    suggestion_types: List[str] = Field(default_factory=lambda: ["note", "goal", "question"])
    index_debounce: float = Field(default=5.0, ge=0.0, description="Quiet period before vector index writes")


class AppConfig(BaseModel):
    """Process-level configuration read from the environment"""

    data_dir: Path
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"
    storage: Literal["sqlite", "memory"] = "sqlite"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "flowmind.db"

    @property
    def vector_index_path(self) -> Path:
        return self.data_dir / "vector-index.npz"

    @property
    def settings_path(self) -> Path:
        return self.data_dir / "settings.json"

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build configuration from FLOWMIND_* environment variables"""

        return cls(
            data_dir=Path(os.getenv("FLOWMIND_DATA_DIR", "~/.flowmind")).expanduser(),
            host=os.getenv("FLOWMIND_HOST", "0.0.0.0"),
            port=int(os.getenv("FLOWMIND_PORT", "8080")),
            log_level=os.getenv("FLOWMIND_LOG_LEVEL", "INFO"),
            log_format=os.getenv("FLOWMIND_LOG_FORMAT", "json"),
            storage=os.getenv("FLOWMIND_STORAGE", "sqlite"),
        )


def _by_field_name(model, data: Dict[str, Any]) -> Dict[str, Any]:
    """Accept camelCase aliases or field names in partial updates"""

    aliases = {field.alias: name for name, field in model.model_fields.items() if field.alias}
    return {aliases.get(key, key): value for key, value in data.items()}


def merge_settings(current: SystemSettings, updates: Dict[str, Any]) -> SystemSettings:
    """Merge a partial settings document, merging the nested llm block separately"""

    updates = _by_field_name(SystemSettings, dict(updates))
    llm_updates = updates.pop("llm", None) or {}
    if not isinstance(llm_updates, dict):
        raise ValueError("llm settings must be an object")
    llm_updates = _by_field_name(LLMSettings, llm_updates)
    merged = current.model_dump()
    merged.update(updates)
    merged["llm"] = {**merged["llm"], **llm_updates}
    return SystemSettings.model_validate(merged)


class SettingsManager:
    """Loads, saves and hands out SystemSettings"""

    def __init__(self, settings_path: Optional[Path] = None):
        self.settings_path = settings_path
        self._settings = self.load_settings()

    def load_settings(self) -> SystemSettings:
        """Load settings from disk, falling back to defaults"""

        if self.settings_path is None:
            return SystemSettings()

        try:
            loaded = json.loads(self.settings_path.read_text(encoding="utf-8"))
            return merge_settings(SystemSettings(), loaded)
        except FileNotFoundError:
            logger.info("Settings file not found, saving defaults", path=str(self.settings_path))
            defaults = SystemSettings()
            self._write(defaults)
            return defaults
        except (ValueError, OSError) as e:
            logger.warning("Error loading settings, using defaults", path=str(self.settings_path), error=str(e))
            return SystemSettings()

    def _write(self, settings: SystemSettings) -> None:
        if self.settings_path is None:
            return
        try:
            self.settings_path.parent.mkdir(parents=True, exist_ok=True)
            self.settings_path.write_text(
                json.dumps(settings.model_dump(by_alias=True), indent=2),
                encoding="utf-8"
            )
        except OSError as e:
            logger.error("Error saving settings", path=str(self.settings_path), error=str(e))

    def get_settings(self) -> SystemSettings:
        """Return a copy of the current settings"""
        return self._settings.model_copy(deep=True)

    def update_settings(self, updates: Dict[str, Any]) -> SystemSettings:
        """Apply a partial update and persist it

        Raises ValueError (pydantic.ValidationError for invalid values); nothing is
        persisted in that case.
        """

        new_settings = merge_settings(self._settings, updates)
        self._settings = new_settings
        self._write(new_settings)
        logger.info("Settings saved", provider=new_settings.llm.provider)

        return self.get_settings()
