"""Engine settings.

Priority (highest to lowest):
1. Keyword overrides passed to ``load_settings``
2. Environment variables (FORMULA_ENGINE_*) and ``.env``
3. YAML settings file
4. Defaults below
"""

import logging
from pathlib import Path
from typing import Any, ClassVar

import yaml
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

logger = logging.getLogger(__name__)


class YamlConfigSource(PydanticBaseSettingsSource):
    """Settings source that reads a flat YAML mapping."""

    def __init__(self, settings_cls: type[BaseSettings], yaml_file: Path | None = None):
        super().__init__(settings_cls)
        self.yaml_file = yaml_file
        self._config_data: dict[str, Any] = {}
        if yaml_file is not None:
            with open(yaml_file) as f:
                loaded = yaml.safe_load(f)
            if loaded is None:
                logger.warning("settings file %s is empty, using defaults", yaml_file)
            else:
                self._config_data = loaded

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        if field_name in self._config_data:
            return self._config_data[field_name], field_name, False
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        return {k: v for k, v in self._config_data.items() if k in self.settings_cls.model_fields}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FORMULA_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_file: ClassVar[Path | None] = None

    # Rendering
    placeholder: str = "[!{token}]"  # {token} is the token text without brackets
    max_nesting: int = 8  # lookup -> shortcode -> lookup chains
    append_units: bool = True

    # Number/date formatting
    decimal_separator: str = "."
    thousands_separator: str = ""
    date_format: str = "%d.%m.%Y"
    time_format: str = "%H:%M"

    # Session cache
    session_ttl_seconds: float | None = 24 * 60 * 60

    # Logging
    log_level: str = "WARNING"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # earlier sources win
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSource(settings_cls, cls.config_file),
        )


def load_settings(path: str | Path | None = None, **overrides: Any) -> Settings:
    """Build settings, layering a YAML file under the environment."""
    if path is None:
        return Settings(**overrides)
    bound = type("Settings", (Settings,), {"__module__": __name__, "config_file": Path(path)})
    return bound(**overrides)


def configure_logging(level: str | int = "WARNING") -> None:
    logging.basicConfig(
        level=level if isinstance(level, int) else level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
