import os
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

UNDATED_DAY_POLICIES = ("any", "today")


class ConfigError(Exception):
    pass


def get_required_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigError(f"Required environment variable {name} is not set")
    return value


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name, default)


@dataclass
class LLMConfig:
    model: str = field(default_factory=lambda: get_optional_env("OPTIMAT_MODEL", "gpt-4o"))
    temperature: float = 0.0
    max_tokens: int = 1500
    timeout_s: float = 60.0
    max_retries: int = 2
    retry_base_delay: float = 1.0


@dataclass
class GoogleMapsConfig:
    api_key: str = field(default_factory=lambda: get_optional_env("GOOGLE_MAPS_API_KEY", ""))
    timeout_s: float = 15.0
    max_retries: int = 2
    retry_base_delay: float = 0.5
    rate_limit_per_minute: int = 120
    max_places: int = 5


@dataclass
class WebSearchConfig:
    api_key: str = field(default_factory=lambda: get_optional_env("TAVILY_API_KEY", ""))
    max_results: int = 5
    search_depth: str = "advanced"
    max_retries: int = 1

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass
class MatchingConfig:
    include_providers_without_zone: bool = False
    undated_day_policy: str = "any"


@dataclass
class OptimatConfig:
    db_path: str = field(
        default_factory=lambda: get_optional_env("OPTIMAT_DB_PATH", "data/optimat.db")
    )
    max_tool_rounds: int = 5
    tool_workers: int = 4
    tool_timeout_s: float = 90.0
    llm: LLMConfig = field(default_factory=LLMConfig)
    maps: GoogleMapsConfig = field(default_factory=GoogleMapsConfig)
    web_search: WebSearchConfig = field(default_factory=WebSearchConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)

    @classmethod
    def from_env(cls) -> "OptimatConfig":
        return cls()

    @classmethod
    def from_yaml(cls, path: str | Path) -> "OptimatConfig":
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

        config = cls.from_env()
        sections = {
            "llm": config.llm,
            "maps": config.maps,
            "web_search": config.web_search,
            "matching": config.matching,
        }
        top_level = {f.name for f in fields(cls)} - set(sections)
        for key, value in data.items():
            if key in sections:
                if not isinstance(value, dict):
                    raise ConfigError(f"Config section '{key}' must be a mapping")
                _apply_section(sections[key], key, value)
            elif key in top_level:
                setattr(config, key, value)
            else:
                raise ConfigError(f"Unknown config key: {key}")
        return config

    def validate(self, require_maps: bool = True) -> None:
        if self.max_tool_rounds < 1:
            raise ConfigError("max_tool_rounds must be at least 1")
        if self.tool_workers < 1:
            raise ConfigError("tool_workers must be at least 1")
        if self.tool_timeout_s <= 0:
            raise ConfigError("tool_timeout_s must be > 0")
        if self.llm.max_retries < 0:
            raise ConfigError("llm.max_retries must be >= 0")
        if self.llm.timeout_s <= 0:
            raise ConfigError("llm.timeout_s must be > 0")
        if self.maps.max_retries < 0:
            raise ConfigError("maps.max_retries must be >= 0")
        if self.maps.max_places < 1:
            raise ConfigError("maps.max_places must be at least 1")
        if self.web_search.max_results < 1:
            raise ConfigError("web_search.max_results must be at least 1")
        if self.matching.undated_day_policy not in UNDATED_DAY_POLICIES:
            raise ConfigError("matching.undated_day_policy must be 'any' or 'today'")
        if require_maps and not self.maps.api_key:
            raise ConfigError("GOOGLE_MAPS_API_KEY is not set")
        logger.info("Configuration validated successfully")


def _apply_section(target: object, name: str, values: dict) -> None:
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ConfigError(f"Unknown config key: {name}.{key}")
        setattr(target, key, value)
