from __future__ import annotations

from pathlib import Path
import tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ruletrace.exceptions import ConfigError
from ruletrace.manifest import DEFAULT_PREFIX
from ruletrace.scanner import DEFAULT_EXCLUDE, DEFAULT_INCLUDE

DEFAULT_CONFIG_NAME = "ruletrace.toml"


class SpecConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    rules_glob: str | None = None
    rules_file: str | None = None
    rules_url: str | None = None
    base_url: str = ""
    prefix: str = DEFAULT_PREFIX
    include: tuple[str, ...] = DEFAULT_INCLUDE
    exclude: tuple[str, ...] = DEFAULT_EXCLUDE

    @model_validator(mode="after")
    def _exactly_one_rule_source(self) -> SpecConfig:
        given = [
            key
            for key in ("rules_glob", "rules_file", "rules_url")
            if getattr(self, key)
        ]
        if len(given) != 1:
            raise ValueError(
                f"spec {self.name!r} needs exactly one of rules_glob, rules_file, "
                f"rules_url (got {', '.join(given) or 'none'})"
            )
        return self

    @property
    def rule_source_kind(self) -> str:
        if self.rules_glob:
            return "glob"
        if self.rules_file:
            return "file"
        return "url"


class RuletraceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    specs: tuple[SpecConfig, ...] = Field(default=(), alias="spec")
    debounce_ms: int = Field(default=200, ge=0)
    poll_interval_ms: int = Field(default=500, gt=0)

    @model_validator(mode="after")
    def _unique_spec_names(self) -> RuletraceConfig:
        seen: set[str] = set()
        for spec in self.specs:
            if spec.name in seen:
                raise ValueError(f"spec name {spec.name!r} is configured twice")
            seen.add(spec.name)
        return self

    def get_spec(self, name: str) -> SpecConfig:
        for spec in self.specs:
            if spec.name == name:
                return spec
        known = ", ".join(spec.name for spec in self.specs) or "none"
        raise ConfigError(f"unknown spec {name!r} (configured: {known})")


def resolve_config_path(root: Path | None = None, config_path: Path | None = None) -> Path:
    if config_path is not None:
        return config_path
    base = root if root is not None else Path.cwd()
    return base / DEFAULT_CONFIG_NAME


def parse_config(raw: str, *, source: str = DEFAULT_CONFIG_NAME) -> RuletraceConfig:
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{source}: invalid TOML: {exc}") from exc
    try:
        return RuletraceConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"{source}: {exc}") from exc


def load_config(root: Path | None = None, config_path: Path | None = None) -> RuletraceConfig:
    """Load ``ruletrace.toml``; a missing default file means no specs."""
    path = resolve_config_path(root, config_path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        if config_path is not None:
            raise ConfigError(f"config file not found: {path}") from None
        return RuletraceConfig()
    except OSError as exc:
        raise ConfigError(f"config file not readable: {path}: {exc}") from exc
    return parse_config(raw, source=str(path))
