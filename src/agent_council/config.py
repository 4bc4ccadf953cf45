"""Runtime configuration: environment settings and the council YAML file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from agent_council.orchestrator.models import MemberSpec

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "council.config.yaml"
DEFAULT_TIMEOUT_SECONDS = 120.0
PACKAGED_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_TRUE_VALUES = frozenset({"1", "true", "yes", "y", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "n", "off"})


class ConfigError(ValueError):
    """Council configuration file is unreadable or malformed."""


def default_members() -> list[MemberSpec]:
    return [
        MemberSpec(name="claude", command="claude -p", emoji="🧠", color="CYAN"),
        MemberSpec(name="codex", command="codex exec", emoji="🤖", color="BLUE"),
        MemberSpec(name="gemini", command="gemini", emoji="💎", color="GREEN"),
    ]


@dataclass(slots=True)
class CouncilConfig:
    """Member roster and defaults resolved from YAML or built-ins."""

    chairman_role: str = "auto"
    members: list[MemberSpec] = field(default_factory=default_members)
    exclude_chairman_from_members: bool = True
    timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS
    retry_on_rate_limit: bool = True
    path: Path | None = None


@dataclass(slots=True)
class Settings:
    """Process-level settings taken from the environment."""

    jobs_dir: Path = Path(".council/jobs")
    cache_dir: Path = Path(".council/cache")
    templates_dir: Path = PACKAGED_TEMPLATES_DIR
    config_path: Path | None = None
    chairman: str | None = None
    scenario: str | None = None
    host: str | None = None

    @classmethod
    def from_env(
        cls,
        *,
        config_path: Path | None = None,
        jobs_dir: Path | None = None,
    ) -> Settings:
        """Load settings from environment with defaults rooted at the working directory."""

        env_config = os.getenv("COUNCIL_CONFIG")
        env_templates = os.getenv("COUNCIL_TEMPLATES_DIR")
        return cls(
            jobs_dir=jobs_dir or Path(os.getenv("COUNCIL_JOBS_DIR", ".council/jobs")),
            cache_dir=Path(os.getenv("COUNCIL_CACHE_DIR", ".council/cache")),
            templates_dir=Path(env_templates) if env_templates else PACKAGED_TEMPLATES_DIR,
            config_path=config_path or (Path(env_config) if env_config else None),
            chairman=_env_text("COUNCIL_CHAIRMAN"),
            scenario=_env_text("COUNCIL_SCENARIO"),
            host=_env_text("COUNCIL_HOST"),
        )

    def resolve_config_path(self, cwd: Path | None = None) -> Path | None:
        """Explicit/env path, else ``council.config.yaml`` in ``cwd`` when present."""

        if self.config_path is not None:
            return self.config_path
        candidate = (cwd or Path.cwd()) / DEFAULT_CONFIG_FILENAME
        return candidate if candidate.is_file() else None


def parse_bool(value: Any) -> bool | None:
    """Interpret YAML/env boolean-ish values; ``None`` when unrecognised."""

    if value is None:
        return None
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return None


def load_council_config(path: Path | None) -> CouncilConfig:
    """Parse the council YAML file; built-in defaults when ``path`` is ``None``."""

    if path is None:
        return CouncilConfig()
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        parsed = yaml.safe_load(path.read_text("utf-8"))
    except yaml.YAMLError as error:
        raise ConfigError(f"Invalid YAML in {path}: {error}") from error
    except OSError as error:
        raise ConfigError(f"Cannot read {path}: {error}") from error

    if not isinstance(parsed, dict):
        raise ConfigError(
            f"Invalid config in {path}: expected a YAML mapping at the document root",
        )
    council = parsed.get("council")
    if not council:
        raise ConfigError(f"Invalid config in {path}: missing required top-level key 'council:'")
    if not isinstance(council, dict):
        raise ConfigError(f"Invalid config in {path}: 'council' must be a mapping")

    config = CouncilConfig(path=path)

    chairman = council.get("chairman")
    if chairman is not None:
        if not isinstance(chairman, dict):
            raise ConfigError(f"Invalid config in {path}: 'council.chairman' must be a mapping")
        role = str(chairman.get("role") or "").strip()
        if role:
            config.chairman_role = role

    if "members" in council:
        members = council["members"]
        if not isinstance(members, list):
            raise ConfigError(f"Invalid config in {path}: 'council.members' must be a list")
        config.members = _parse_members(members, path=path)

    settings = council.get("settings")
    if settings is not None:
        if not isinstance(settings, dict):
            raise ConfigError(f"Invalid config in {path}: 'council.settings' must be a mapping")
        _apply_settings(config, settings, path=path)

    return config


def _parse_members(entries: list[Any], *, path: Path) -> list[MemberSpec]:
    members: list[MemberSpec] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning("Skipping member #%d in %s: not a mapping", index, path)
            continue
        name = str(entry.get("name") or "").strip()
        command = str(entry.get("command") or "").strip()
        if not name or not command:
            logger.warning("Skipping member #%d in %s: name and command are required", index, path)
            continue
        members.append(
            MemberSpec(
                name=name,
                command=command,
                fallback=_optional_text(entry.get("fallback")),
                emoji=_optional_text(entry.get("emoji")),
                color=_optional_text(entry.get("color")),
            ),
        )
    return members


def _apply_settings(config: CouncilConfig, settings: dict[str, Any], *, path: Path) -> None:
    exclude = parse_bool(settings.get("exclude_chairman_from_members"))
    if exclude is not None:
        config.exclude_chairman_from_members = exclude

    retry = parse_bool(settings.get("retry_on_rate_limit"))
    if retry is not None:
        config.retry_on_rate_limit = retry

    if "timeout" in settings:
        raw_timeout = settings["timeout"]
        try:
            timeout = float(raw_timeout) if raw_timeout is not None else 0.0
        except (TypeError, ValueError) as error:
            raise ConfigError(
                f"Invalid config in {path}: 'council.settings.timeout' must be a number",
            ) from error
        config.timeout_seconds = timeout if timeout > 0 else None


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _env_text(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip() or None
