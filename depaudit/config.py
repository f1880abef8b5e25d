"""
Configuration management for depaudit.

Uses Pydantic for validation, type safety, and environment variable support.
Configuration values are validated at load time to fail fast on invalid configs.

SECURITY NOTES:
- The issue-tracker token should be passed via environment variables
  (DEPAUDIT_GITHUB__TOKEN), not config files
- The token is excluded from serialization and masked in to_safe_dict()
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from depaudit.constants import (
    ALL_STAGES,
    DEFAULT_ALERT_LABELS,
    DEFAULT_STAGE_GRACE_SECONDS,
    DEFAULT_STAGE_TIMEOUT_SECONDS,
    DEFAULT_TOOL_NAME,
    DEFAULT_TOOL_URI,
    DEFAULT_TOOL_VERSION,
    MAX_FILE_SIZE_BYTES,
    OPTIONAL_TOOLS,
    RETENTION_DAYS,
    STAGE_HYGIENE,
    STAGE_SUPPLY_CHAIN,
    STAGE_TOOLS,
    STAGE_VULNERABILITY,
    TOOL_CARGO_AUDIT,
    TOOL_CARGO_CREV,
    TOOL_CARGO_DENY,
    TOOL_CARGO_GEIGER,
    TOOL_CARGO_MACHETE,
    TOOL_CARGO_OUTDATED,
    TOOL_CARGO_TREE,
    TOOL_CARGO_UDEPS,
    TOOL_CARGO_VET,
)

SeverityName = Literal["info", "low", "medium", "high", "critical"]
StreamName = Literal["stdout", "stderr"]


class ToolConfig(BaseModel):
    """Configuration for one scanner run by a stage."""

    enabled: bool = True
    command: list[str] = Field(default_factory=list)
    ignore_flag: str | None = None  # e.g. "--ignore"; one flag per ignored id
    output_stream: StreamName = "stdout"  # stream holding the machine-readable report
    required: bool = True

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Drop blank arguments; commands are never run through a shell."""
        return [arg for arg in v if arg and arg.strip()]


class StageConfig(BaseModel):
    """Configuration for one scan stage."""

    enabled: bool = True
    tools: dict[str, ToolConfig] = Field(default_factory=dict)
    severity_threshold: SeverityName = "low"
    timeout_seconds: int = Field(default=DEFAULT_STAGE_TIMEOUT_SECONDS, ge=1, le=86400)
    retention_days: int = Field(default=30, ge=1, le=400)

    def enabled_tools(self) -> dict[str, ToolConfig]:
        return {name: tool for name, tool in self.tools.items() if tool.enabled}


def _tool(name: str, command: list[str], **settings: Any) -> ToolConfig:
    return ToolConfig(command=command, required=name not in OPTIONAL_TOOLS, **settings)


def _default_tools() -> dict[str, dict[str, ToolConfig]]:
    # cargo-audit gets no ignore flag: ignored advisories would vanish from
    # its report and never show up as suppressed findings
    return {
        STAGE_VULNERABILITY: {
            TOOL_CARGO_AUDIT: _tool(TOOL_CARGO_AUDIT, ["cargo", "audit", "--json"]),
            TOOL_CARGO_DENY: _tool(
                TOOL_CARGO_DENY,
                ["cargo", "deny", "--format", "json", "check"],
                output_stream="stderr",
            ),
            TOOL_CARGO_GEIGER: _tool(TOOL_CARGO_GEIGER, ["cargo", "geiger", "--output-format", "Json"]),
        },
        STAGE_HYGIENE: {
            TOOL_CARGO_MACHETE: _tool(TOOL_CARGO_MACHETE, ["cargo", "machete", "--with-metadata"]),
            TOOL_CARGO_UDEPS: _tool(
                TOOL_CARGO_UDEPS,
                ["cargo", "+nightly", "udeps", "--all-targets", "--output", "json"],
            ),
            TOOL_CARGO_OUTDATED: _tool(TOOL_CARGO_OUTDATED, ["cargo", "outdated", "--format", "json"]),
            TOOL_CARGO_TREE: _tool(TOOL_CARGO_TREE, ["cargo", "tree", "--duplicates"]),
        },
        STAGE_SUPPLY_CHAIN: {
            TOOL_CARGO_VET: _tool(TOOL_CARGO_VET, ["cargo", "vet", "--output-format", "json"]),
            TOOL_CARGO_CREV: _tool(TOOL_CARGO_CREV, ["cargo", "crev", "verify"]),
        },
    }


def _default_stages() -> dict[str, StageConfig]:
    tools = _default_tools()
    return {
        STAGE_VULNERABILITY: StageConfig(
            tools=tools[STAGE_VULNERABILITY],
            retention_days=RETENTION_DAYS[STAGE_VULNERABILITY],
        ),
        STAGE_HYGIENE: StageConfig(
            tools=tools[STAGE_HYGIENE],
            retention_days=RETENTION_DAYS[STAGE_HYGIENE],
        ),
        STAGE_SUPPLY_CHAIN: StageConfig(
            tools=tools[STAGE_SUPPLY_CHAIN],
            severity_threshold="medium",
            retention_days=RETENTION_DAYS[STAGE_SUPPLY_CHAIN],
        ),
    }


class InterchangeConfig(BaseModel):
    """Identification block of the interchange document."""

    tool_name: str = DEFAULT_TOOL_NAME
    tool_version: str = DEFAULT_TOOL_VERSION
    information_uri: str = DEFAULT_TOOL_URI
    filename: str = "security-results.sarif"


class GitHubConfig(BaseModel):
    """Configuration for the GitHub issue alert sink."""

    # Token should come from environment variable for security
    token: str | None = Field(default=None, exclude=True)
    repository: str | None = None  # "owner/name"
    api_url: str = "https://api.github.com"
    timeout_seconds: int = Field(default=30, ge=5, le=300)

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("https://", "http://localhost")):
            raise ValueError("API URL must use HTTPS (or localhost for testing)")
        return v.rstrip("/")

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str | None) -> str | None:
        if v is None:
            return None
        parts = v.strip().split("/")
        if len(parts) != 2 or not all(parts):
            raise ValueError("repository must look like 'owner/name'")
        return v.strip()


class AlertConfig(BaseModel):
    """Alert creation settings."""

    labels: list[str] = Field(default_factory=lambda: list(DEFAULT_ALERT_LABELS))
    # Formatted with run_id, e.g. "https://github.com/o/r/actions/runs/{run_id}"
    run_url: str | None = None


class PipelineConfig(BaseSettings):
    """
    Main configuration for depaudit.

    Configuration precedence (highest to lowest):
    1. CLI overrides and config file values
    2. Environment variables (DEPAUDIT_*)
    3. Default values

    The token belongs in the environment, never in the file.

    Example environment variables:
        DEPAUDIT_LOG_LEVEL=DEBUG
        DEPAUDIT_GITHUB__TOKEN=ghp_xxx
        DEPAUDIT_GITHUB__REPOSITORY=owner/name
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPAUDIT_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    no_color: bool = False
    json_logs: bool = False

    project_dir: Path = Field(default=Path("."))
    policy_path: Path | None = None
    artifact_dir: Path = Field(default=Path("./security-reports"))

    comprehensive_threshold: SeverityName = "info"
    stage_grace_seconds: float = Field(default=DEFAULT_STAGE_GRACE_SECONDS, ge=0.0, le=3600.0)

    stages: dict[str, StageConfig] = Field(default_factory=_default_stages)
    interchange: InterchangeConfig = Field(default_factory=InterchangeConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)

    @field_validator("stages", mode="before")
    @classmethod
    def merge_stage_defaults(cls, v: Any) -> dict[str, Any]:
        """
        Reject unknown stage ids and tool names, and layer partial settings
        over the defaults, tool by tool.
        """
        if v is None:
            v = {}
        if not isinstance(v, dict):
            raise ValueError("stages must be a mapping of stage id to settings")
        unknown = set(v) - set(ALL_STAGES)
        if unknown:
            raise ValueError(f"Unknown stage(s): {', '.join(sorted(unknown))}")

        merged = {stage: cfg.model_dump() for stage, cfg in _default_stages().items()}
        for stage, override in v.items():
            if isinstance(override, StageConfig):
                override = override.model_dump(exclude_unset=True)
            if not isinstance(override, dict):
                raise ValueError(f"Settings for stage '{stage}' must be a mapping")

            override = dict(override)
            tools = override.pop("tools", None) or {}
            if not isinstance(tools, dict):
                raise ValueError(f"tools of stage '{stage}' must be a mapping of tool name to settings")
            unknown_tools = set(tools) - set(STAGE_TOOLS[stage])
            if unknown_tools:
                raise ValueError(
                    f"Unknown tool(s) for stage '{stage}': {', '.join(sorted(unknown_tools))}"
                )

            merged[stage].update(override)
            for name, tool_override in tools.items():
                if isinstance(tool_override, ToolConfig):
                    tool_override = tool_override.model_dump(exclude_unset=True)
                if not isinstance(tool_override, dict):
                    raise ValueError(f"Settings for tool '{name}' must be a mapping")
                merged[stage]["tools"][name].update(tool_override)
        return merged

    @model_validator(mode="after")
    def validate_policy_path(self) -> "PipelineConfig":
        if self.policy_path is not None and not self.policy_path.exists():
            raise ValueError(f"Policy document does not exist: {self.policy_path}")
        return self

    def stage(self, stage_id: str) -> StageConfig:
        return self.stages[stage_id]

    @classmethod
    def from_yaml_file(cls, path: Path) -> "PipelineConfig":
        """
        Load configuration from a YAML file.

        SECURITY: Uses safe_load to prevent code execution.
        """
        import yaml

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        if path.stat().st_size > MAX_FILE_SIZE_BYTES:
            raise ValueError(f"Config file too large: {path}")

        data = yaml.safe_load(path.read_text(encoding="utf-8"))

        if data is None:
            data = {}

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a YAML mapping")

        return cls(**data)

    def to_safe_dict(self) -> dict[str, Any]:
        """
        Export config as dict, excluding sensitive values.

        Use this for logging or debugging.
        """
        data = self.model_dump(mode="json")
        data.setdefault("github", {})["token"] = "***MASKED***" if self.github.token else None
        return data


def load_config(
    config_path: Path | None = None,
    **overrides: Any,
) -> PipelineConfig:
    """
    Load configuration from file and/or environment with overrides.

    Args:
        config_path: Optional path to YAML config file
        **overrides: Direct overrides for config values

    Returns:
        Validated PipelineConfig instance
    """
    if config_path:
        config = PipelineConfig.from_yaml_file(config_path)
    else:
        config = PipelineConfig()

    if overrides:
        config_dict = config.model_dump()
        # model_dump drops the excluded token; carry it across
        config_dict.setdefault("github", {})["token"] = config.github.token
        _deep_update(config_dict, overrides)
        config = PipelineConfig(**config_dict)

    return config


def _deep_update(base: dict[str, Any], updates: dict[str, Any]) -> None:
    """Recursively update a dictionary."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
