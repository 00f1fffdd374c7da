"""clirun-mcp configuration loader - reads from clirun.toml with ENV overrides."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import tomllib
from typing import Any, cast

_TRUE = ("1", "true", "yes")


@dataclass
class ServerConfig:
    """Server identity and logging."""

    server_id: str = "process"
    log_level: str = "info"

    def validate(self) -> None:
        if not self.server_id:
            raise ValueError("server_id must not be empty")
        if self.log_level.lower() not in ("debug", "info", "warning", "error"):
            raise ValueError(f"Invalid log_level: {self.log_level}")


@dataclass
class ToolsConfig:
    """Process execution settings shared by every tool."""

    exec_timeout: float = 60.0
    max_output_bytes: int = 1_048_576

    def validate(self) -> None:
        if self.exec_timeout <= 0:
            raise ValueError("exec_timeout must be positive")
        if self.max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be positive")


@dataclass
class OutputConfig:
    """Dual-output compaction settings."""

    compact_ratio: float = 1.0

    def validate(self) -> None:
        if self.compact_ratio <= 0:
            raise ValueError("compact_ratio must be positive")


@dataclass
class LazyConfig:
    """Deferred tool registration."""

    enabled: bool = False

    def validate(self) -> None:
        pass


@dataclass
class PolicyConfig:
    """
    Static allow-lists. Environment variables with the same keys
    (CLIRUN_ALLOWED_COMMANDS, CLIRUN_GIT_ALLOWED_COMMANDS, ...) take
    precedence and are re-read on every check.
    """

    allowed_commands: list[str] = field(default_factory=list)
    allowed_roots: list[str] = field(default_factory=list)
    servers: dict[str, dict[str, list[str]]] = field(default_factory=dict)

    def validate(self) -> None:
        for server_id, section in self.servers.items():
            for key in section:
                if key not in ("allowed_commands", "allowed_roots"):
                    raise ValueError(f"Unknown policy key for server {server_id}: {key}")

    def as_mapping(self) -> dict[str, list[str]]:
        """Flatten into CLIRUN_* keys for a MappingPolicySource."""
        from clirun_mcp.policy import policy_key

        values: dict[str, list[str]] = {}
        if self.allowed_commands:
            values[policy_key("ALLOWED_COMMANDS")] = list(self.allowed_commands)
        if self.allowed_roots:
            values[policy_key("ALLOWED_ROOTS")] = list(self.allowed_roots)
        for server_id, section in self.servers.items():
            for key, items in section.items():
                values[policy_key(key.upper(), server_id)] = list(items)
        return values


@dataclass
class ObservabilityConfig:
    """Observability settings."""

    enabled: bool = False
    log_format: str = "json"  # "json" | "text"
    log_level: str = "info"
    include_correlation_id: bool = True
    # Token audit CSV
    csv_token_audit_enabled: bool = False
    csv_path: str = "./artifacts/token_audit.csv"

    def validate(self) -> None:
        if self.log_format not in ("json", "text"):
            raise ValueError(f"Invalid log_format: {self.log_format}")
        if self.enabled and self.csv_token_audit_enabled:
            path = Path(self.csv_path)
            if path.exists() and not path.is_file():
                raise ValueError(f"Audit CSV path '{self.csv_path}' exists but is not a file")


@dataclass
class ClirunConfig:
    """Root configuration."""

    config_version: str = "v1"
    server: ServerConfig = field(default_factory=ServerConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    lazy: LazyConfig = field(default_factory=LazyConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def validate(self) -> None:
        self.server.validate()
        self.tools.validate()
        self.output.validate()
        self.lazy.validate()
        self.policy.validate()
        self.observability.validate()


def _env_bool(name: str) -> bool | None:
    value = os.getenv(name)
    if not value:
        return None
    return value.strip().lower() in _TRUE


def _apply_env_overrides(cfg: ClirunConfig) -> ClirunConfig:
    """Apply environment variable overrides. ENV beats TOML."""
    if os.getenv("CLIRUN_SERVER_ID"):
        cfg.server.server_id = os.getenv("CLIRUN_SERVER_ID", cfg.server.server_id)

    if os.getenv("CLIRUN_LOG_LEVEL"):
        cfg.server.log_level = os.getenv("CLIRUN_LOG_LEVEL", cfg.server.log_level)

    if os.getenv("CLIRUN_EXEC_TIMEOUT"):
        cfg.tools.exec_timeout = float(os.getenv("CLIRUN_EXEC_TIMEOUT", cfg.tools.exec_timeout))

    if os.getenv("CLIRUN_MAX_OUTPUT_BYTES"):
        cfg.tools.max_output_bytes = int(
            os.getenv("CLIRUN_MAX_OUTPUT_BYTES", cfg.tools.max_output_bytes)
        )

    # CLIRUN_LAZY=true turns on deferred registration
    lazy = _env_bool("CLIRUN_LAZY")
    if lazy is not None:
        cfg.lazy.enabled = lazy

    obs_enabled = _env_bool("CLIRUN_OBS_ENABLED")
    if obs_enabled is not None:
        cfg.observability.enabled = obs_enabled
    if os.getenv("CLIRUN_OBS_LOG_FORMAT"):
        cfg.observability.log_format = os.getenv(
            "CLIRUN_OBS_LOG_FORMAT", cfg.observability.log_format
        )
    csv_enabled = _env_bool("CLIRUN_OBS_CSV_ENABLED")
    if csv_enabled is not None:
        cfg.observability.csv_token_audit_enabled = csv_enabled
    if os.getenv("CLIRUN_OBS_CSV_PATH"):
        cfg.observability.csv_path = os.getenv("CLIRUN_OBS_CSV_PATH", cfg.observability.csv_path)

    return cfg


def _load_toml(cfg: ClirunConfig, data: dict[str, Any]) -> None:
    mcp_data = data.get("mcp", {})

    cfg.config_version = mcp_data.get("config_version", cfg.config_version)

    srv = mcp_data.get("server", {})
    cfg.server.server_id = srv.get("server_id", cfg.server.server_id)
    cfg.server.log_level = srv.get("log_level", cfg.server.log_level)

    tools = mcp_data.get("tools", {})
    cfg.tools.exec_timeout = tools.get("exec_timeout", cfg.tools.exec_timeout)
    cfg.tools.max_output_bytes = tools.get("max_output_bytes", cfg.tools.max_output_bytes)

    output = mcp_data.get("output", {})
    cfg.output.compact_ratio = output.get("compact_ratio", cfg.output.compact_ratio)

    lazy = mcp_data.get("lazy", {})
    cfg.lazy.enabled = lazy.get("enabled", cfg.lazy.enabled)

    # [mcp.policy] plus per-server [mcp.policy.<server>] tables
    policy = dict(mcp_data.get("policy", {}))
    cfg.policy.allowed_commands = policy.pop("allowed_commands", cfg.policy.allowed_commands)
    cfg.policy.allowed_roots = policy.pop("allowed_roots", cfg.policy.allowed_roots)
    cfg.policy.servers = {k: v for k, v in policy.items() if isinstance(v, dict)}

    obs = mcp_data.get("observability", {})
    cfg.observability.enabled = obs.get("enabled", cfg.observability.enabled)
    cfg.observability.log_format = obs.get("log_format", cfg.observability.log_format)
    cfg.observability.log_level = obs.get("log_level", cfg.observability.log_level)
    cfg.observability.include_correlation_id = obs.get(
        "include_correlation_id", cfg.observability.include_correlation_id
    )
    cfg.observability.csv_token_audit_enabled = obs.get(
        "csv_token_audit_enabled", cfg.observability.csv_token_audit_enabled
    )
    cfg.observability.csv_path = obs.get("csv_path", cfg.observability.csv_path)


def load_config(config_path: str | Path | None = None) -> ClirunConfig:
    """
    Load config from clirun.toml with ENV overrides.

    Precedence: ENV → TOML → defaults

    Args:
        config_path: Path to clirun.toml. If None, searches:
            1. CLIRUN_CONFIG env var
            2. ./clirun.toml

    Returns:
        ClirunConfig dataclass with merged settings.
    """
    if config_path is None:
        if os.getenv("CLIRUN_CONFIG"):
            config_path = Path(cast(str, os.getenv("CLIRUN_CONFIG")))
        else:
            config_path = Path("clirun.toml")
    else:
        config_path = Path(config_path)

    cfg = ClirunConfig()

    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
        _load_toml(cfg, data)

    cfg = _apply_env_overrides(cfg)
    cfg.validate()

    return cfg
