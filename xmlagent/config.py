"""Configuration management for xmlagent."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.xmlagent/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.xmlagent/checkpoints.db").expanduser()
LOCAL_CONFIG_FILENAME = "xmlagent.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "qwen2.5-coder:7b"
    temperature: float = 0.2
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""


class AgentConfig(BaseModel):
    """Agent loop limits."""

    max_iterations: int = Field(default=10, ge=1)
    max_turns: int = Field(default=30, ge=1)
    model_timeout_seconds: float = 120.0
    system_prompt_template: str = "system_prompt.md"


class SafetyConfig(BaseModel):
    """Safety gate policy."""

    require_confirmation: bool = True
    require_feedback: bool = False
    max_input_length: int = 1000
    dangerous_patterns: list[str] = [
        "rm -rf",
        "mkfs",
        ":(){:|:&};:",
        "dd if=",
        "> /dev/sd",
    ]
    blocked_shell_commands: list[str] = ["shutdown", "reboot"]


class InteractionConfig(BaseModel):
    """Human-in-the-loop waits and their fallbacks."""

    channel: Literal["console", "auto"] = "console"
    timeout_seconds: float = 30.0
    confirm_on_timeout: bool = False
    auto_answer: str = "yes"


class ProtocolConfig(BaseModel):
    """Response envelope decoding options."""

    repair_arguments: bool = False


class SessionConfig(BaseModel):
    """Checkpoint storage configuration."""

    storage: Literal["sqlite", "memory"] = "sqlite"
    path: str = str(DEFAULT_DB_PATH)
    max_wall_seconds: float | None = None


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 30
    max_output_chars: int = 10000


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = ["shell", "read", "write", "search"]
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)


class WorkspaceConfig(BaseModel):
    """Workspace root used by file tools."""

    path: str = "./workspace"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"
    file: str = ""


class Config(BaseSettings):
    """Main configuration for xmlagent."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    interaction: InteractionConfig = Field(default_factory=InteractionConfig)
    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="XMLAGENT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; env vars are applied by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workspace.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
