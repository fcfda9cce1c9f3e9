"""Configuration management for Mentis."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.mentis/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "mentis.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = ""
    temperature: float = 0.7
    max_tokens: int | None = None
    api_key: str = ""
    base_url: str = ""
    timeout: float = 300.0


class ContextConfig(BaseModel):
    """Context window configuration."""

    max_tokens: int = 128000
    compaction_threshold: int = 80
    auto_compact: bool = True
    repo_map_ignore: list[str] = [
        ".git",
        "node_modules",
        "dist",
        "coverage",
        ".DS_Store",
        "__pycache__",
        ".venv",
    ]


class WebSearchToolConfig(BaseModel):
    """Web search tool configuration."""

    api_key: str = ""
    base_url: str = "https://api.search.brave.com/res/v1/web/search"
    max_results: int = 5
    timeout: int = 20


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "read_file",
        "write_file",
        "edit_file",
        "list_dir",
        "search_files",
        "run_shell",
        "git_status",
        "git_diff",
        "git_commit",
        "git_push",
        "git_pull",
        "web_search",
    ]
    # Empty means "use each tool's own declaration".
    require_confirmation: list[str] = []
    web_search: WebSearchToolConfig = Field(default_factory=WebSearchToolConfig)


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    mode: Literal["plan", "build"] = "build"
    auto_confirm: bool = False
    max_iterations: int = 50
    turn_timeout: float | None = None


class ShellConfig(BaseModel):
    """Persistent shell configuration."""

    sentinel: str = "MENTIS_SHELL_DELIMITER"
    executable: str = ""


class RpcServerConfig(BaseModel):
    """External tool provider started at launch."""

    name: str = ""
    command: str
    args: list[str] = []
    env: dict[str, str] = {}


class RpcConfig(BaseModel):
    """Subprocess RPC configuration."""

    protocol_version: str = "2024-11-05"
    client_name: str = "mentis-cli"
    servers: list[RpcServerConfig] = []


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Mentis."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    shell: ShellConfig = Field(default_factory=ShellConfig)
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="MENTIS_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Let environment variables override values coming from YAML."""
        return env_settings, dotenv_settings, init_settings, file_secret_settings

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
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH

        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
