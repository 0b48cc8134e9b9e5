"""Configuration management for Taskloom."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.taskloom/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.taskloom/invocations.db").expanduser()
LOCAL_CONFIG_FILENAME = "taskloom.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    temperature: float = 0.1
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""
    context_window: int = 65536
    supports_reasoning: bool = False


class ContextConfig(BaseModel):
    """Context window budget and compaction configuration."""

    hard_ceiling: int = 200000
    response_reserve: int = 8000
    reasoning_reserve: int = 16000
    min_budget: int = 20000
    keep_recent: int = 4
    near_budget_threshold: float = 0.85
    proactive_threshold: float = 0.75
    structured_proactive_threshold: float = 0.60
    hard_threshold: float = 0.90
    compaction_target_ratio: float = 0.25
    max_tool_result_chars: int = 200000
    summary_temperature: float = 0.1
    summary_max_tokens: int = 2000
    summary_message_chars: int = 4000
    folded_max_chars: int = 30000
    folded_max_definitions: int = 25


class LoopConfig(BaseModel):
    """Agentic tool loop limits."""

    protocol: Literal["tag", "structured"] = "tag"
    streaming: bool = True
    max_steps: int = 100
    default_timeout_seconds: float = 300.0
    no_tool_grace: int = 2
    no_tool_abort: int = 8
    max_general_mistakes: int = 5
    stream_watchdog: bool = True


class RepetitionConfig(BaseModel):
    """Stuck-loop detection thresholds."""

    consecutive_limit: int = 3
    history_limit: int = 3
    name_frequency_limit: int = 8
    consecutive_name_limit: int = 5


class RetryConfig(BaseModel):
    """Transport retry and circuit breaker settings."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.25
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 60.0


class SchedulerConfig(BaseModel):
    """DAG scheduler configuration."""

    default_max_attempts: int = 3
    max_parallel: int = 0  # 0 = run every ready sub-task in the round


class DelegationConfig(BaseModel):
    """Worker-to-worker delegation limits."""

    max_depth: int = Field(default=2, ge=1, le=5)
    max_parallel: int = 5


class ToolsConfig(BaseModel):
    """Tools configuration."""

    timeout_seconds: float = 30.0
    ignore_file: str = ".taskloomignore"
    ignore_patterns: list[str] = Field(default_factory=list)


class ApprovalConfig(BaseModel):
    """Human approval gate configuration."""

    mode: Literal["autonomous", "auto_approve_reads", "approve_all"] = "autonomous"


class WorkerOverrideConfig(BaseModel):
    """Per worker-kind overrides."""

    tier: Literal["full", "read_write", "read", "none"] | None = None
    timeout_seconds: float | None = None
    allowed_tools: list[str] | None = None
    blocked_tools: list[str] = Field(default_factory=list)


class PersistenceConfig(BaseModel):
    """Invocation audit log configuration."""

    enabled: bool = False
    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Taskloom."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    repetition: RepetitionConfig = Field(default_factory=RepetitionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    delegation: DelegationConfig = Field(default_factory=DelegationConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    workers: dict[str, WorkerOverrideConfig] = Field(default_factory=dict)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TASKLOOM_",
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
        """Load configuration from YAML; env vars fill fields YAML leaves unset."""
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
