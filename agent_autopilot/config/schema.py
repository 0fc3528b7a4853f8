"""Configuration schema for agent-autopilot."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class TimingConfig(BaseModel):
    """Idle timeouts, readiness and run limits, in seconds unless noted."""

    idle_waiting_s: float = Field(default=1.5, gt=0)
    idle_working_s: float = Field(default=8.0, gt=0)
    idle_default_s: float = Field(default=5.0, gt=0)
    fast_path_settle_s: float = Field(default=0.15, ge=0)
    readiness_timeout_s: float = Field(default=8.0, gt=0)
    race_ceiling_s: float = Field(default=600.0, gt=0)
    time_limit_min: float = Field(default=30.0, ge=5, le=60)
    tick_interval_s: float = Field(default=2.0, gt=0)
    orchestrator_readiness_timeout_s: float = Field(default=30.0, gt=0)

    @property
    def time_limit_s(self) -> float:
        return self.time_limit_min * 60


class RetryConfig(BaseModel):
    """Backoff around decision calls."""

    max_attempts: int = Field(default=8, ge=1)
    base_delay_s: float = Field(default=1.0, ge=0)
    max_delay_s: float = Field(default=30.0, ge=0)


class DecisionConfig(BaseModel):
    """Decision provider selection and call limits."""

    provider: Literal["groq", "openai"] = "groq"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    api_base: str = ""
    request_timeout_s: float = 15.0
    temperature: float = 0.2
    max_tokens: int = 200
    summary_max_chars: int = 4000
    max_concurrent: int = Field(default=3, ge=1)
    max_consecutive_waits: int = Field(default=5, ge=1)

    @property
    def api_key(self) -> str:
        return self.openai_api_key if self.provider == "openai" else self.groq_api_key

    @property
    def model(self) -> str:
        return self.openai_model if self.provider == "openai" else self.groq_model


class ClassifierConfig(BaseModel):
    tail_lines: int = Field(default=12, ge=1)
    completion_window_chars: int = 3000


class BufferConfig(BaseModel):
    capacity_chars: int = Field(default=100_000, gt=0)
    activity_log_size: int = Field(default=500, gt=0)


class OrchestratorConfig(BaseModel):
    """Multi-session policy."""

    reassign_on_error: bool = False


class CLICommandsConfig(BaseModel):
    """Command overrides for each CLI assistant; empty means the registry default."""

    claude: str = ""
    codex: str = ""
    gemini: str = ""
    working_dir: str = ""
    cols: int = 120
    rows: int = 40

    def command_for(self, key: str) -> str:
        value = getattr(self, (key or "").strip().lower(), "")
        return value if isinstance(value, str) else ""


class Config(BaseSettings):
    """Root configuration for agent-autopilot."""

    timing: TimingConfig = Field(default_factory=TimingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    safety_level: Literal["safe", "moderate", "yolo"] = "safe"
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    cli: CLICommandsConfig = Field(default_factory=CLICommandsConfig)

    @property
    def working_dir(self) -> Path:
        """Get expanded working directory (current directory when unset)."""
        return Path(self.cli.working_dir or ".").expanduser()

    model_config = ConfigDict(
        env_prefix="AGENT_AUTOPILOT_",
        env_nested_delimiter="__",
        extra="ignore",
    )
