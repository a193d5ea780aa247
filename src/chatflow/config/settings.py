"""Settings configuration models.

Runtime settings for persistence, flow sources, the engine, the script
sandbox and logging. Every section has defaults, so an empty file is valid.
"""

from typing import Literal

from pydantic import BaseModel, Field

ScriptFailurePolicy = Literal["skip", "retry"]

DEFAULT_FAILURE_MESSAGE = "Something went wrong. Please try again."


class PersistenceSettings(BaseModel):
    """Session store configuration."""

    backend: Literal["memory", "sqlite"] = Field(
        default="memory", description="Session store backend: memory or sqlite"
    )
    path: str = Field(default="chatflow.db", description="SQLite database file")


class FlowSettings(BaseModel):
    """Where published flow definitions come from."""

    directory: str | None = Field(
        default=None, description="Directory of .yaml/.json flow files; None keeps flows in memory"
    )
    cache_size: int = Field(default=64, ge=1, description="Flow versions kept in memory")
    cache_ttl: float = Field(default=300.0, gt=0, description="Seconds before a flow is re-read")


class EngineSettings(BaseModel):
    """Session execution engine behaviour."""

    max_hops: int = Field(
        default=100,
        ge=1,
        description="Container jumps allowed in one turn before the flow is treated as cyclic",
    )
    script_failure_policy: ScriptFailurePolicy = Field(
        default="skip",
        description=(
            "What a failing script does to the cursor: "
            "'skip' = log and advance past the node, "
            "'retry' = stay on the node and re-run it on the next inbound event"
        ),
    )
    failure_message: str = Field(
        default=DEFAULT_FAILURE_MESSAGE, description="Text sent to the end user on a failed turn"
    )


class ScriptSettings(BaseModel):
    """Script sandbox limits."""

    timeout_ms: int = Field(default=250, ge=1, description="Wall-clock budget per script")
    max_code_length: int = Field(default=10_000, ge=1, description="Longest accepted script")


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Level for the chatflow logger")
    json_file: str | None = Field(default=None, description="Optional JSON log file")


class RuntimeSettings(BaseModel):
    """Top-level chatflow.yaml document."""

    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    flows: FlowSettings = Field(default_factory=FlowSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    script: ScriptSettings = Field(default_factory=ScriptSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
