"""Kernel configuration."""

from pydantic import BaseModel, Field


class KernelConfig(BaseModel):
    """Configuration for the mutation kernel."""

    db_path: str = ":memory:"
    context_window: int = Field(ge=1, default=20)     # Events read per context resolution
    read_batch_size: int = Field(ge=1, default=100)   # Page size for lazy log reads
    allow_ai_override: bool = False                   # Let AI-origin candidates skip deal stages
    log_level: str = "INFO"
    json_logs: bool = True
