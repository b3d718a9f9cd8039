from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field


class AutoscalerConfig(BaseModel):
    """Knobs for the worker-pool supervisor of a single task."""

    model_config = ConfigDict(frozen=True)

    max_workers: Annotated[int, Field(ge=1)] = Field(
        default=2, description='Ceiling on live worker processes'
    )
    sample_size: Annotated[int, Field(ge=2)] = Field(
        default=10, description='Queue-depth samples kept for trend detection'
    )
    tick_interval: Annotated[float, Field(gt=0)] = Field(
        default=1.0, description='Seconds between adjust_workers ticks'
    )
    throttle_interval: Annotated[float, Field(ge=0)] = Field(
        default=0.0, description='Base minimum seconds between two worker starts'
    )
    shutdown_grace: Annotated[float, Field(ge=0)] = Field(
        default=10.0,
        description='Seconds to wait after SIGTERM before killing workers',
    )
    exit_on_idle: bool = Field(
        default=True, description='Whether spawned workers exit once idle'
    )
