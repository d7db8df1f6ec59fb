"""Configuration utilities for Gantry."""
from __future__ import annotations

from .pipeline import (
    DEFAULT_QUEUE,
    STEP_NAMES,
    MatrixEntry,
    PipelineConfig,
    load_pipeline_config,
    render_generate_payload,
    resolve,
)

__all__ = [
    "DEFAULT_QUEUE",
    "STEP_NAMES",
    "MatrixEntry",
    "PipelineConfig",
    "load_pipeline_config",
    "render_generate_payload",
    "resolve",
]
