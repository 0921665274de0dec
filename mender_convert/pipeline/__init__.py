"""Conversion commands and the controller that runs them."""

from .collaborators import Collaborators
from .commands import pipeline_for
from .context import COMMANDS, ConversionOptions, PipelineContext
from .controller import Pipeline, PipelineController, PipelineResult, RunState, Step

__all__ = [
    "COMMANDS",
    "Collaborators",
    "ConversionOptions",
    "Pipeline",
    "PipelineContext",
    "PipelineController",
    "PipelineResult",
    "RunState",
    "Step",
    "pipeline_for",
]
