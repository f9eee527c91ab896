from .dsl import job, sh, uses, matrix, wf, on_push, on_pull_request, JobBuilder, build
from .controller import PipelineController
from .loader import load_pipeline
from .model import Event, PipelineSpec, RunResult

__all__ = [
    "job",
    "sh",
    "uses",
    "matrix",
    "wf",
    "on_push",
    "on_pull_request",
    "JobBuilder",
    "build",
    "PipelineController",
    "load_pipeline",
    "Event",
    "PipelineSpec",
    "RunResult",
]
