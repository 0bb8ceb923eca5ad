from __future__ import annotations


class PipelineError(Exception):
    """Base class for every hard failure of a pipeline invocation.

    `stage` names the pipeline stage that failed so the caller (job
    orchestrator, CLI) can decide what to retry.
    """

    stage = "pipeline"
    retryable = False

    def __init__(self, message: str, *, stage: str | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        return f"[{self.stage}] {super().__str__()}"


class ConfigError(PipelineError, ValueError):
    stage = "config"


class ImageDecodeError(PipelineError):
    stage = "tiling"


class RecognitionError(PipelineError):
    """Recognition service unavailable or returned garbage.

    Distinct from an empty result ("no text found").
    """

    stage = "recognition"
    retryable = True

    def __init__(self, message: str, *, tile_index: int | None = None, status_code: int | None = None):
        super().__init__(message)
        self.tile_index = tile_index
        self.status_code = status_code


class RateLimitError(RecognitionError):
    pass


class ExtractionError(PipelineError):
    stage = "extraction"


class ExtractionSchemaError(ExtractionError):
    """The language model answered, but not in the expected structure."""


class PipelineCancelledError(PipelineError):
    stage = "cancelled"
