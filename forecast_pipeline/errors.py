"""Pipeline exception taxonomy.

Item-level errors (UnsupportedMedia, TranscriptionFailed, ExtractionFailed)
are absorbed by a unit of work and counted.  SourceUnavailable is retried
at the (forecaster, channel) level.  OrchestrationError fails the job and
its message is stored verbatim on the job row.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        channel_id: str | None = None,
        item_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.channel_id = channel_id
        self.item_id = item_id

    def __str__(self) -> str:
        return self.message


class SourceUnavailable(PipelineError):
    """Content source unreachable, rate-limited, or returned an error."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        channel_id: str | None = None,
        item_id: str | None = None,
    ) -> None:
        super().__init__(message, channel_id=channel_id, item_id=item_id)
        self.status_code = status_code


class UnsupportedMedia(PipelineError):
    """Content item whose media type cannot be turned into text."""


class TranscriptionFailed(PipelineError):
    """Speech-to-text produced nothing usable, or ran past its timeout."""


class ExtractionFailed(PipelineError):
    """LLM output stayed malformed after the bounded number of attempts."""


class InvalidChannelConfig(PipelineError):
    """Channel configuration rejected at write time."""


class OrchestrationError(PipelineError):
    """Unexpected internal fault that fails a whole job."""


class JobNotFound(PipelineError, KeyError):
    """No extraction job with the requested id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Extraction job not found: {job_id}")
        self.job_id = job_id
