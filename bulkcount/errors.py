from typing import Optional


class PipelineError(Exception):
    """Base error for a fatal, non-retried pipeline failure."""

    def __init__(
        self, message: str, accession: Optional[str] = None, stage: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.accession = accession
        self.stage = stage

    def __str__(self) -> str:
        # prefix the message with whatever context is known
        context = ":".join(part for part in (self.accession, self.stage) if part)
        if context:
            return f"[{context}] {self.message}"
        return self.message


class ConfigurationError(PipelineError):
    """Raised for invalid or inconsistent configuration values."""


class MissingInputError(PipelineError):
    """Raised when a required input file is absent before a stage starts."""


class StageExecutionError(PipelineError):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int],
        accession: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message, accession=accession, stage=stage)
        self.returncode = returncode

    def __str__(self) -> str:
        return f"{super().__str__()} (exit status {self.returncode})"


class ConfigurationScopeError(PipelineError):
    """Raised when the annotation and reference scope yield no usable output."""


class CleanupPreconditionError(PipelineError):
    """Raised when intermediates would be deleted before their count table exists."""
