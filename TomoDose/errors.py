"""
Error taxonomy for the TomoDose pipeline.

Every error carries an optional job label (plan / image identifiers) that is
appended to the message once the orchestrator knows which job failed.
"""


class TomoDoseError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message, job=None):
        super().__init__(message)
        self.message = message
        self.job = job

    def with_job(self, job):
        if self.job is None:
            self.job = job
        return self

    def __str__(self):
        if self.job:
            return f"{self.message} [job: {self.job}]"
        return self.message


class ValidationError(TomoDoseError, ValueError):
    """Inputs rejected before any file is written."""


class UnsupportedRegistrationError(ValidationError):
    pass


class InvalidDownsampleError(ValidationError):
    pass


class MissingTotalTauError(ValidationError):
    pass


class SinogramIndexError(ValidationError):
    """A leaf event pair bucketed outside [1, numberOfProjections]."""


class EmptyDeliveryError(TomoDoseError):
    """No projection in the sinogram exceeds the activity threshold."""


class EngineUnavailableError(TomoDoseError):
    pass


class StagingError(TomoDoseError):
    pass


class ExternalEngineError(TomoDoseError):
    """
    The dose engine reported an error.

    ``output`` holds the captured engine output verbatim.
    """

    def __init__(self, message, output="", job=None):
        super().__init__(message, job=job)
        self.output = output


class BinaryFormatError(TomoDoseError, IOError):
    """Malformed or truncated binary file."""
