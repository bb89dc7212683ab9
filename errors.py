"""
Document generation errors.

Every failure the generation pipeline can surface derives from
DocumentGenerationError. Fatal errors abort the run; PersistFailure,
UsageCountFailure and AuditLogFailure are attached to an otherwise
successful result as warnings.
"""
from typing import Optional


class DocumentGenerationError(Exception):
    """Base exception for the document generation engine."""

    stage: str = "generation"

    def __init__(self, message: str, stage: str = None):
        super().__init__(message)
        if stage:
            self.stage = stage


class InvalidRequest(DocumentGenerationError):
    """The caller did not supply a template or a case id."""
    stage = "request"


class RecordNotFound(DocumentGenerationError):
    """A case, office, user or template id is unknown to the record store."""
    stage = "record"


class MalformedTemplate(DocumentGenerationError):
    """Template binary is not a valid archive or has no text parts."""
    stage = "tag_extraction"


class DownloadFailure(DocumentGenerationError):
    """Template binary could not be fetched from the blob store."""
    stage = "template_fetching"

    def __init__(self, message: str, location: str = None, status_code: int = None):
        super().__init__(message)
        self.location = location
        self.status_code = status_code


class RenderMismatch(DocumentGenerationError):
    """Template tags and context shape disagree."""
    stage = "rendering"

    def __init__(self, message: str = None, tag: Optional[str] = None, explanation: Optional[str] = None):
        self.tag = tag
        self.explanation = explanation
        if message is None:
            message = self.user_message()
        super().__init__(message)

    def user_message(self) -> str:
        """Operator-facing text naming the tag to fix."""
        explanation = self.explanation or "The template could not be rendered"
        if self.tag:
            return f"Template Error: {explanation}. Check tag '{{{self.tag}}}' in your template."
        return f"Template Error: {explanation}."


class PersistFailure(DocumentGenerationError):
    """Record update or audit-log write failed after rendering."""
    stage = "persisting"


class UsageCountFailure(DocumentGenerationError):
    """Template usage counter could not be incremented."""
    stage = "done"


class AuditLogFailure(DocumentGenerationError):
    """Generation audit entry could not be appended."""
    stage = "done"


class InvalidPipelineState(DocumentGenerationError):
    """An operation was called in a state that does not allow it."""
    stage = "pipeline"


class StorageFailure(DocumentGenerationError):
    """Blob upload or delete failed."""
    stage = "storage"

    def __init__(self, message: str, location: str = None, status_code: int = None):
        super().__init__(message)
        self.location = location
        self.status_code = status_code
