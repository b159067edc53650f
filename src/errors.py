"""Exception hierarchy for the statement pipeline."""


class StatementError(Exception):
    """Base class for all pipeline errors."""


class DocumentUnreadable(StatementError):
    """The document is empty, corrupt, or in an unsupported format."""


class OCREngineUnavailable(StatementError):
    """The OCR engine binary or language data cannot be used."""


class LearningStoreWriteConflict(StatementError):
    """A record changed between read and write.

    Raised inside the store and retried on a fresh read; it only escapes
    when the retry budget is exhausted.
    """


class ProcessingTimeout(StatementError):
    """OCR or document processing exceeded its time limit."""


class ProcessingCancelled(StatementError):
    """The caller cancelled a document task."""
