from typing import Optional, Tuple

"""Terminal errors raised by the COPY pipelines and the invocation runner.

Lower-level psycopg2 / transport errors never leave a pipeline as-is: they
are classified with :func:`describe_failure` and re-raised as one of the
classes below, chained to the original with ``raise ... from``.
"""

MISSING_RELATION_MARKER = "does not exist"


class PgBulkError(Exception):
    """Base class for every error surfaced to the caller."""


class ExportFailed(PgBulkError):
    def __init__(self, description: str, missing_relation: bool = False):
        super().__init__(description)
        self.description = description
        self.missing_relation = missing_relation


class ExportInitError(ExportFailed):
    """The server rejected the COPY TO before any data was streamed."""


class ImportFailed(PgBulkError):
    def __init__(self, description: str, missing_relation: bool = False):
        super().__init__(description)
        self.description = description
        self.missing_relation = missing_relation


class TransferTimeout(PgBulkError):
    def __init__(self, direction: str, seconds: float):
        label = "COPY TO" if direction == "export" else "COPY FROM"
        super().__init__(f"{label} timeout after {seconds:g}s")
        self.direction = direction
        self.seconds = seconds


class MissingBinaryInput(PgBulkError):
    def __init__(self, field: str, item_index: Optional[int] = None):
        super().__init__(f'No binary data found in property "{field}"')
        self.field = field
        self.item_index = item_index


class UnsupportedOperation(PgBulkError):
    def __init__(self, operation: str):
        super().__init__(f"Unsupported operation: {operation}")
        self.operation = operation


def describe_failure(exc: BaseException, label: str) -> Tuple[str, bool]:
    """
    Turns a driver/transport error into a caller-facing description.

    Returns the description and whether the server reported a missing
    table or column, e.g. ``relation "orders" does not exist``.
    """
    message = str(exc).strip() or exc.__class__.__name__
    if MISSING_RELATION_MARKER in message:
        return f"Table or column does not exist: {message}", True
    return f"{label} failed: {message}", False
