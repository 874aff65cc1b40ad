from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from pgbulk.commands import (
    build_copy_from_command,
    build_copy_options,
    build_copy_to_command,
    resolve_columns,
    resolve_delimiter,
)

DEFAULT_FILE_NAME = "export.csv"
DEFAULT_BINARY_PROPERTY = "data"


class Direction(str, Enum):
    EXPORT = "export"
    IMPORT = "import"


@dataclass(frozen=True)
class TransferRequest:
    """
    One fully resolved COPY operation.

    The delimiter, column list and option clauses are fixed when the
    request is built, so :attr:`command` can be read before any network
    call is made.
    """

    direction: Direction
    fmt: str
    delimiter: str
    include_header: bool
    quote_char: Optional[str] = None
    null_string: Optional[str] = None
    encoding: Optional[str] = None
    columns: Tuple[str, ...] = ()
    query: Optional[str] = None
    table: Optional[str] = None
    dry_run: bool = False
    verify_table: bool = True
    file_name: str = DEFAULT_FILE_NAME
    binary_property: str = DEFAULT_BINARY_PROPERTY

    @classmethod
    def for_export(
        cls,
        query: str,
        fmt: str = "csv",
        custom_delimiter: Optional[str] = None,
        include_header: bool = True,
        quote_char: Optional[str] = None,
        null_string: Optional[str] = None,
        encoding: Optional[str] = None,
        file_name: str = DEFAULT_FILE_NAME,
        binary_property: str = DEFAULT_BINARY_PROPERTY,
    ) -> "TransferRequest":
        return cls(
            direction=Direction.EXPORT,
            fmt=fmt,
            delimiter=resolve_delimiter(fmt, custom_delimiter),
            include_header=include_header,
            quote_char=quote_char,
            null_string=null_string,
            encoding=encoding,
            query=query,
            file_name=file_name,
            binary_property=binary_property,
        )

    @classmethod
    def for_import(
        cls,
        table: str,
        fmt: str = "csv",
        custom_delimiter: Optional[str] = None,
        include_header: bool = True,
        columns: Any = None,
        quote_char: Optional[str] = None,
        null_string: Optional[str] = None,
        dry_run: bool = False,
        verify_table: bool = True,
    ) -> "TransferRequest":
        return cls(
            direction=Direction.IMPORT,
            fmt=fmt,
            delimiter=resolve_delimiter(fmt, custom_delimiter),
            include_header=include_header,
            quote_char=quote_char,
            null_string=null_string,
            columns=tuple(resolve_columns(columns)),
            table=table,
            dry_run=dry_run,
            verify_table=verify_table,
        )

    @property
    def options(self) -> Sequence[str]:
        # ENCODING only applies to COPY TO
        encoding = None
        if self.direction is Direction.EXPORT:
            encoding = self.encoding
        return build_copy_options(
            self.delimiter,
            self.include_header,
            quote_char=self.quote_char,
            null_string=self.null_string,
            encoding=encoding,
        )

    @property
    def command(self) -> str:
        if self.direction is Direction.EXPORT:
            return build_copy_to_command(self.query or "", self.options)
        return build_copy_from_command(
            self.table or "", self.columns, self.options
        )


@dataclass(frozen=True)
class TransferOutcome:
    """
    Result of one COPY.

    ``row_count`` is ``None`` for imports: COPY FROM does not report how
    many rows it stored and no count is made up for it.
    """

    byte_size: int
    elapsed_ms: int
    row_count: Optional[int] = None
    committed: Optional[bool] = None
    payload: Optional[bytes] = None


@dataclass(frozen=True)
class SSHSettings:
    host: str
    private_key: str
    user: Optional[str] = None
    port: int = 22
    fingerprint: Optional[str] = None


@dataclass(frozen=True)
class Credentials:
    """Connection details as supplied by the caller or Secrets Manager."""

    host: str
    database: str
    user: str
    password: str = field(default="", repr=False)
    port: int = 5432
    ssl: Any = None
    ssl_overrides: Dict[str, Any] = field(default_factory=dict)
    ssh: Optional[SSHSettings] = None
