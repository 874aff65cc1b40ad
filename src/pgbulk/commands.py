from typing import Any, Iterable, List, Optional, Sequence

"""Builders for the COPY command text.

Everything here is pure string work; nothing touches a connection.
Query, table, column and option values are interpolated verbatim, the
caller is trusted to supply them.
"""

TAB = "\t"
COMMA = ","
FALLBACK_DELIMITER = "|"


def resolve_delimiter(fmt: Optional[str], custom: Optional[str] = None) -> str:
    if fmt == "tsv":
        return TAB
    if fmt == "custom":
        return custom or FALLBACK_DELIMITER
    return COMMA


def build_copy_options(
    delimiter: str,
    include_header: bool,
    quote_char: Optional[str] = None,
    null_string: Optional[str] = None,
    encoding: Optional[str] = None,
) -> List[str]:
    """
    Returns the WITH (...) clauses in their fixed order: format, delimiter,
    header, quote, null, encoding.

    ``null_string=""`` emits ``NULL ''``; only ``None`` omits the clause.
    """
    clauses = ["FORMAT CSV", f"DELIMITER '{delimiter}'"]
    if include_header:
        clauses.append("HEADER")
    if quote_char:
        clauses.append(f"QUOTE '{quote_char}'")
    if null_string is not None:
        clauses.append(f"NULL '{null_string}'")
    if encoding:
        clauses.append(f"ENCODING '{encoding}'")
    return clauses


def build_copy_to_command(query: str, options: Sequence[str]) -> str:
    return f"COPY ({query}) TO STDOUT WITH ({', '.join(options)})"


def build_copy_from_command(
    table: str, columns: Sequence[str], options: Sequence[str]
) -> str:
    target = f"{table} ({', '.join(columns)})" if columns else table
    return f"COPY {target} FROM STDIN WITH ({', '.join(options)})"


def resolve_columns(mapping: Any) -> List[str]:
    """
    Flattens a column mapping into the ordered list of target columns.

    Accepts ``{"columns": [...]}``, a list of ``{"target": name}`` dicts or
    a list of plain names. Entries without a target name are skipped.
    """
    if isinstance(mapping, dict):
        mapping = mapping.get("columns")
    if not isinstance(mapping, (list, tuple)):
        return []

    entries: Iterable[Any] = mapping
    columns = []
    for entry in entries:
        target = entry.get("target") if isinstance(entry, dict) else entry
        if isinstance(target, str) and target.strip():
            columns.append(target.strip())
    return columns
