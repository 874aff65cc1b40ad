import base64
import binascii
import logging
from typing import Any, Dict, List, Mapping, Optional

import psycopg2

from pgbulk.copy_from import copy_from
from pgbulk.copy_to import copy_to
from pgbulk.errors import (
    ImportFailed,
    MissingBinaryInput,
    UnsupportedOperation,
)
from pgbulk.models import TransferRequest

"""Runs one operation over every input item on a shared connection.

Items are processed in order and the first failure aborts the batch; the
caller owns the connection and releases it.
"""

COPY_TO = "copyTo"
COPY_FROM = "copyFrom"

Item = Dict[str, Any]


def _param(
    parameters: Mapping[str, Any],
    item: Mapping[str, Any],
    name: str,
    default: Any = None,
) -> Any:
    """Per-item parameters take precedence over the invocation's."""
    overrides = item.get("parameters") or {}
    if name in overrides:
        return overrides[name]
    return parameters.get(name, default)


def _mime_for(fmt: str) -> tuple[str, str]:
    if fmt == "csv":
        return "text/csv", "csv"
    return "text/tab-separated-values", "tsv"


def _decode_binary(item: Mapping[str, Any], field: str, index: int) -> bytes:
    binary = item.get("binary") or {}
    entry = binary.get(field)
    if not entry or entry.get("data") is None:
        raise MissingBinaryInput(field, index)
    try:
        # MIME-wrapped payloads carry line breaks
        data = "".join(str(entry["data"]).split())
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImportFailed(
            f"Binary data in \"{field}\" is not valid base64"
        ) from e


def export_item(
    conn: psycopg2.extensions.connection,
    parameters: Mapping[str, Any],
    item: Mapping[str, Any],
    timeout: Optional[float] = None,
) -> Item:
    options = _param(parameters, item, "options") or {}
    fmt = _param(parameters, item, "outputFormat", "csv")

    request = TransferRequest.for_export(
        query=_param(parameters, item, "query"),
        fmt=fmt,
        custom_delimiter=_param(parameters, item, "customDelimiter"),
        include_header=bool(_param(parameters, item, "includeHeader", True)),
        quote_char=options.get("quoteChar"),
        null_string=options.get("nullString"),
        encoding=options.get("encoding"),
        file_name=_param(parameters, item, "fileName", "export.csv"),
        binary_property=_param(parameters, item, "binaryPropertyName", "data"),
    )
    outcome = copy_to(conn, request, timeout=timeout)

    mime_type, extension = _mime_for(fmt)
    encoded = base64.b64encode(outcome.payload or b"").decode("ascii")
    return {
        "json": {
            "rowCount": outcome.row_count,
            "fileSize": outcome.byte_size,
            "executionTimeMs": outcome.elapsed_ms,
            "fileName": request.file_name,
            "format": fmt,
        },
        "binary": {
            request.binary_property: {
                "data": encoded,
                "fileName": request.file_name,
                "mimeType": mime_type,
                "fileExtension": extension,
            }
        },
    }


def import_item(
    conn: psycopg2.extensions.connection,
    parameters: Mapping[str, Any],
    item: Mapping[str, Any],
    index: int = 0,
    timeout: Optional[float] = None,
) -> Item:
    field = _param(parameters, item, "inputBinaryField", "data")
    payload = _decode_binary(item, field, index)

    options = _param(parameters, item, "inputOptions") or {}
    if options.get("skipErrors"):
        logging.warning(
            "⚠️ skipErrors has no effect: COPY FROM aborts the whole "
            "transfer on the first malformed row"
        )

    request = TransferRequest.for_import(
        table=_param(parameters, item, "tableName"),
        fmt=_param(parameters, item, "inputFormat", "csv"),
        custom_delimiter=_param(parameters, item, "inputCustomDelimiter"),
        include_header=bool(_param(parameters, item, "hasHeader", True)),
        columns=_param(parameters, item, "columnMapping"),
        quote_char=options.get("quoteChar"),
        null_string=options.get("nullString"),
        dry_run=bool(options.get("dryRun", False)),
        verify_table=bool(options.get("verifyTable", True)),
    )
    outcome = copy_from(conn, request, payload, timeout=timeout)

    return {
        "json": {
            "success": True,
            "table": request.table,
            "rowsImported": outcome.row_count,
            "rowsSkipped": 0,
            "errors": [],
            "executionTimeMs": outcome.elapsed_ms,
            "dryRun": request.dry_run,
            "committed": outcome.committed,
        }
    }


def run_items(
    conn: psycopg2.extensions.connection,
    operation: str,
    items: List[Item],
    parameters: Mapping[str, Any],
    timeout: Optional[float] = None,
) -> List[Item]:
    """
    Executes ``operation`` (``copyTo`` or ``copyFrom``) once per item.

    Raises UnsupportedOperation for any other operation name before any
    statement is sent.
    """
    if operation not in (COPY_TO, COPY_FROM):
        raise UnsupportedOperation(operation)

    logging.info(f"\n=== {operation}: {len(items)} item(s) ===")
    results = []
    for index, item in enumerate(items):
        if operation == COPY_TO:
            results.append(export_item(conn, parameters, item, timeout))
        else:
            results.append(import_item(conn, parameters, item, index, timeout))
        logging.info(f"✅ Item {index + 1}/{len(items)} done")
    return results
