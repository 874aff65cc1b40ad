import logging
import time
from typing import Optional

import psycopg2

import pgbulk.config
from pgbulk.connection import abort_connection, cancel_backend
from pgbulk.deadline import Deadline
from pgbulk.errors import (
    ExportFailed,
    ExportInitError,
    TransferTimeout,
    describe_failure,
)
from pgbulk.models import Direction, TransferOutcome, TransferRequest
from pgbulk.streams import ExportSink


def copy_to(
    conn: psycopg2.extensions.connection,
    request: TransferRequest,
    timeout: Optional[float] = None,
) -> TransferOutcome:
    """
    Streams the result of ``request.query`` out of PostgreSQL with
    ``COPY (...) TO STDOUT``.

    The output is collected in an :class:`ExportSink`; the row count is the
    number of newline-terminated records, less the header line when one
    was requested.

    Raises
    ------
    ExportInitError
        The server refused the command before any data arrived (syntax
        error, missing relation, ...).
    ExportFailed
        The stream failed after it started.
    TransferTimeout
        The transfer did not finish within ``timeout`` seconds.
    """
    if request.direction is not Direction.EXPORT:
        raise ValueError(
            f"Expected an export request, got {request.direction}"
        )

    command = request.command
    seconds = float(
        pgbulk.config.timeout_seconds if timeout is None else timeout
    )
    sink = ExportSink(max_memory=pgbulk.config.spool_max_bytes)

    def _teardown() -> None:
        logging.warning(f"⏱️ COPY TO exceeded {seconds:g}s, cancelling")
        sink.destroy(TransferTimeout(Direction.EXPORT.value, seconds))
        if not cancel_backend(conn):
            abort_connection(conn)

    def _overrun() -> None:
        grace = pgbulk.config.cancel_grace_seconds
        logging.warning(
            f"⚠️ COPY still running {grace:g}s "
            "after cancel, closing the connection socket"
        )
        abort_connection(conn)

    logging.info(f"→ {command}")
    started = time.monotonic()

    try:
        with Deadline(
            seconds,
            _teardown,
            on_overrun=_overrun,
            grace=pgbulk.config.cancel_grace_seconds,
        ) as deadline:
            try:
                with conn.cursor() as cur:
                    cur.copy_expert(command, sink)
            except Exception as e:
                sink.fail(e)
            timed_out = deadline.settle()

        if timed_out:
            raise TransferTimeout(Direction.EXPORT.value, seconds)

        try:
            sink.finish()
        except Exception as e:
            if sink.byte_size == 0:
                description, missing = describe_failure(e, "COPY TO query")
                raise ExportInitError(description, missing) from e
            description, missing = describe_failure(e, "COPY TO")
            raise ExportFailed(description, missing) from e

        payload = sink.getvalue()
        row_count = sink.row_count(request.include_header)
    finally:
        sink.close()

    elapsed_ms = int((time.monotonic() - started) * 1000)
    logging.info(
        f"✅ COPY TO exported {row_count} row(s), {len(payload)} byte(s) "
        f"in {elapsed_ms} ms"
    )

    return TransferOutcome(
        row_count=row_count,
        byte_size=len(payload),
        elapsed_ms=elapsed_ms,
        payload=payload,
    )
