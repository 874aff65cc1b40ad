import logging
import time
from typing import Optional

import psycopg2

import pgbulk.config
from pgbulk.connection import abort_connection, cancel_backend
from pgbulk.deadline import Deadline
from pgbulk.errors import (
    ImportFailed,
    PgBulkError,
    TransferTimeout,
    describe_failure,
)
from pgbulk.models import Direction, TransferOutcome, TransferRequest
from pgbulk.streams import ImportSource


def _rollback(conn: psycopg2.extensions.connection) -> None:
    """Best-effort ROLLBACK; its own failure is logged, never raised."""
    try:
        with conn.cursor() as cur:
            cur.execute("ROLLBACK;")
    except Exception as e:
        logging.warning(
            f"⚠️ ROLLBACK failed ({e.__class__.__name__}): {e}"
        )


def _ensure_table_exists(
    cur: psycopg2.extensions.cursor, table: Optional[str]
) -> None:
    cur.execute("SELECT to_regclass(%s);", (table,))
    row = cur.fetchone()
    if row is None or row[0] is None:
        raise ImportFailed(f"Table does not exist: {table}", True)


def copy_from(
    conn: psycopg2.extensions.connection,
    request: TransferRequest,
    payload: bytes,
    timeout: Optional[float] = None,
) -> TransferOutcome:
    """
    Loads ``payload`` into ``request.table`` with ``COPY ... FROM STDIN``
    inside an explicit transaction.

    The transaction is committed only if the whole payload was accepted and
    ``request.dry_run`` is off; a dry run is always rolled back. COPY aborts
    on the first malformed row, so a failure means nothing was stored.

    The returned outcome has no ``row_count``: the protocol does not report
    one.
    """
    if request.direction is not Direction.IMPORT:
        raise ValueError(
            f"Expected an import request, got {request.direction}"
        )

    command = request.command
    seconds = float(
        pgbulk.config.timeout_seconds if timeout is None else timeout
    )
    source = ImportSource(payload)

    def _teardown() -> None:
        logging.warning(f"⏱️ COPY FROM exceeded {seconds:g}s, cancelling")
        source.destroy(TransferTimeout(Direction.IMPORT.value, seconds))
        if not cancel_backend(conn):
            abort_connection(conn)

    def _overrun() -> None:
        grace = pgbulk.config.cancel_grace_seconds
        logging.warning(
            f"⚠️ COPY still running {grace:g}s "
            "after cancel, closing the connection socket"
        )
        abort_connection(conn)

    logging.info(f"→ {command} ({len(payload)} byte(s))")
    started = time.monotonic()

    try:
        with conn.cursor() as cur:
            cur.execute("BEGIN;")
            if request.verify_table:
                _ensure_table_exists(cur, request.table)

            with Deadline(
                seconds,
                _teardown,
                on_overrun=_overrun,
                grace=pgbulk.config.cancel_grace_seconds,
            ) as deadline:
                try:
                    cur.copy_expert(
                        command, source, size=pgbulk.config.copy_chunk_size
                    )
                except Exception as e:
                    source.fail(e)
                timed_out = deadline.settle()

            if timed_out:
                raise TransferTimeout(Direction.IMPORT.value, seconds)
            source.finish()

            if request.dry_run:
                cur.execute("ROLLBACK;")
            else:
                cur.execute("COMMIT;")
    except PgBulkError:
        _rollback(conn)
        raise
    except Exception as e:
        _rollback(conn)
        description, missing = describe_failure(e, "COPY FROM")
        logging.error(f"❌ {description}")
        raise ImportFailed(description, missing) from e
    finally:
        source.close()

    committed = not request.dry_run
    elapsed_ms = int((time.monotonic() - started) * 1000)
    if committed:
        logging.info(f"✅ COPY FROM committed into {request.table}")
    else:
        logging.info(
            f"↩️ Dry run: COPY FROM into {request.table} rolled back"
        )

    return TransferOutcome(
        byte_size=len(payload),
        elapsed_ms=elapsed_ms,
        committed=committed,
    )
