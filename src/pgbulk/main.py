import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping

import pgbulk.config
from pgbulk.aws_secrets import format_secret, get_credentials
from pgbulk.connection import pg_session
from pgbulk.models import Credentials
from pgbulk.runner import run_items


def configure_logging() -> None:
    log_dir = Path(pgbulk.config.log_dir)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(
                log_dir / f"audit_{stamp}.log",
                encoding="utf-8",
            ),
            logging.StreamHandler(sys.stdout),
        ],
    )


def resolve_credentials(event: Mapping[str, Any]) -> Credentials:
    """
    Inline ``credentials`` win; otherwise the Secrets Manager secret named
    by ``secret_name`` (or the configured default) is read.
    """
    inline = event.get("credentials")
    if inline:
        return format_secret(inline)

    secret_name = event.get("secret_name") or pgbulk.config.secret_name
    if not secret_name:
        raise ValueError(
            "No credentials supplied and no secret name configured"
        )
    return get_credentials(secret_name)


def start(event: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """
    Entry point for one invocation.

    Opens a single connection, runs the requested COPY operation for every
    item in the event and releases the connection afterwards.
    """
    configure_logging()

    credentials = resolve_credentials(event)
    operation = event.get("operation", "copyTo")
    items = event.get("items") or [{}]
    timeout = event.get("timeout_seconds")
    if timeout is not None:
        timeout = float(timeout)

    with pg_session(credentials) as conn:
        return run_items(
            conn,
            operation,
            items,
            event.get("parameters") or {},
            timeout=timeout,
        )
