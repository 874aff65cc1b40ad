import base64
import hashlib
import io
import logging
import os
import select
import socket
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple, cast

import paramiko
import psycopg2

import pgbulk.config
from pgbulk.models import Credentials, SSHSettings
from pgbulk.tls import libpq_ssl_kwargs, normalize_ssl

"""PostgreSQL connection lifecycle.

One connection is opened per invocation, optionally through an SSH
bastion, and released exactly once by :func:`pg_session`.
"""

LOCAL_HOST = "127.0.0.1"
RELAY_CHUNK_SIZE = 16384

# dead peers are detected after idle + interval * count seconds
KEEPALIVE_IDLE_SECONDS = 30
KEEPALIVE_INTERVAL_SECONDS = 10
KEEPALIVE_COUNT = 3


def _fingerprint(server_key: paramiko.PKey) -> str:
    digest = hashlib.sha256(server_key.asbytes()).digest()
    return base64.b64encode(digest).rstrip(b"=").decode("ascii")


def _relay(client_sock: socket.socket, chan: paramiko.Channel) -> None:
    """Copies bytes both ways until either side closes."""
    try:
        while True:
            r, _, _ = select.select([client_sock, chan], [], [])
            if client_sock in r:
                data = client_sock.recv(RELAY_CHUNK_SIZE)
                if len(data) == 0:
                    break
                chan.sendall(data)
            if chan in r:
                data = chan.recv(RELAY_CHUNK_SIZE)
                if len(data) == 0:
                    break
                client_sock.sendall(data)
    finally:
        chan.close()
        client_sock.close()


class SSHTunnel:
    """
    Local TCP listener forwarding to ``remote_host:remote_port`` through an
    SSH bastion.

    The listener binds an ephemeral port on 127.0.0.1 (see
    :attr:`local_port`) and serves each client connection in a daemon
    thread over a ``direct-tcpip`` channel.
    """

    def __init__(
        self,
        settings: SSHSettings,
        remote_host: str,
        remote_port: int,
    ):
        self.settings = settings
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.local_port = 0
        self._client: Optional[paramiko.SSHClient] = None
        self._sock: Optional[socket.socket] = None

    def open(self) -> "SSHTunnel":
        expected = self.settings.fingerprint or pgbulk.config.ssh_fingerprint

        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.RejectPolicy())
        private_key = paramiko.RSAKey.from_private_key(
            io.StringIO(self.settings.private_key)
        )
        client.connect(
            self.settings.host,
            port=self.settings.port,
            username=self.settings.user or pgbulk.config.ssh_user,
            pkey=private_key,
        )

        transport = cast(paramiko.Transport, client.get_transport())
        fingerprint = _fingerprint(transport.get_remote_server_key())
        if fingerprint != expected:
            client.close()
            raise ValueError(
                f"Unexpected SSH host key fingerprint: {fingerprint}"
            )
        self._client = client

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((LOCAL_HOST, 0))
        sock.listen(16)
        self._sock = sock
        self.local_port = sock.getsockname()[1]

        threading.Thread(
            target=self._serve, args=(transport,), daemon=True
        ).start()
        logging.info(
            f"SSH tunnel {LOCAL_HOST}:{self.local_port} → "
            f"{self.remote_host}:{self.remote_port} via {self.settings.host}"
        )
        return self

    def _serve(self, transport: paramiko.Transport) -> None:
        sock = cast(socket.socket, self._sock)
        while True:
            try:
                client_sock, _ = sock.accept()
            except OSError:
                # listener closed
                return
            chan = transport.open_channel(
                "direct-tcpip",
                (self.remote_host, self.remote_port),
                client_sock.getpeername(),
            )
            if chan is None:
                logging.error("❌ Could not open SSH tunnel channel")
                client_sock.close()
                continue
            threading.Thread(
                target=_relay, args=(client_sock, chan), daemon=True
            ).start()

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        if self._client is not None:
            self._client.close()
            self._client = None


def create_pg_connection(
    credentials: Credentials,
) -> Tuple[psycopg2.extensions.connection, Optional[SSHTunnel]]:
    """
    Opens a psycopg2 connection for ``credentials``.

    The connection runs in autocommit mode: the import pipeline issues its
    own BEGIN / COMMIT / ROLLBACK.

    Returns
    -------
    tuple
        (psycopg2 connection, SSHTunnel or None)
    """
    host, port = credentials.host, credentials.port
    tunnel = None
    if credentials.ssh is not None:
        tunnel = SSHTunnel(credentials.ssh, host, port).open()
        host, port = LOCAL_HOST, tunnel.local_port

    tls = normalize_ssl(credentials.ssl, credentials.ssl_overrides)
    try:
        conn = psycopg2.connect(
            host=host,
            port=port,
            dbname=credentials.database,
            user=credentials.user,
            password=credentials.password,
            application_name=pgbulk.config.application_name,
            options="-c client_encoding=UTF8",
            keepalives=1,
            keepalives_idle=KEEPALIVE_IDLE_SECONDS,
            keepalives_interval=KEEPALIVE_INTERVAL_SECONDS,
            keepalives_count=KEEPALIVE_COUNT,
            **libpq_ssl_kwargs(tls),
        )
    except Exception:
        if tunnel is not None:
            tunnel.close()
        raise

    conn.autocommit = True
    return conn, tunnel


def cancel_backend(conn: psycopg2.extensions.connection) -> bool:
    """
    Asks the server to abort whatever the connection is running.

    Returns False when the cancel request could not be sent.
    """
    try:
        conn.cancel()
    except Exception as e:
        logging.warning(
            f"⚠️ Cancel request failed ({e.__class__.__name__}): {e}"
        )
        return False
    return True


def abort_connection(conn: psycopg2.extensions.connection) -> None:
    """
    Shuts down the connection's socket so a libpq call blocked on it
    fails immediately. The connection is unusable afterwards.
    """
    try:
        sock = socket.socket(fileno=os.dup(conn.fileno()))
    except Exception as e:
        logging.warning(
            f"⚠️ Cannot reach connection socket "
            f"({e.__class__.__name__}): {e}"
        )
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logging.warning(f"⚠️ Socket shutdown failed: {e}")
    finally:
        sock.close()


def release(
    conn: psycopg2.extensions.connection, tunnel: Optional[SSHTunnel] = None
) -> None:
    try:
        conn.close()
    except Exception as e:
        logging.warning(
            f"⚠️ Closing connection failed ({e.__class__.__name__}): {e}"
        )
    if tunnel is not None:
        try:
            tunnel.close()
        except Exception as e:
            logging.warning(
                f"⚠️ Closing SSH tunnel failed "
                f"({e.__class__.__name__}): {e}"
            )


@contextmanager
def pg_session(
    credentials: Credentials,
) -> Iterator[psycopg2.extensions.connection]:
    """Yields one connection and releases it on every exit path."""
    conn, tunnel = create_pg_connection(credentials)
    try:
        yield conn
    finally:
        release(conn, tunnel)
