import base64
import hashlib
import socket
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from pgbulk.connection import (
    SSHTunnel,
    _relay,
    abort_connection,
    cancel_backend,
    create_pg_connection,
    pg_session,
    release,
)
from pgbulk.errors import TransferTimeout
from pgbulk.models import Credentials, SSHSettings


def _credentials(**kwargs):
    base = dict(
        host="db-host",
        port=5433,
        database="app",
        user="loader",
        password="pwd",
    )
    base.update(kwargs)
    return Credentials(**base)


@patch("pgbulk.connection.psycopg2.connect")
def test_create_pg_connection_direct(mock_connect):
    conn = MagicMock()
    mock_connect.return_value = conn

    result, tunnel = create_pg_connection(_credentials())

    assert result is conn
    assert tunnel is None
    assert conn.autocommit is True
    kwargs = mock_connect.call_args.kwargs
    assert kwargs["host"] == "db-host"
    assert kwargs["port"] == 5433
    assert kwargs["dbname"] == "app"
    assert kwargs["user"] == "loader"
    assert kwargs["password"] == "pwd"
    assert kwargs["sslmode"] == "disable"
    assert kwargs["options"] == "-c client_encoding=UTF8"
    assert kwargs["keepalives"] == 1


@patch("pgbulk.connection.psycopg2.connect")
def test_create_pg_connection_passes_tls_settings(mock_connect):
    create_pg_connection(
        _credentials(ssl="require", ssl_overrides={"ignoreSslIssues": True})
    )
    assert mock_connect.call_args.kwargs["sslmode"] == "require"


@patch("pgbulk.connection.psycopg2.connect")
@patch("pgbulk.connection.SSHTunnel")
def test_create_pg_connection_through_tunnel(mock_tunnel_cls, mock_connect):
    tunnel = MagicMock()
    tunnel.local_port = 40001
    mock_tunnel_cls.return_value.open.return_value = tunnel
    ssh = SSHSettings(host="bastion", private_key="KEY")

    _, result_tunnel = create_pg_connection(_credentials(ssh=ssh))

    mock_tunnel_cls.assert_called_once_with(ssh, "db-host", 5433)
    assert result_tunnel is tunnel
    kwargs = mock_connect.call_args.kwargs
    assert kwargs["host"] == "127.0.0.1"
    assert kwargs["port"] == 40001


@patch("pgbulk.connection.psycopg2.connect")
@patch("pgbulk.connection.SSHTunnel")
def test_tunnel_closed_when_connect_fails(mock_tunnel_cls, mock_connect):
    tunnel = MagicMock()
    mock_tunnel_cls.return_value.open.return_value = tunnel
    mock_connect.side_effect = RuntimeError("password authentication failed")

    with pytest.raises(RuntimeError):
        create_pg_connection(
            _credentials(ssh=SSHSettings(host="bastion", private_key="KEY"))
        )

    tunnel.close.assert_called_once()


@patch("pgbulk.connection.create_pg_connection")
def test_pg_session_releases_once_on_success(mock_create):
    conn, tunnel = MagicMock(), MagicMock()
    mock_create.return_value = (conn, tunnel)

    with pg_session(_credentials()) as session:
        assert session is conn

    conn.close.assert_called_once()
    tunnel.close.assert_called_once()


@pytest.mark.parametrize(
    "error", [RuntimeError("boom"), TransferTimeout("import", 30)]
)
@patch("pgbulk.connection.create_pg_connection")
def test_pg_session_releases_once_on_error(mock_create, error):
    conn = MagicMock()
    mock_create.return_value = (conn, None)

    with pytest.raises(type(error)):
        with pg_session(_credentials()):
            raise error

    conn.close.assert_called_once()


@patch("pgbulk.connection.create_pg_connection")
def test_release_failure_does_not_replace_primary_error(mock_create):
    conn, tunnel = MagicMock(), MagicMock()
    conn.close.side_effect = RuntimeError("close failed")
    tunnel.close.side_effect = OSError("tunnel gone")
    mock_create.return_value = (conn, tunnel)

    with pytest.raises(ValueError, match="primary"):
        with pg_session(_credentials()):
            raise ValueError("primary")

    conn.close.assert_called_once()
    tunnel.close.assert_called_once()


def test_release_swallows_close_errors():
    conn = MagicMock()
    conn.close.side_effect = RuntimeError("already closed")
    release(conn)
    conn.close.assert_called_once()


def test_cancel_backend_swallows_errors():
    conn = MagicMock()
    conn.cancel.side_effect = RuntimeError("no connection")
    assert cancel_backend(conn) is False
    conn.cancel.assert_called_once()


def test_cancel_backend_reports_success():
    assert cancel_backend(MagicMock()) is True


@patch("pgbulk.connection.os.dup", return_value=99)
@patch("pgbulk.connection.socket.socket")
def test_abort_connection_shuts_down_duplicated_socket(
    mock_socket_cls, mock_dup
):
    conn = MagicMock()
    conn.fileno.return_value = 7

    abort_connection(conn)

    mock_dup.assert_called_once_with(7)
    mock_socket_cls.assert_called_once_with(fileno=99)
    sock = mock_socket_cls.return_value
    sock.shutdown.assert_called_once_with(socket.SHUT_RDWR)
    sock.close.assert_called_once()


@patch("pgbulk.connection.socket.socket")
def test_abort_connection_on_closed_connection_only_logs(mock_socket_cls):
    conn = MagicMock()
    conn.fileno.side_effect = psycopg2.InterfaceError(
        "connection already closed"
    )

    abort_connection(conn)

    mock_socket_cls.assert_not_called()


@patch("pgbulk.connection.os.dup", return_value=99)
@patch("pgbulk.connection.socket.socket")
def test_abort_connection_closes_socket_when_shutdown_fails(
    mock_socket_cls, mock_dup
):
    sock = mock_socket_cls.return_value
    sock.shutdown.side_effect = OSError("not connected")

    abort_connection(MagicMock())

    sock.close.assert_called_once()


def _ssh_client_with_key(mock_ssh_client_cls, raw):
    ssh_client = MagicMock()
    mock_ssh_client_cls.return_value = ssh_client
    transport = MagicMock()
    ssh_client.get_transport.return_value = transport
    server_key = MagicMock()
    server_key.asbytes.return_value = raw
    transport.get_remote_server_key.return_value = server_key
    return ssh_client, transport


@patch("pgbulk.connection.threading.Thread")
@patch("pgbulk.connection.socket.socket")
@patch("pgbulk.connection.paramiko.RSAKey.from_private_key")
@patch("pgbulk.connection.paramiko.SSHClient")
def test_tunnel_open_verifies_fingerprint_and_listens(
    mock_ssh_client_cls, mock_rsa_from_key, mock_socket_cls, mock_thread_cls
):
    raw = b"dummy-server-key"
    ssh_client, _ = _ssh_client_with_key(mock_ssh_client_cls, raw)
    digest = hashlib.sha256(raw).digest()
    fingerprint = base64.b64encode(digest).rstrip(b"=").decode("ascii")
    sock = mock_socket_cls.return_value
    sock.getsockname.return_value = ("127.0.0.1", 40002)

    settings = SSHSettings(
        host="bastion",
        private_key="KEY",
        user="ec2-user",
        fingerprint=fingerprint,
    )
    tunnel = SSHTunnel(settings, "db-host", 5432).open()

    ssh_client.connect.assert_called_once()
    assert ssh_client.connect.call_args.kwargs["username"] == "ec2-user"
    sock.bind.assert_called_once_with(("127.0.0.1", 0))
    assert tunnel.local_port == 40002
    mock_thread_cls.return_value.start.assert_called_once()

    tunnel.close()
    sock.close.assert_called_once()
    ssh_client.close.assert_called_once()


@patch("pgbulk.connection.socket.socket")
@patch("pgbulk.connection.paramiko.RSAKey.from_private_key")
@patch("pgbulk.connection.paramiko.SSHClient")
def test_tunnel_fingerprint_mismatch_raises(
    mock_ssh_client_cls, mock_rsa_from_key, mock_socket_cls
):
    ssh_client, _ = _ssh_client_with_key(mock_ssh_client_cls, b"dummy")
    settings = SSHSettings(
        host="bastion", private_key="KEY", fingerprint="wrong"
    )

    with pytest.raises(ValueError, match="fingerprint"):
        SSHTunnel(settings, "db-host", 5432).open()

    ssh_client.close.assert_called_once()
    mock_socket_cls.assert_not_called()


def test_serve_skips_missing_channel_and_stops_when_listener_closes():
    transport = MagicMock()
    transport.open_channel.return_value = None
    client_sock = MagicMock()
    client_sock.getpeername.return_value = ("127.0.0.1", 5000)

    tunnel = SSHTunnel(SSHSettings(host="b", private_key="K"), "db-host", 5432)
    tunnel._sock = MagicMock()
    tunnel._sock.accept.side_effect = [(client_sock, ("peer", 1)), OSError()]

    tunnel._serve(transport)

    transport.open_channel.assert_called_once_with(
        "direct-tcpip", ("db-host", 5432), ("127.0.0.1", 5000)
    )
    client_sock.close.assert_called_once()


@patch("pgbulk.connection.select.select")
def test_relay_copies_data_between_client_and_channel(mock_select):
    client_sock = MagicMock()
    chan = MagicMock()
    client_sock.recv.side_effect = [b"hello", b""]
    chan.recv.return_value = b"world"
    mock_select.side_effect = [
        ([client_sock, chan], [], []),
        ([client_sock], [], []),
    ]

    _relay(client_sock, chan)

    chan.sendall.assert_called_once_with(b"hello")
    client_sock.sendall.assert_called_once_with(b"world")
    chan.close.assert_called_once()
    client_sock.close.assert_called_once()
