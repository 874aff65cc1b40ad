import json
from typing import Any, Dict, Mapping, Optional, cast

import boto3

import pgbulk.config
from pgbulk.models import Credentials, SSHSettings

"""
Reads database credentials from AWS Secrets Manager and maps them onto a
:class:`Credentials` record.
"""

DEFAULT_PORT = 5432
SSL_OVERRIDE_KEYS = (
    "allowUnauthorizedCerts",
    "ignoreSslIssues",
    "rejectUnauthorized",
)


def _retrieve_from_aws(secret_name: str, region_name: str) -> Dict[str, Any]:
    """
    Calls AWS Secrets Manager and returns the decoded SecretString.

    ``botocore.exceptions.ClientError`` propagates unchanged.
    """
    session = boto3.session.Session()
    client = session.client(
        service_name="secretsmanager", region_name=region_name
    )
    response = client.get_secret_value(SecretId=secret_name)
    return cast(Dict[str, Any], json.loads(response["SecretString"]))


def _first(secret: Mapping[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        if secret.get(key) not in (None, ""):
            return secret[key]
    return None


def _format_ssh(ssh: Any) -> Optional[SSHSettings]:
    if not isinstance(ssh, Mapping):
        return None
    return SSHSettings(
        host=str(ssh["host"]),
        private_key=str(_first(ssh, "private_key", "key")),
        user=_first(ssh, "user", "username"),
        port=int(ssh.get("port") or 22),
        fingerprint=ssh.get("fingerprint"),
    )


def format_secret(secret: Optional[Mapping[str, Any]]) -> Credentials:
    """
    Builds :class:`Credentials` from a secret or inline credentials dict.

    Both RDS-style keys (``username``, ``dbname``/``dbInstanceIdentifier``)
    and plain keys (``user``, ``database``) are understood.
    """
    if secret is None:
        raise AttributeError("Expected a credentials mapping, got None")

    return Credentials(
        host=str(secret.get("host") or "localhost"),
        port=int(secret.get("port") or DEFAULT_PORT),
        database=str(
            _first(secret, "database", "dbname", "dbInstanceIdentifier")
            or "postgres"
        ),
        user=str(_first(secret, "user", "username") or "postgres"),
        password=str(secret.get("password") or ""),
        ssl=secret.get("ssl"),
        ssl_overrides={
            k: secret[k] for k in SSL_OVERRIDE_KEYS if k in secret
        },
        ssh=_format_ssh(secret.get("ssh")),
    )


def get_credentials(
    secret_name: str, region_name: Optional[str] = None
) -> Credentials:
    return format_secret(
        _retrieve_from_aws(secret_name, region_name or pgbulk.config.region)
    )
