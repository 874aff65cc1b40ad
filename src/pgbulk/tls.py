from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

"""Normalization of the credentials' SSL setting into libpq arguments."""

DISABLED_MODES = ("disable", "off", "false", "allow", "prefer")
IGNORE_FLAGS = ("allowUnauthorizedCerts", "ignoreSslIssues")
SYSTEM_ROOT_CERT = "system"


@dataclass(frozen=True)
class TlsConfig:
    verify: bool = True
    ca: Optional[str] = None
    cert: Optional[str] = None
    key: Optional[str] = None


def _ignore_verification(overrides: Optional[Mapping[str, Any]]) -> bool:
    if not overrides:
        return False
    if any(bool(overrides.get(flag)) for flag in IGNORE_FLAGS):
        return True
    return overrides.get("rejectUnauthorized") is False


def normalize_ssl(
    ssl: Any, overrides: Optional[Mapping[str, Any]] = None
) -> Optional[TlsConfig]:
    """
    Maps an SSL setting to a :class:`TlsConfig`, or ``None`` for no TLS.

    ``ssl`` may be a bool, a libpq-style mode string or a dict of options
    (``ca``, ``cert``, ``key``, ``rejectUnauthorized``). Certificate
    verification stays on unless an override switches it off.
    """
    ignore = _ignore_verification(overrides)

    if ssl is None or ssl is False:
        return None

    if isinstance(ssl, str):
        if ssl.strip().lower() in DISABLED_MODES:
            return None
        return TlsConfig(verify=not ignore)

    if ssl is True:
        return TlsConfig(verify=not ignore)

    if isinstance(ssl, Mapping):
        reject = ssl.get("rejectUnauthorized")
        verify = not ignore and (reject is None or bool(reject))
        return TlsConfig(
            verify=verify,
            ca=ssl.get("ca"),
            cert=ssl.get("cert"),
            key=ssl.get("key"),
        )

    return None


def libpq_ssl_kwargs(tls: Optional[TlsConfig]) -> Dict[str, str]:
    if tls is None:
        return {"sslmode": "disable"}

    kwargs = {"sslmode": "verify-full" if tls.verify else "require"}
    if tls.ca:
        kwargs["sslrootcert"] = tls.ca
    elif tls.verify:
        # libpq >= 16: verify against the OS trust store
        kwargs["sslrootcert"] = SYSTEM_ROOT_CERT
    if tls.cert:
        kwargs["sslcert"] = tls.cert
    if tls.key:
        kwargs["sslkey"] = tls.key
    return kwargs
