"""Credentials, regions and the request-signing schemes of the query APIs."""

from __future__ import annotations

import base64
import hashlib
import hmac
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass
from urllib.parse import quote

__all__ = [
    "Auth",
    "Region",
    "encode",
    "sign_ec2",
    "sign_elb",
    "sign_sns",
    "sign_sdb",
    "sign_mturk",
]


@dataclass(frozen=True)
class Auth:
    """Access credentials; ``token`` is an optional session token."""

    access_key: str
    secret_key: str
    token: str = ""


@dataclass(frozen=True)
class Region:
    """Service endpoints of one region."""

    name: str = ""
    ec2_endpoint: str = ""
    elb_endpoint: str = ""
    sdb_endpoint: str = ""
    sns_endpoint: str = ""


def encode(value: str) -> str:
    """Percent-encode everything except RFC 3986 unreserved characters."""
    return quote(value, safe="-_.~")


def _hmac_b64(secret: str, payload: str, digest) -> str:
    mac = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), digest)
    return base64.b64encode(mac.digest()).decode("ascii")


def _add_v2_fields(auth: Auth, params: MutableMapping[str, str], with_token: bool) -> None:
    params["AWSAccessKeyId"] = auth.access_key
    params["SignatureVersion"] = "2"
    params["SignatureMethod"] = "HmacSHA256"
    if with_token and auth.token:
        params["SecurityToken"] = auth.token


def _v2_signature(auth: Auth, method: str, host: str, path: str, pairs: Iterable[str]) -> str:
    payload = "\n".join([method, host, path, "&".join(pairs)])
    return _hmac_b64(auth.secret_key, payload, hashlib.sha256)


def _sorted_encoded_pairs(items: Iterable[tuple[str, str]]) -> list[str]:
    return sorted(f"{encode(k)}={encode(v)}" for k, v in items)


def sign_ec2(auth: Auth, method: str, path: str, params: MutableMapping[str, str], host: str) -> str:
    """Sign an EC2 request in place (version 2, parameters ordered by key).

    Returns the signature, which is also stored under ``Signature``.
    """
    _add_v2_fields(auth, params, with_token=True)
    pairs = [f"{encode(k)}={encode(params[k])}" for k in sorted(params)]
    signature = _v2_signature(auth, method, host, path, pairs)
    params["Signature"] = signature
    return signature


def sign_elb(auth: Auth, method: str, path: str, params: MutableMapping[str, str], host: str) -> str:
    """Sign an ELB request in place (version 2, ordered by encoded pair)."""
    _add_v2_fields(auth, params, with_token=True)
    signature = _v2_signature(auth, method, host, path, _sorted_encoded_pairs(params.items()))
    params["Signature"] = signature
    return signature


def sign_sns(auth: Auth, method: str, path: str, params: MutableMapping[str, str], host: str) -> str:
    """Sign an SNS request in place; no session token is added."""
    _add_v2_fields(auth, params, with_token=False)
    signature = _v2_signature(auth, method, host, path, _sorted_encoded_pairs(params.items()))
    params["Signature"] = signature
    return signature


def sign_sdb(
    auth: Auth,
    method: str,
    path: str,
    params: MutableMapping[str, list[str]],
    headers: Mapping[str, list[str]],
) -> str:
    """Sign a SimpleDB request whose parameters map to value lists.

    The host comes from the ``Host`` header (any case); the signed path is
    always ``/``. Only the first value of each parameter is signed.
    """
    host = ""
    for name, values in headers.items():
        if name.lower() == "host":
            host = values[0]

    params["AWSAccessKeyId"] = [auth.access_key]
    params["SignatureVersion"] = ["2"]
    params["SignatureMethod"] = ["HmacSHA256"]
    if auth.token:
        params["SecurityToken"] = [auth.token]

    pairs = _sorted_encoded_pairs((k, v[0]) for k, v in params.items())
    signature = _v2_signature(auth, method, host, "/", pairs)
    params["Signature"] = [signature]
    return signature


def sign_mturk(
    auth: Auth, service: str, method: str, timestamp: str, params: MutableMapping[str, str]
) -> str:
    """Sign a Mechanical Turk request with HMAC-SHA1 of service, operation and time."""
    signature = _hmac_b64(auth.secret_key, service + method + timestamp, hashlib.sha1)
    params["Signature"] = signature
    return signature