"""
OAuth 1.0a request signing (HMAC-SHA1) for BrickLink.

The signature base string is METHOD & enc(base_url) & enc(sorted params),
where params are the URL query parameters, any extra parameters and the
oauth_* protocol parameters, all RFC 3986 encoded. The signing key is
enc(consumer_secret) & enc(token_secret).
"""

import base64
import hashlib
import hmac
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from urllib.parse import parse_qsl, quote, urlsplit, urlunsplit

DEFAULT_NONCE_BYTES = 16


@dataclass(frozen=True)
class OAuthCredentials:
    consumer_key: str
    consumer_secret: str
    token: str | None = None
    token_secret: str | None = None


@dataclass(frozen=True)
class OAuthSignature:
    """Everything that went into one signature, for logging and tests."""

    header: str
    params: dict[str, str]
    signature: str
    base_string: str
    signing_key: str


def percent_encode(value: str) -> str:
    """RFC 3986 encoding: only unreserved characters stay literal."""
    return quote(str(value), safe="~-._")


def normalize_params(params: Mapping[str, str]) -> str:
    return "&".join(
        f"{percent_encode(k)}={percent_encode(params[k])}" for k in sorted(params)
    )


def signature_base_string(method: str, url: str, params: Mapping[str, str]) -> str:
    parts = urlsplit(url)
    base_url = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))
    return "&".join(
        [method.upper(), percent_encode(base_url), percent_encode(normalize_params(params))]
    )


def sign_request(
    method: str,
    url: str,
    credentials: OAuthCredentials,
    extra_params: Mapping[str, object] | None = None,
    nonce: str | None = None,
    timestamp: int | None = None,
    nonce_factory: Callable[[], str] | None = None,
) -> OAuthSignature:
    """
    Build the ``Authorization: OAuth ...`` header for one request.

    ``nonce`` and ``timestamp`` can be fixed for reproducible signatures;
    by default the nonce is 16 random bytes as hex and the timestamp is the
    current unix time in seconds.
    """
    if nonce is None:
        nonce = nonce_factory() if nonce_factory else secrets.token_hex(DEFAULT_NONCE_BYTES)
    if timestamp is None:
        timestamp = int(time.time())

    oauth_params = {
        "oauth_consumer_key": credentials.consumer_key,
        "oauth_nonce": nonce,
        "oauth_signature_method": "HMAC-SHA1",
        "oauth_timestamp": str(timestamp),
        "oauth_version": "1.0",
    }
    if credentials.token:
        oauth_params["oauth_token"] = credentials.token

    signing_params = dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))
    if extra_params:
        signing_params.update({k: str(v) for k, v in extra_params.items() if v is not None})
    signing_params.update(oauth_params)

    base_string = signature_base_string(method, url, signing_params)
    signing_key = (
        f"{percent_encode(credentials.consumer_secret)}&"
        f"{percent_encode(credentials.token_secret or '')}"
    )
    digest = hmac.new(signing_key.encode(), base_string.encode(), hashlib.sha1).digest()
    signature = base64.b64encode(digest).decode()

    header_params = {**oauth_params, "oauth_signature": signature}
    header = "OAuth " + ", ".join(
        f'{percent_encode(k)}="{percent_encode(header_params[k])}"' for k in sorted(header_params)
    )
    return OAuthSignature(
        header=header,
        params=oauth_params,
        signature=signature,
        base_string=base_string,
        signing_key=signing_key,
    )
