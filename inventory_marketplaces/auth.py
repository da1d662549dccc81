"""
Auth strategies applied by the upstream executor to each attempt.

Each strategy gets the method, the full URL (query included), the headers,
query and form dicts of the attempt, and mutates them in place. Strategies
are applied per attempt so OAuth nonces and timestamps are fresh on retry.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from inventory_marketplaces.oauth import OAuthCredentials, OAuthSignature, sign_request


@dataclass
class AuthTarget:
    """Mutable pieces of one outgoing attempt."""

    method: str
    url: str
    headers: dict[str, str]
    query: dict[str, str]
    form: dict[str, str] | None = None
    oauth: OAuthSignature | None = None


@runtime_checkable
class AuthStrategy(Protocol):
    def apply(self, target: AuthTarget) -> None: ...


class NoAuth:
    def apply(self, target: AuthTarget) -> None:
        return None


class OAuth1Auth:
    """Signs each attempt with OAuth 1.0a HMAC-SHA1."""

    def __init__(
        self,
        credentials: OAuthCredentials,
        nonce_factory: Callable[[], str] | None = None,
        timestamp_factory: Callable[[], int] | None = None,
    ):
        self.credentials = credentials
        self._nonce_factory = nonce_factory
        self._timestamp_factory = timestamp_factory

    def apply(self, target: AuthTarget) -> None:
        signed = sign_request(
            target.method,
            target.url,
            self.credentials,
            nonce_factory=self._nonce_factory,
            timestamp=self._timestamp_factory() if self._timestamp_factory else None,
        )
        target.headers["Authorization"] = signed.header
        target.oauth = signed


@dataclass(frozen=True)
class KeyPlacement:
    """Where an API key goes: a parameter name and the methods it applies to."""

    name: str
    methods: frozenset[str] = field(default_factory=frozenset)

    def applies_to(self, method: str) -> bool:
        return not self.methods or method.upper() in self.methods


def placement(name: str, methods: Iterable[str] = ()) -> KeyPlacement:
    return KeyPlacement(name=name, methods=frozenset(m.upper() for m in methods))


class ApiKeyAuth:
    """
    Static API key in a header, the query string, a form field, or several.

    Example (BrickOwl): key in the query for GET/DELETE and as a form field
    for POST::

        ApiKeyAuth(key, query=placement("key", ["GET", "DELETE"]),
                   form_field=placement("key", ["POST"]))
    """

    def __init__(
        self,
        value: str,
        header: str | None = None,
        header_prefix: str = "",
        query: KeyPlacement | None = None,
        form_field: KeyPlacement | None = None,
    ):
        self.value = value
        self.header = header
        self.header_prefix = header_prefix
        self.query = query
        self.form_field = form_field

    def apply(self, target: AuthTarget) -> None:
        if self.header:
            target.headers[self.header] = f"{self.header_prefix}{self.value}"
        if self.query and self.query.applies_to(target.method):
            target.query[self.query.name] = self.value
        if self.form_field and self.form_field.applies_to(target.method):
            if target.form is None:
                target.form = {}
            target.form[self.form_field.name] = self.value
