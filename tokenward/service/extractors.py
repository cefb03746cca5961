"""Pluggable credential extraction.

Each extractor pulls a raw token from an incoming request, or returns None.
Which one is used for access and refresh tokens is chosen through settings.
"""

from __future__ import annotations

from typing import Mapping, Optional, Protocol

from tokenward.config import CredentialSource


class RequestLike(Protocol):
    @property
    def headers(self) -> Mapping[str, str]: ...

    @property
    def cookies(self) -> Mapping[str, str]: ...


class CredentialExtractor(Protocol):
    def extract(self, request: RequestLike) -> Optional[str]: ...


class BearerHeaderExtractor:
    scheme = "bearer"

    def __init__(self, header_name: str = "authorization") -> None:
        self.header_name = header_name

    def extract(self, request: RequestLike) -> Optional[str]:
        value = request.headers.get(self.header_name)
        if not value:
            return None
        scheme, _, token = value.strip().partition(" ")
        if scheme.lower() != self.scheme:
            return None
        token = token.strip()
        return token or None


class CookieExtractor:
    def __init__(self, cookie_name: str) -> None:
        self.cookie_name = cookie_name

    def extract(self, request: RequestLike) -> Optional[str]:
        return request.cookies.get(self.cookie_name) or None


def build_extractor(source: CredentialSource | str, *, cookie_name: str) -> CredentialExtractor:
    source = CredentialSource(source)
    if source == CredentialSource.BEARER:
        return BearerHeaderExtractor()
    return CookieExtractor(cookie_name)
