"""HTTP session construction for the release feed and artifact downloads."""

from __future__ import annotations

from typing import Any, Protocol

import requests

from velociraptor_deployer import __version__

USER_AGENT = f"veldeploy/{__version__}"


class HttpResponse(Protocol):
    """Subset of :class:`requests.Response` used by the deployer."""

    status_code: int
    headers: Any

    def json(self) -> Any: ...

    def iter_content(self, chunk_size: int = ...) -> Any: ...

    def close(self) -> None: ...


class HttpSession(Protocol):
    """Minimal HTTP client protocol so tests can substitute a fake session."""

    def get(self, url: str, **kwargs: Any) -> HttpResponse: ...


def build_session(*, token: str | None = None) -> requests.Session:
    """Return a session carrying the deployer user agent and optional API token."""
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": USER_AGENT,
            "Accept": "application/vnd.github+json",
        }
    )
    if token:
        session.headers["Authorization"] = f"Bearer {token}"
    return session
