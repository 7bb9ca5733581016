from threading import Lock
from typing import Dict, List, Optional, Union

import pytest
from requests.structures import CaseInsensitiveDict


class FakeResponse:
    def __init__(
        self,
        status: int = 200,
        body: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
    ):
        self.status_code = status
        self.content = body
        self.headers = CaseInsensitiveDict(headers or {})
        self.encoding: Optional[str] = None
        self.apparent_encoding = "utf-8"
        self.closed = False

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]

    def close(self) -> None:
        self.closed = True


def html_response(text: str, status: int = 200) -> FakeResponse:
    return FakeResponse(
        status, text.encode("utf-8"), {"Content-Type": "text/html; charset=utf-8"}
    )


class FakeSession:
    """Serves canned responses by URL and records every request made."""

    def __init__(self, routes: Dict[str, Union[FakeResponse, Exception]]):
        self.routes = routes
        self.calls: List[str] = []
        self.closed = False
        self._lock = Lock()

    def get(self, url: str, timeout: Optional[float] = None, stream: bool = False):
        with self._lock:
            self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404)
        if isinstance(route, Exception):
            raise route
        return route

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_session():
    return FakeSession
