from __future__ import annotations

import pytest
import requests


class FakeResponse:
    def __init__(self, status_code: int, content: bytes = b"") -> None:
        self.status_code = status_code
        self.content = content
        self.text = content.decode("utf-8", errors="replace")

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def raise_for_status(self) -> None:
        if not self.ok:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error")


class FakeScraper:
    """Serves canned bodies by URL; unknown URLs answer 404."""

    def __init__(self, routes: dict | None = None) -> None:
        self.routes = dict(routes or {})
        self.calls: list[str] = []
        self.hooks: dict = {}

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.calls.append(url)
        hook = self.hooks.get(url)
        if hook is not None:
            hook()
        body = self.routes.get(url)
        if isinstance(body, Exception):
            raise body
        if body is None:
            return FakeResponse(404)
        return FakeResponse(200, body)


class RecordingSurface:
    def __init__(self) -> None:
        self.updates: list[tuple[str, float]] = []
        self.closed = False

    def show(self, text: str, percent: float) -> None:
        self.updates.append((text, percent))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def scraper() -> FakeScraper:
    return FakeScraper()


@pytest.fixture
def surfaces() -> list:
    return []


@pytest.fixture
def surface_factory(surfaces):
    def factory() -> RecordingSurface:
        surface = RecordingSurface()
        surfaces.append(surface)
        return surface

    return factory
