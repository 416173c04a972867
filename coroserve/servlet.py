"""Request handlers (servlets) and a dispatcher that routes paths to them."""

from __future__ import annotations

import fnmatch
from abc import ABC, abstractmethod
from http import HTTPStatus
from typing import Any, Callable, Protocol, Union

from coroserve.sync import RWLock

Callback = Callable[[Any, Any, Any], int]

DEFAULT_SERVER_NAME = "coroserve/1.0"
NOT_FOUND_SERVER_HEADER = "coroserve/1.0.0"


class Servlet(ABC):
    """Handler for an HTTP request.

    ``request`` needs a ``path`` attribute; ``response`` needs writable
    ``status`` and ``body`` attributes and a mutable ``headers`` mapping.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    def handle(self, request: Any, response: Any, session: Any) -> int:
        """Fill in ``response`` for ``request``; return a status code."""


class _ServletSource(Protocol):
    name: str

    def get(self) -> Servlet: ...


class FunctionServlet(Servlet):
    """Servlet that delegates to a plain function."""

    def __init__(self, callback: Callback) -> None:
        super().__init__("FunctionServlet")
        self.callback = callback

    def handle(self, request: Any, response: Any, session: Any) -> int:
        return self.callback(request, response, session)


class HoldServletCreator:
    """Creator that always hands out the same servlet instance."""

    def __init__(self, servlet: Servlet) -> None:
        self._servlet = servlet

    def get(self) -> Servlet:
        return self._servlet

    @property
    def name(self) -> str:
        return self._servlet.name


class ClassServletCreator:
    """Creator that builds a fresh servlet from a factory on every request."""

    def __init__(self, factory: Callable[[], Servlet]) -> None:
        self._factory = factory

    def get(self) -> Servlet:
        return self._factory()

    @property
    def name(self) -> str:
        return getattr(self._factory, "__name__", repr(self._factory))


def _as_servlet(servlet: Union[Servlet, Callback]) -> Servlet:
    if isinstance(servlet, Servlet):
        return servlet
    if callable(servlet):
        return FunctionServlet(servlet)
    raise TypeError(f"expected a Servlet or a callable, got {type(servlet).__name__}")


class NotFoundServlet(Servlet):
    """Servlet that answers every request with a 404 page."""

    def __init__(self, name: str) -> None:
        super().__init__("NotFoundServlet")
        self.server_name = name
        self.content = (
            "<html><head><title>404 Not Found"
            "</title></head><body><center><h1>404 Not Found</h1></center>"
            "<hr><center>" + name + "</center></body></html>"
        )

    def handle(self, request: Any, response: Any, session: Any) -> int:
        response.status = HTTPStatus.NOT_FOUND
        response.headers["Server"] = NOT_FOUND_SERVER_HEADER
        response.headers["Content-Type"] = "text/html"
        response.body = self.content
        return 0


class ServletDispatch(Servlet):
    """Routes a request path to an exact-match servlet, then a glob, then the default."""

    def __init__(self) -> None:
        super().__init__("ServletDispatch")
        self._lock = RWLock()
        self._exact: dict[str, _ServletSource] = {}
        self._globs: list[tuple[str, _ServletSource]] = []
        self.default: Servlet = NotFoundServlet(DEFAULT_SERVER_NAME)

    def handle(self, request: Any, response: Any, session: Any) -> int:
        servlet = self.get_matched_servlet(request.path)
        if servlet is not None:
            servlet.handle(request, response, session)
        return 0

    def add_servlet(self, uri: str, servlet: Union[Servlet, Callback]) -> None:
        """Register a servlet (or a plain callback) for an exact path."""
        self.add_servlet_creator(uri, HoldServletCreator(_as_servlet(servlet)))

    def add_glob_servlet(self, uri: str, servlet: Union[Servlet, Callback]) -> None:
        """Register a servlet (or a plain callback) for a glob pattern."""
        self.add_glob_servlet_creator(uri, HoldServletCreator(_as_servlet(servlet)))

    def add_servlet_creator(self, uri: str, creator: _ServletSource) -> None:
        with self._lock.write_locked():
            self._exact[uri] = creator

    def add_glob_servlet_creator(self, uri: str, creator: _ServletSource) -> None:
        """Register a creator for a glob; an existing entry for it moves to the end."""
        with self._lock.write_locked():
            self._drop_glob(uri)
            self._globs.append((uri, creator))

    def remove_servlet(self, uri: str) -> None:
        with self._lock.write_locked():
            self._exact.pop(uri, None)

    def remove_glob_servlet(self, uri: str) -> None:
        with self._lock.write_locked():
            self._drop_glob(uri)

    def _drop_glob(self, uri: str) -> None:
        for position, (pattern, _) in enumerate(self._globs):
            if pattern == uri:
                del self._globs[position]
                break

    def get_servlet(self, uri: str) -> Servlet | None:
        with self._lock.read_locked():
            creator = self._exact.get(uri)
            return creator.get() if creator is not None else None

    def get_glob_servlet(self, uri: str) -> Servlet | None:
        with self._lock.read_locked():
            for pattern, creator in self._globs:
                if pattern == uri:
                    return creator.get()
        return None

    def get_matched_servlet(self, uri: str) -> Servlet:
        """Exact match first, then the first matching glob, else the default."""
        with self._lock.read_locked():
            creator = self._exact.get(uri)
            if creator is not None:
                return creator.get()
            for pattern, glob_creator in self._globs:
                if fnmatch.fnmatchcase(uri, pattern):
                    return glob_creator.get()
        return self.default

    def list_servlet_creators(self) -> dict[str, _ServletSource]:
        with self._lock.read_locked():
            return dict(self._exact)

    def list_glob_servlet_creators(self) -> dict[str, _ServletSource]:
        with self._lock.read_locked():
            return dict(self._globs)