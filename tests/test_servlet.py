from dataclasses import dataclass, field
from http import HTTPStatus

import pytest

from coroserve.servlet import (
    ClassServletCreator,
    FunctionServlet,
    HoldServletCreator,
    NotFoundServlet,
    Servlet,
    ServletDispatch,
)


@dataclass
class Request:
    path: str


@dataclass
class Response:
    status: int = 200
    headers: dict = field(default_factory=dict)
    body: str = ""


class TagServlet(Servlet):
    def __init__(self, tag="tag"):
        super().__init__("TagServlet")
        self.tag = tag

    def handle(self, request, response, session):
        response.body = self.tag
        return 7


def test_servlet_base_is_abstract():
    with pytest.raises(TypeError):
        Servlet("x")


def test_function_servlet_passes_arguments_and_result():
    seen = []

    def callback(request, response, session):
        seen.append((request, response, session))
        return 42

    servlet = FunctionServlet(callback)
    req, rsp = Request("/a"), Response()
    assert servlet.handle(req, rsp, "session") == 42
    assert seen == [(req, rsp, "session")]
    assert servlet.name == "FunctionServlet"


def test_not_found_servlet_fills_response():
    servlet = NotFoundServlet("myserver")
    rsp = Response()
    assert servlet.handle(Request("/x"), rsp, None) == 0
    assert rsp.status == HTTPStatus.NOT_FOUND
    assert rsp.headers["Content-Type"] == "text/html"
    assert rsp.body == (
        "<html><head><title>404 Not Found</title></head><body><center>"
        "<h1>404 Not Found</h1></center><hr><center>myserver</center></body></html>"
    )


def test_dispatch_exact_match_wins_over_glob():
    dispatch = ServletDispatch()
    exact = TagServlet("exact")
    glob = TagServlet("glob")
    dispatch.add_glob_servlet("/api/*", glob)
    dispatch.add_servlet("/api/item", exact)
    assert dispatch.get_matched_servlet("/api/item") is exact
    assert dispatch.get_matched_servlet("/api/other") is glob


def test_dispatch_glob_star_crosses_slashes():
    dispatch = ServletDispatch()
    glob = TagServlet()
    dispatch.add_glob_servlet("/api/*", glob)
    assert dispatch.get_matched_servlet("/api/a/b/c") is glob


def test_dispatch_falls_back_to_default():
    dispatch = ServletDispatch()
    matched = dispatch.get_matched_servlet("/nowhere")
    assert matched is dispatch.default
    assert isinstance(matched, NotFoundServlet)
    replacement = TagServlet()
    dispatch.default = replacement
    assert dispatch.get_matched_servlet("/nowhere") is replacement


def test_dispatch_handle_runs_matched_servlet_and_returns_zero():
    dispatch = ServletDispatch()
    dispatch.add_servlet("/hello", TagServlet("hi"))
    rsp = Response()
    assert dispatch.handle(Request("/hello"), rsp, None) == 0
    assert rsp.body == "hi"


def test_dispatch_handle_unmatched_gives_404():
    dispatch = ServletDispatch()
    rsp = Response()
    dispatch.handle(Request("/missing"), rsp, None)
    assert rsp.status == HTTPStatus.NOT_FOUND


def test_dispatch_accepts_plain_callback():
    dispatch = ServletDispatch()

    def callback(request, response, session):
        response.body = request.path
        return 1

    dispatch.add_servlet("/cb", callback)
    dispatch.add_glob_servlet("/g*", callback)
    assert isinstance(dispatch.get_servlet("/cb"), FunctionServlet)
    rsp = Response()
    dispatch.handle(Request("/glob"), rsp, None)
    assert rsp.body == "/glob"


def test_dispatch_rejects_non_callable():
    dispatch = ServletDispatch()
    with pytest.raises(TypeError):
        dispatch.add_servlet("/x", 5)


def test_glob_readd_replaces_and_moves_to_end():
    dispatch = ServletDispatch()
    first = TagServlet("first")
    second = TagServlet("second")
    third = TagServlet("third")
    dispatch.add_glob_servlet("/a*", first)
    dispatch.add_glob_servlet("/ab*", second)
    assert dispatch.get_matched_servlet("/abc") is first
    dispatch.add_glob_servlet("/a*", third)
    assert dispatch.get_matched_servlet("/abc") is second
    assert dispatch.get_glob_servlet("/a*") is third
    assert list(dispatch.list_glob_servlet_creators()) == ["/ab*", "/a*"]


def test_remove_servlets():
    dispatch = ServletDispatch()
    servlet = TagServlet()
    dispatch.add_servlet("/x", servlet)
    dispatch.add_glob_servlet("/y*", servlet)
    dispatch.remove_servlet("/x")
    dispatch.remove_glob_servlet("/y*")
    dispatch.remove_servlet("/absent")
    dispatch.remove_glob_servlet("/absent")
    assert dispatch.get_servlet("/x") is None
    assert dispatch.get_glob_servlet("/y*") is None
    assert dispatch.get_matched_servlet("/yes") is dispatch.default


def test_class_creator_builds_new_instance_each_time():
    creator = ClassServletCreator(TagServlet)
    assert creator.name == "TagServlet"
    dispatch = ServletDispatch()
    dispatch.add_servlet_creator("/c", creator)
    one = dispatch.get_servlet("/c")
    two = dispatch.get_servlet("/c")
    assert isinstance(one, TagServlet)
    assert one is not two


def test_hold_creator_returns_same_instance():
    servlet = TagServlet()
    creator = HoldServletCreator(servlet)
    assert creator.get() is servlet
    assert creator.get() is creator.get()
    assert creator.name == servlet.name


def test_listing_returns_copies():
    dispatch = ServletDispatch()
    creator = HoldServletCreator(TagServlet())
    dispatch.add_servlet_creator("/a", creator)
    dispatch.add_glob_servlet_creator("/b*", creator)
    exact = dispatch.list_servlet_creators()
    globs = dispatch.list_glob_servlet_creators()
    assert exact == {"/a": creator}
    assert globs == {"/b*": creator}
    exact.clear()
    globs.clear()
    assert dispatch.list_servlet_creators() == {"/a": creator}
    assert dispatch.list_glob_servlet_creators() == {"/b*": creator}