from fastapi.routing import APIRoute

from src.agents.http_api import app


def _route_methods() -> dict:
    table: dict = {}
    for route in app.routes:
        if isinstance(route, APIRoute):
            table.setdefault(route.path, set()).update(route.methods)
    return table


def test_chat_routes_registered() -> None:
    table = _route_methods()
    assert {"GET", "POST"} <= table["/v1/chats"]
    assert {"GET", "PUT", "DELETE"} <= table["/v1/chats/{chat_id}"]
    assert "PUT" in table["/v1/chats/{chat_id}/rename"]
    assert {"GET", "POST"} <= table["/v1/pinned-chats"]
    assert "DELETE" in table["/v1/pinned-chats/{chat_id}"]


def test_generation_and_document_routes_registered() -> None:
    table = _route_methods()
    for path in ["/v1/converse", "/v1/retrieve-and-generate", "/v1/generate", "/v1/instant-lookup"]:
        assert table[path] == {"POST"}
    assert "POST" in table["/v1/documents/upload"]
    assert {"GET", "DELETE"} <= table["/v1/documents/{document_id}"]
    assert "POST" in table["/v1/index/sync"]
    assert "GET" in table["/v1/index/jobs"]


def test_pin_route_registered_once() -> None:
    routes = [
        route
        for route in app.routes
        if isinstance(route, APIRoute) and route.path == "/v1/pinned-chats" and "POST" in route.methods
    ]
    assert len(routes) == 1


def test_rate_limit_identity_includes_path() -> None:
    from src.agents.http_api import _rate_limit_identity

    key = _rate_limit_identity("secret", "/v1/chats")
    other = _rate_limit_identity("secret", "/v1/documents")
    assert key != other
    assert key.startswith("secret:")


def test_rate_limit_identity_defaults_to_anonymous() -> None:
    from src.agents.http_api import _rate_limit_identity

    identity = _rate_limit_identity(None, "/v1/chats")
    assert identity.startswith("anonymous:")
