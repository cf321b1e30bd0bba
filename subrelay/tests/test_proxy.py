"""
Unit Tests for Proxy Routes
============================

Tests for subrelay/proxy/routes.py, exercised end to end through the
FastAPI TestClient with a scripted upstream (httpx.MockTransport).

Test Coverage:
--------------
1. Missing url parameter (400, no upstream call)
2. Outbound header construction (stripping, defaults, X-Forwarded-For)
3. Method and body forwarding, redirects
4. Response relay (status verbatim, header stripping, tally header)
5. Content decoding (gzip, base64) feeding the classifier
6. Error handling (timeout, connection reset, transport errors)

Run tests:
----------
    pytest subrelay/tests/test_proxy.py -v
"""

import asyncio
import base64
import gzip
import json

import httpx
import pytest
from fastapi import status

from subrelay.proxy.errors import ACCESS_DENIED_MESSAGE, MISSING_URL_MESSAGE


SOURCE_URL = "https://sub.example.com/link/abc?clash=1"

PLAIN_NODES = "vmess://AAA\ntrojan://BBB\nnot-a-node\n"

CLASH_CONFIG = """\
port: 7890
proxies:
  - name: hk-01
    type: vmess
    server: hk.example.com
  - name: jp-01
    type: Trojan
    server: jp.example.com
  - name: us-01
    type: ss
    server: us.example.com
    plugin-opts:
      note: "vless://looks-like-a-node"
proxy-groups:
  - name: auto
    type: url-test
    proxies: [hk-01, jp-01, us-01]
"""


def relay(client, url=SOURCE_URL, method="GET", **kwargs):
    return client.request(method, "/api/proxy", params={"url": url}, **kwargs)


def tally_of(response):
    return json.loads(response.headers["X-Node-Protocols"])


# ============================================================================
# Request Validation Tests
# ============================================================================

def test_missing_url_returns_400_without_upstream_call(client, upstream):
    """Test that a request without ?url= is rejected before any fetch"""
    response = client.get("/api/proxy")

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.text == MISSING_URL_MESSAGE
    assert upstream.call_count == 0


def test_blank_url_returns_400(client, upstream):
    """Test that a whitespace-only url parameter counts as missing"""
    response = client.get("/api/proxy", params={"url": "   "})

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert upstream.call_count == 0


# ============================================================================
# Outbound Header Tests
# ============================================================================

def test_outbound_headers_are_sanitized_and_defaulted(client, upstream):
    """Test stripping of hop-by-hop headers and default User-Agent/Accept-Encoding"""
    # TestClient sends its own User-Agent and Accept-Encoding by default
    del client.headers["user-agent"]
    del client.headers["accept-encoding"]

    relay(client, headers={"X-Custom": "kept", "Proxy-Authorization": "Basic abc"})

    sent = upstream.requests[0].headers
    assert sent["x-custom"] == "kept"
    assert "proxy-authorization" not in sent
    assert sent["user-agent"] == "ClashMeta/1.18 (subrelay)"
    assert sent["accept-encoding"] == "gzip"
    # Host is the upstream's own, never the relay's
    assert sent["host"] == "sub.example.com"


def test_caller_user_agent_and_encoding_are_preserved(client, upstream):
    """Test that caller-provided User-Agent and Accept-Encoding win over defaults"""
    relay(client, headers={"User-Agent": "clash-verge/v2.0", "Accept-Encoding": "identity"})

    sent = upstream.requests[0].headers
    assert sent["user-agent"] == "clash-verge/v2.0"
    assert sent["accept-encoding"] == "identity"


def test_x_forwarded_for_defaults_to_client_address(client, upstream):
    """Test that X-Forwarded-For carries the caller address when absent"""
    relay(client)

    assert upstream.requests[0].headers["x-forwarded-for"] == "testclient"


def test_x_forwarded_for_is_passed_through(client, upstream):
    """Test that an inbound X-Forwarded-For is forwarded unchanged"""
    relay(client, headers={"X-Forwarded-For": "203.0.113.7"})

    assert upstream.requests[0].headers["x-forwarded-for"] == "203.0.113.7"


# ============================================================================
# Forwarding Tests
# ============================================================================

def test_post_body_and_method_are_forwarded(client, upstream):
    """Test that non-GET methods stream their body upstream"""
    response = relay(client, method="POST", content=b"token=xyz")

    assert response.status_code == status.HTTP_200_OK
    assert upstream.requests[0].method == "POST"
    assert upstream.bodies[0] == b"token=xyz"


def test_get_sends_no_body(client, upstream):
    """Test that GET requests never carry a body upstream"""
    relay(client)

    assert upstream.requests[0].method == "GET"
    assert upstream.bodies[0] == b""


def test_head_response_has_no_body(client, upstream, make_response):
    """Test that HEAD is forwarded as HEAD and relayed without a body"""
    upstream.handler = lambda request: make_response(200, b"")

    response = relay(client, method="HEAD")

    assert upstream.requests[0].method == "HEAD"
    assert response.status_code == status.HTTP_200_OK
    assert response.content == b""


def test_redirects_are_followed(client, upstream, make_response):
    """Test that upstream redirects are followed transparently"""
    def handler(request):
        if request.url.path == "/old":
            return make_response(302, headers={"Location": "https://sub.example.com/new"})
        return make_response(200, PLAIN_NODES.encode())

    upstream.handler = handler

    response = relay(client, url="https://sub.example.com/old")

    assert response.status_code == status.HTTP_200_OK
    assert response.text == PLAIN_NODES
    assert [r.url.path for r in upstream.requests] == ["/old", "/new"]


# ============================================================================
# Response Relay Tests
# ============================================================================

def test_status_and_body_relayed_verbatim(client, upstream, make_response):
    """Test that upstream error statuses pass through untouched"""
    upstream.handler = lambda request: make_response(404, b"no such subscription")

    response = relay(client)

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.content == b"no such subscription"
    assert tally_of(response) == {"total": 0, "protocols": {}}


def test_relayed_headers_match_upstream_except_strip_list(client, upstream, make_response):
    """Test header relay: verbatim values, stripped hop-by-hop/encoding headers"""
    upstream.handler = lambda request: make_response(
        200,
        PLAIN_NODES.encode(),
        headers={
            "Subscription-Userinfo": "upload=1; download=2; total=1073741824; expire=1767225600",
            "Content-Disposition": "attachment; filename*=UTF-8''sub.txt",
            "Cache-Control": "no-cache",
            "Keep-Alive": "timeout=5",
            "Content-Length": "9999",
        },
    )

    response = relay(client)

    assert response.headers["subscription-userinfo"] == (
        "upload=1; download=2; total=1073741824; expire=1767225600"
    )
    assert response.headers["content-disposition"] == "attachment; filename*=UTF-8''sub.txt"
    assert response.headers["cache-control"] == "no-cache"
    assert "keep-alive" not in response.headers
    assert response.headers["content-length"] == str(len(PLAIN_NODES.encode()))


def test_line_scan_tally_header(client, upstream, make_response):
    """Test the tally for plain URI lines"""
    upstream.handler = lambda request: make_response(200, PLAIN_NODES.encode())

    response = relay(client)

    assert tally_of(response) == {"total": 2, "protocols": {"vmess": 1, "trojan": 1}}
    assert response.headers["X-Node-Protocols"] == (
        '{"total":2,"protocols":{"vmess":1,"trojan":1}}'
    )


def test_structured_document_tally_header(client, upstream, make_response):
    """Test that a YAML config is tallied per proxies entry"""
    upstream.handler = lambda request: make_response(200, CLASH_CONFIG.encode())

    response = relay(client)

    assert tally_of(response) == {"total": 3, "protocols": {"vmess": 1, "trojan": 1, "ss": 1}}


def test_non_latin1_header_is_skipped_without_aborting(client, upstream, make_response):
    """Test that a header the transport rejects is dropped and the rest still relayed"""
    upstream.handler = lambda request: make_response(
        200,
        PLAIN_NODES.encode(),
        headers=[
            (b"X-Profile-Title", "订阅".encode("utf-8")),
            (b"Cache-Control", b"no-store"),
        ],
    )

    response = relay(client)

    assert response.status_code == status.HTTP_200_OK
    assert "x-profile-title" not in response.headers
    assert response.headers["cache-control"] == "no-store"
    assert response.text == PLAIN_NODES


def test_non_latin1_protocol_type_is_escaped_in_tally(client, upstream, make_response):
    """Test that a structured type outside latin-1 still relays status and body"""
    document = "proxies:\n  - name: a\n    type: 节点\nproxy-groups: []\n"
    upstream.handler = lambda request: make_response(200, document.encode("utf-8"))

    response = relay(client)

    assert response.status_code == status.HTTP_200_OK
    assert response.text == document
    assert response.headers["X-Node-Protocols"].isascii()
    assert tally_of(response) == {"total": 1, "protocols": {"节点": 1}}


# ============================================================================
# Content Decoding Tests
# ============================================================================

def test_gzip_body_is_decompressed_and_classified(client, upstream, make_response):
    """Test that gzip bodies classify like their plain text and are relayed decompressed"""
    upstream.handler = lambda request: make_response(
        200,
        gzip.compress(PLAIN_NODES.encode()),
        headers={"Content-Encoding": "gzip"},
    )

    response = relay(client)

    assert "content-encoding" not in response.headers
    assert response.content == PLAIN_NODES.encode()
    assert tally_of(response) == {"total": 2, "protocols": {"vmess": 1, "trojan": 1}}


def test_undecodable_content_encoding_is_kept(client, upstream, make_response):
    """Test that a body the relay cannot decompress keeps its Content-Encoding"""
    compressed = b"\x8b\x03\x80hello\x03"
    upstream.handler = lambda request: make_response(
        200,
        compressed,
        headers={"Content-Encoding": "br"},
    )

    with client.stream("GET", "/api/proxy", params={"url": SOURCE_URL}) as response:
        raw = b"".join(response.iter_raw())

    assert response.status_code == status.HTTP_200_OK
    assert response.headers["content-encoding"] == "br"
    assert response.headers["content-length"] == str(len(compressed))
    assert raw == compressed


def test_base64_wrapped_yaml_is_classified_decoded(client, upstream, make_response):
    """Test that a base64 body containing proxies: is classified in decoded form"""
    wrapped = base64.b64encode(CLASH_CONFIG.encode())
    upstream.handler = lambda request: make_response(200, wrapped)

    response = relay(client)

    assert tally_of(response)["total"] == 3
    # The caller still receives the payload as the source sent it
    assert response.content == wrapped


# ============================================================================
# Error Handling Tests
# ============================================================================

def test_upstream_timeout_returns_500(client, upstream, make_response):
    """Test that a hanging upstream yields a failure response instead of hanging"""
    async def slow(request):
        await asyncio.sleep(5)
        return make_response(200, b"too late")

    upstream.handler = slow

    response = relay(client)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "timed out" in response.text


def test_connection_reset_returns_403(client, upstream):
    """Test the connection-reset heuristic (likely blocked or expired)"""
    def reset(request):
        raise httpx.ReadError(
            "[Errno 104] Connection reset by peer", request=request
        ) from ConnectionResetError(104, "Connection reset by peer")

    upstream.handler = reset

    response = relay(client)

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.text == ACCESS_DENIED_MESSAGE


def test_connect_error_returns_500(client, upstream):
    """Test that other network failures embed the failure description"""
    def refused(request):
        raise httpx.ConnectError("Name or service not known", request=request)

    upstream.handler = refused

    response = relay(client)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.text.startswith("Relay Error: ")
    assert "Name or service not known" in response.text


def test_error_carrying_response_is_relayed(client, upstream):
    """Test that a failure embedding an upstream response relays its status and body"""
    def raise_status(request):
        error_response = httpx.Response(451, content=b"blocked in region", request=request)
        raise httpx.HTTPStatusError("451", request=request, response=error_response)

    upstream.handler = raise_status

    response = relay(client)

    assert response.status_code == 451
    assert response.content == b"blocked in region"


@pytest.mark.parametrize("method", ["PUT", "PATCH", "DELETE", "OPTIONS"])
def test_other_methods_are_preserved(client, upstream, method):
    """Test that every supported method reaches upstream unchanged"""
    relay(client, method=method)

    assert upstream.requests[0].method == method
