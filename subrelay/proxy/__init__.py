"""
Proxy Package
=============

This package implements the subscription relay: it fetches the URL named
by the ``url`` query parameter and relays the response, annotated with a
tally of the proxy-node protocols found in the payload.

Main Components:
----------------
- routes.py: FastAPI router with the relay endpoint (/proxy)
- headers.py: Header strip-lists and outbound header construction
- upstream.py: Bounded upstream fetch and tagged fetch failures
- decoder.py: gzip/deflate, UTF-8 and base64 decoding
- classifier.py: Protocol tally (YAML document or line scan)
- relay.py: Caller-facing response construction
- errors.py: Failure to status/body translation

Usage:
------
    from subrelay.proxy.routes import proxy_router
    app.include_router(proxy_router, prefix="/api")
"""

from .routes import proxy_router

__all__ = ["proxy_router"]
