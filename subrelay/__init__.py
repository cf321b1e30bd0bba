"""
Subscription Relay
==================

Relays an HTTP request to the subscription source named by the ``url``
query parameter and reports which proxy-node protocols the payload holds
in the ``X-Node-Protocols`` response header.
"""

__version__ = "1.0.0"
