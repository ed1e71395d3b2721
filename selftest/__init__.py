"""selftest/ -- Security self-test harness that probes the API like a client.

Layer rule: selftest/ may import from core/, auth/ and audit/. It reaches the
API only over HTTP (an ASGI transport), never by importing api/.
"""
