"""auth/ -- Authentication and authorization package for CodeGuard.

Layer rule: auth/ imports only core/, audit/ + stdlib + third-party libraries.
It does NOT import from api/, registry/, or selftest/.
api/ imports from auth/, not the other way around.
"""
