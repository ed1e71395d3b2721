"""audit/ -- Append-only audit trail, PII masking, and activity flags for CodeGuard.

Layer rule: audit/ imports only core/ + stdlib + third-party libraries.
It does NOT import from api/, auth/, registry/, or selftest/.
Those layers call into audit/, not the other way around.
"""
