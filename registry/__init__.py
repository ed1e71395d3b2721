"""registry/ -- Signup-code lifecycle: storage, issuance, redemption, verification.

Layer rule: registry/ imports only core/ + stdlib + third-party libraries.
It does NOT import from api/, auth/, audit/, or selftest/.
"""
