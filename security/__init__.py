"""security/ -- Request-level abuse controls for LedgerGuard: rate limiting and CSRF.

Layer rule: security/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or auth/.
"""
