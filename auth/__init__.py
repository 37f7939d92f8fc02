"""auth/ -- Authentication package for LedgerGuard: principals, signing secret, bearer tokens.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or security/.
api/ imports from auth/, not the other way around.
"""
