"""auth/ -- Authentication and session-revocation core for StrmAuth.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/; settings are passed in by the caller.
api/ and main.py import from auth/, not the other way around.
"""
