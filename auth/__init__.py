"""auth/ -- Authentication and identity package for App Budget.

Covers local accounts, session tokens, the password reset flow, and the
OIDC bridge that links external identities to local accounts.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, appsettings/, budget/, or backup/.
api/ imports from auth/, not the other way around.
"""
