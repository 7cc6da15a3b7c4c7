"""appsettings/ -- The global settings document for App Budget.

One logical row holds the shared configuration both household members see:
language, currency, session length, feature toggles, bank accounts, and the
OIDC provider configuration. Reads and writes both pass through a single
role-aware projection so OIDC fields never leave (or enter) the store on
behalf of a non-admin.

Layer rule: appsettings/ imports only stdlib, third-party libraries, and
core/. It does NOT import from api/, auth/, budget/, or backup/.
"""
