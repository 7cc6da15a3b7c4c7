"""budget/ -- Month budget storage for App Budget.

Each month is an opaque JSON document keyed by "YYYY-MM". The ledger
arithmetic lives in the frontend; this package only stores and returns it.

Layer rule: budget/ imports only stdlib, third-party libraries, and core/.
"""
