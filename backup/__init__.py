"""backup/ -- Whole-database export and restore for App Budget.

Layer rule: backup/ may import the store modules of auth/, appsettings/ and
budget/ (for their table objects and key rules). It does NOT import from
api/; api/routes/backup.py is the only caller.
"""
