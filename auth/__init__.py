"""auth/ -- Identity and access package for Hanashi.

Passwords, session tokens, email secrets, groups, and the account lifecycle.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/, notify/, or core/.
api/ and notify/ import from auth/, not the other way around.
"""
