"""auth/ -- Users, passphrases, login sessions and one-time tokens for gpt-user-auth.

Layer rule: auth/ imports only core/ + stdlib + third-party libraries.
It does NOT import from api/, web/, or oauth2/.
api/ and web/ import from auth/, not the other way around.
"""
