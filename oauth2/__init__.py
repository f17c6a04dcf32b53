"""oauth2/ -- OAuth2 authorization-code grant: clients, codes, tokens.

Layer rule: oauth2/ imports from core/ and auth/ only.
It does NOT import from api/ or web/.
"""
