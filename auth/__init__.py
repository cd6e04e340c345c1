"""auth/ -- Accounts, credentials, tokens, and the authorization gate for civicauth.

Layer rule: auth/ imports stdlib, third-party libraries, core/ and audit/.
It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""
