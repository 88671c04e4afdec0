"""auth/ -- Session & account-security core for Ace Trade.

Layer rule: auth/ imports only core/, stdlib, and third-party libraries.
It does NOT import from api/ or chat/.
api/ and chat/ import from auth/, not the other way around.
"""
