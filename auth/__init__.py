"""auth/ -- Authentication and authorization core for BlogAPI.

Credential hashing, soft-delete-aware persistence, RBAC resolution, access
token issuance, the refresh-token ledger, and the workflows that tie them
together.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/.
api/ imports from auth/, not the other way around.
"""
