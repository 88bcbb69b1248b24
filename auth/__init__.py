"""auth/ -- Credential gate and API-key authentication for SecurePower.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, alerts/, or tracking/.
api/ and alerts/ import from auth/, not the other way around.
"""
