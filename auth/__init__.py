"""auth/ -- Identity, token and session core for the CRM control plane.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or integrations/.
api/ imports from auth/, not the other way around.
"""
