"""auth/ -- Authentication and session management core for the portal.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way
around. Other modules obtain identities through auth.service.AuthService and
check roles with auth.models.has_role.
"""
