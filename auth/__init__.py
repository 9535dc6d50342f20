"""auth/ -- Authentication and authorization package for OrgWarden.

Layer rule: auth/ imports stdlib, third-party libraries, core/ and audit/.
It does NOT import from api/. api/ and manage.py import from auth/, not the
other way around.
"""
