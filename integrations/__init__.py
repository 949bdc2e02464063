"""integrations/ -- OAuth credential brokering for the partner CRM API.

Layer rule: integrations/ may import from core/ and auth/errors;
integrations/dependencies.py additionally builds on auth/dependencies. It
does NOT import from api/. The identity core in auth/ never imports from here.
"""
