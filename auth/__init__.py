"""auth/ -- Credential lifecycle and access-control core for credcore.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way
around. The one exception is auth/dependencies.py, which exists to plug the
core into FastAPI's dependency injection.
"""
