"""auth/ -- Authentication and authorization package for accountd.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or notify/ -- the mailer is handed in by the
caller. api/ imports from auth/, not the other way around.
"""
