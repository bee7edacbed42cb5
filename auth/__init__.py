"""auth/ -- Authentication and authorization package for the AAA service.

Layer rule: auth/ imports only stdlib, third-party libraries, core/, and audit/
(the latter only from service.py and gate.py, which emit audit events).
It does NOT import from api/ or jobs/.
api/ and jobs/ import from auth/, not the other way around.
"""
