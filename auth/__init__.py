"""auth/ -- Token lifecycle package for TokenGate.

Codec (tokens.py), issuer, gate, login throttle, metrics, and the minimal
credential store the login route needs.

Layer rule: auth/ imports from core/ and revocation/ plus third-party
libraries. It does NOT import from api/. api/ imports from auth/, not the
other way around.
"""
