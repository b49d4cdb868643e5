"""auth/ -- Authentication and session security core for TaskFlow.

Token issuance and rotation, MFA, password policy and the audit ledger.

Layer rule: auth/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
