"""audit/ -- Append-only audit trail for security-relevant actions.

Layer rule: audit/ imports only stdlib, third-party libraries, and core/.
auth/, api/ and web/ import from audit/, never the other way around.
"""
