"""notify/ -- Outbound notifications (email) for Hanashi.

Layer rule: notify/ imports from auth/ for domain types and errors.
It does NOT import from api/ or core/; callers pass configuration values in.
"""
