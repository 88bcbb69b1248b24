"""tracking/ -- Bounded, time-limited location tracking sessions.

Layer rule: tracking/ imports from core/ only. It does NOT import from
alerts/, auth/ or api/. Close and location notifications leave through the
hooks on TrackingService.
"""
