"""alerts/ -- Security events, notification fan-out, and response orchestration.

Layer rule: alerts/ imports from core/, tracking/ (the orchestrator owns
sessions) and auth.models (the Escalation record). It does NOT import from
api/. auth/ does not import from alerts/; the gate reaches the orchestrator
only through its escalation hook.
"""
