"""
core/errors.py -- Exception taxonomy for the escalation engine.

Outcomes of a credential check (NotConfigured, LockedOut, ...) are values,
not exceptions -- see auth/models.py. Only conditions the caller must react
to structurally are raised.
"""


class InvalidCredentialFormat(ValueError):
    """A PIN or password failed the format rules at setup. Nothing was stored."""


class ChannelDeliveryError(Exception):
    """One channel could not deliver one message.

    Always caught by the dispatcher and recorded on the event; never fatal to
    the dispatch as a whole.
    """


class UnrecoverableEventError(Exception):
    """The event cannot be processed at all (malformed, or user/device missing).

    The event is marked processed=False with the message attached. Retrying is
    the trigger delivery mechanism's decision, not this core's.
    """


class SessionNotFoundError(KeyError):
    """No tracking session exists with the given id."""


class SessionClosedError(Exception):
    """The tracking session is inactive; the operation was rejected."""
