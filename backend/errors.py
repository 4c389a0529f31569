"""
Error taxonomy shared by the upload pipeline and the derivation cache.

Every message is meant to be shown to a client as-is, either on a job
status poll or in the body of a failed artifact request.
"""


class VidrelayError(Exception):
    """Base class for all domain errors."""


class IdentityError(VidrelayError):
    """The owner DID could not be resolved, or declares no storage endpoint."""


class TransportError(VidrelayError):
    """A remote endpoint could not be reached."""


class ProtocolError(VidrelayError):
    """A remote endpoint answered with a non-success status or a bad body."""


class DerivationError(VidrelayError):
    """The transcoder (or the source download feeding it) failed."""


class DerivationPending(VidrelayError):
    """Another request is still deriving this artifact; retry shortly."""


class JobTransitionError(VidrelayError):
    """An update tried to move a job backwards or out of a terminal state."""
