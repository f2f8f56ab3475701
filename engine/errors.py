"""Error taxonomy for synthesis, storage and playback.

Nothing here is allowed to escape the dispatch path or the playback
consumer loop; these types exist so failures can be logged with the
stage that produced them.
"""


class SynthesisError(Exception):
    """A synthesis backend could not turn text into audio."""

    stage = "synthesis"


class TransportError(SynthesisError):
    """Network or authentication failure talking to a backend."""


class NetworkError(TransportError):
    pass


class AuthError(TransportError):
    pass


class BackendUnavailable(SynthesisError):
    """Backend is misconfigured, overloaded, or refused the request."""


class EmptyInput(SynthesisError):
    """Nothing left to speak after trimming."""


class GenerationError(SynthesisError):
    """The language model failed before any speech was attempted."""

    stage = "generation"


class StoreError(Exception):
    """Chat log append or read failed."""


class DeviceError(Exception):
    """Audio output failed to open or failed mid-stream."""


class InvalidTransition(Exception):
    """Command does not apply to the current playback state."""


class QueueClosed(Exception):
    """The playback command queue no longer accepts commands."""
