"""
Exception hierarchy for the BPM form bridge.

Two families live here:

  Local rules        NotFoundError, ValidationError
  Sync / lifecycle   RemoteCallFailure (TransportFailure, RemoteApplicationFailure,
                     AlreadyClosedFailure), MappingFailure, PersistenceFailure

The gateway raises only RemoteCallFailure subclasses; it never lets a raw
``requests`` exception cross its boundary.  Services raise MappingFailure and
PersistenceFailure.  The lifecycle service and blueprints catch all of them
and turn them into the 200 / 203 / 500 response envelope.

A remote "process not found" is NOT an exception: the sync service returns
it as a result outcome so pollers can tell it apart from a transport error.

Usage:
    from bpm_bridge.core.exceptions import TransportFailure, PersistenceFailure

    raise TransportFailure("Connection refused", endpoint="bpm/batch/abort-processes")
"""


class NotFoundError(Exception):
    """A local mirror row does not exist.

    Args:
        resource: Human-readable entity name (e.g. "BpmForm").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Input was well-formed but violated a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Remote BPM failures ──────────────────────────────────────────────────


class RemoteCallFailure(Exception):
    """Base for every failure of a call to the BPM middleware.

    Args:
        cause: Human-readable reason, safe to log and to show to operators.
        endpoint: Relative endpoint that was called.
        status_code: HTTP status if a response was received.
    """

    def __init__(
        self,
        cause: str,
        *,
        endpoint: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.cause = cause
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(cause)


class TransportFailure(RemoteCallFailure):
    """BPM could not be reached: connection refused, DNS, TLS or timeout."""


class RemoteApplicationFailure(RemoteCallFailure):
    """BPM answered, but with a non-success status or a body we cannot parse."""


class AlreadyClosedFailure(RemoteApplicationFailure):
    """BPM reports the target process is already terminated or withdrawn."""


# ── Local failures ───────────────────────────────────────────────────────


class MappingFailure(Exception):
    """A remote payload does not carry the fields its declared form type needs.

    Args:
        message: What is missing or malformed.
        form_code: The declared form code.
        missing: Names of the missing fields.
        payload_hash: SHA-256 of the raw payload, for cross-reference with the sync log.
    """

    def __init__(
        self,
        message: str,
        *,
        form_code: str | None = None,
        missing: list[str] | None = None,
        payload_hash: str | None = None,
    ) -> None:
        self.form_code = form_code
        self.missing = missing or []
        self.payload_hash = payload_hash
        super().__init__(message)


class PersistenceFailure(Exception):
    """A write to the local mirror database failed and was rolled back.

    Args:
        message: What was being written.
        form_id: The affected form, when known.
    """

    def __init__(self, message: str, *, form_id: str | None = None) -> None:
        self.form_id = form_id
        super().__init__(message)
