"""
Centralized error handling for the polling and diagnosis engine.

Error Hierarchy:
- LinkDiagError: expected failures with a short machine-readable code
  - TransportError: the device could not be reached or talked to
  - ConfigurationError: the caller's profile/template is unusable
  - TelemetryError: the mirrored telemetry database failed
- Anything else is unexpected and never exposed beyond its code

Exceptions are raised inside the engine and converted to failed results at
the public operation boundary with error_reason(), so callers only ever see
a code such as "AUTH_FAILED" plus the raw device output.

Usage:
    from linkdiag.errors import error_reason, SessionTimeoutError

    raise SessionTimeoutError(f"{host}: no prompt within {timeout}s")

    except Exception as e:
        return DiagnosisResult(..., error=error_reason(e, "diagnose link"))
"""

import logging
import uuid
from typing import Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Exception Classes (Expected Errors)
# =============================================================================

class LinkDiagError(Exception):
    """
    Base class for expected engine errors.
    The code is safe to hand to callers and operators.
    """
    code = "LINKDIAG_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class TransportError(LinkDiagError):
    """Device unreachable or session broken."""
    code = "TRANSPORT_ERROR"


class ConnectionFailedError(TransportError):
    """TCP/UDP connection refused, reset or unroutable."""
    code = "CONNECT_FAILED"


class AuthenticationError(TransportError):
    """Credentials rejected."""
    code = "AUTH_FAILED"


class SessionTimeoutError(TransportError):
    """Overall session deadline reached."""
    code = "SESSION_TIMEOUT"


class StreamClosedError(TransportError):
    """Peer closed the session before the command was issued."""
    code = "STREAM_CLOSED"


class SnmpError(TransportError):
    """SNMP error indication or error status."""
    code = "SNMP_ERROR"


class ConfigurationError(LinkDiagError):
    """Profile, template or inventory cannot be used."""
    code = "CONFIG_ERROR"


class FormulaError(ConfigurationError, ValueError):
    """Port-index formula is malformed."""
    code = "FORMULA_ERROR"


class TelemetryError(LinkDiagError):
    """Telemetry database query failed."""
    code = "TELEMETRY_ERROR"


# =============================================================================
# Safe Error Reason Helper
# =============================================================================

def error_reason(e: Exception, operation: str, include_error_id: bool = True) -> str:
    """
    Reduce an exception to a code that is safe to return to callers.

    For LinkDiagError subclasses (expected errors):
        - Returns the exception's code
        - Logs at WARNING level

    For all other exceptions (unexpected errors):
        - Returns "INTERNAL_ERROR"
        - Logs full exception at ERROR level with an error_id

    Args:
        e: The exception that was caught
        operation: Human-readable description of what failed (e.g., "query alarms")
        include_error_id: Whether to tag the log record with an error_id

    Returns:
        Machine-readable reason code
    """
    error_id = str(uuid.uuid4())[:8] if include_error_id else None
    log_extra = {"error_id": error_id} if error_id else {}

    if isinstance(e, LinkDiagError):
        logger.warning(f"{operation}: [{e.code}] {e}", extra=log_extra)
        return e.code

    logger.exception(f"{operation} failed", extra=log_extra)
    return "INTERNAL_ERROR"
