"""Service layer shared by the HTTP and STDIO transports."""

from .envelope import Envelope, EnvelopeError, EnvelopeMeta
from .errors import CanonicalError, canonical_code_for, failure_details
from .mcp_service import McpService, RequestContext, RequestIds, ServerLogManager, ServiceLimits

__all__ = [
    "CanonicalError",
    "Envelope",
    "EnvelopeError",
    "EnvelopeMeta",
    "McpService",
    "RequestContext",
    "RequestIds",
    "ServerLogManager",
    "ServiceLimits",
    "canonical_code_for",
    "failure_details",
]
