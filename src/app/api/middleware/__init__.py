"""Request middleware: access logging and tenant resolution."""

from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.middleware.tenant import TenantAuthMiddleware

__all__ = ["LoggingMiddleware", "TenantAuthMiddleware", "configure_structlog"]
