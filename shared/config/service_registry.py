"""
Central Service Registry for scanfuse.

Service URLs, ports, and the message bus location in one place.
Services use environment variables for configuration, with sensible defaults.
"""

import os


class ServiceConfig:
    """Configuration for scanfuse services.

    Port assignments:
        8086 - Fusion (scan integration + mesh export)
        6379 - Redis (message bus)
    """

    FUSION_PORT = int(os.getenv("FUSION_PORT", "8086"))
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

    @classmethod
    def url(cls, service: str, path: str = "") -> str:
        """Get the URL for a service.

        Args:
            service: Service name (e.g., 'fusion')
            path: Optional URL path to append (e.g., '/api/stats')

        Returns:
            Full URL like 'http://localhost:8086/api/stats'
        """
        host = os.getenv(f"{service.upper()}_HOST", "localhost")
        port = getattr(cls, f"{service.upper()}_PORT", cls.FUSION_PORT)
        base = f"http://{host}:{port}"
        if path:
            return f"{base}{path}"
        return base

    @classmethod
    def ws_url(cls, service: str, path: str = "") -> str:
        """Get the WebSocket URL for a service."""
        return cls.url(service, path).replace("http://", "ws://", 1)

    @classmethod
    def all_services(cls) -> dict[str, int]:
        """Return a dict of service name -> port for all registered services."""
        return {
            "fusion": cls.FUSION_PORT,
        }
