"""aiohttp control and edge planes."""

from cloakroute.server.app import PlatformServer
from cloakroute.server.platform import Platform, build_platform

__all__ = ["Platform", "PlatformServer", "build_platform"]
