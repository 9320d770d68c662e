"""Request helpers used at the HTTP boundary."""

import ipaddress
import logging
from collections.abc import Mapping

from fastapi import Request

logger = logging.getLogger(__name__)

_TRUSTED_PROXY_HOSTS = ("127.0.0.1", "::1", "localhost")


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str | None:
    """Get the client IP address from a request.

    X-Real-IP is honoured only when the direct peer is a local reverse proxy.
    X-Forwarded-For is never trusted since any client can set it.
    """
    if request.client and request.client.host in _TRUSTED_PROXY_HOSTS:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid X-Real-IP: {real_ip}")

    if request.client:
        return request.client.host

    return None


def derive_device_class(
    explicit: str | None,
    user_agent: str | None,
    rules: Mapping[str, str],
    default: str,
) -> str:
    """Resolve the device class for a login request.

    An explicit class sent by the client wins. Otherwise the first rule whose
    marker appears in the User-Agent decides, falling back to ``default``.
    """
    if explicit and explicit.strip():
        return explicit.strip()
    if user_agent:
        for marker, device_class in rules.items():
            if marker in user_agent:
                return device_class
    return default
