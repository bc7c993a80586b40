"""Rate limiting for the Vroom sync backend.

Sync, upload and download are expensive per user, so authenticated
requests are bucketed by user id. Anonymous requests fall back to the
client address, honoring X-Forwarded-For only from trusted proxies.
"""

import ipaddress
from functools import lru_cache

from jose import JWTError, jwt
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("vroom.rate_limit")


@lru_cache
def _trusted_networks(cidrs: tuple[str, ...]) -> tuple:
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr!r}")
    return tuple(networks)


def _is_trusted_proxy(ip_str: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    networks = _trusted_networks(tuple(get_settings().trusted_proxy_cidrs))
    return any(addr in network for network in networks)


def get_client_ip(request) -> str:
    """Client address; the leftmost X-Forwarded-For entry only behind a trusted proxy."""
    direct_ip = get_remote_address(request)
    if _is_trusted_proxy(direct_ip):
        forwarded_for = request.headers.get("x-forwarded-for", "")
        client_ip = forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip
    return direct_ip


def rate_limit_key(request) -> str:
    """``user:<id>`` for a valid bearer token, otherwise ``ip:<address>``."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        settings = get_settings()
        try:
            payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        except JWTError:
            payload = {}
        if payload.get("sub"):
            return f"user:{payload['sub']}"
    return f"ip:{get_client_ip(request)}"


limiter = Limiter(key_func=rate_limit_key)
