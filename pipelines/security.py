"""URL validation for crawled links.

Blocks non-web schemes, private and reserved address ranges, internal service
ports and cloud metadata hosts before a link is allowed onto the frontier.
"""

import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Optional, Set, Tuple
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# RFC 1918, RFC 4193 and friends
PRIVATE_IP_RANGES = [
    ipaddress.ip_network('10.0.0.0/8'),
    ipaddress.ip_network('172.16.0.0/12'),
    ipaddress.ip_network('192.168.0.0/16'),
    ipaddress.ip_network('127.0.0.0/8'),
    ipaddress.ip_network('169.254.0.0/16'),
    ipaddress.ip_network('::1/128'),
    ipaddress.ip_network('fc00::/7'),
    ipaddress.ip_network('fe80::/10'),
    ipaddress.ip_network('0.0.0.0/8'),
    ipaddress.ip_network('224.0.0.0/4'),
    ipaddress.ip_network('240.0.0.0/4'),
]

BLOCKED_PORTS = frozenset({
    22, 23, 25, 53, 110, 143, 993, 995,
    1433, 1521, 3306, 3389, 5432, 5984, 6379, 7474, 7687, 8086, 9200, 27017,
})

ALLOWED_SCHEMES = frozenset({'http', 'https'})

LOCALHOST_NAMES = frozenset({'localhost', '0.0.0.0', '0', 'local'})

METADATA_HOSTS = (
    'metadata.google.internal',
    '169.254.169.254',
    'metadata.azure.com',
    'metadata.packet.net',
)


class SSRFError(Exception):
    """Raised when a URL fails security validation."""
    pass


def is_private_ip(ip_str: str) -> bool:
    """Return True for private, loopback, link-local or unparsable addresses."""
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return True
    return any(ip in network for network in PRIVATE_IP_RANGES)


def resolve_hostname(hostname: str) -> Set[str]:
    """Resolve a hostname and refuse it if any address is private.

    Raises:
        SSRFError: If resolution fails or yields a private address
    """
    try:
        addr_info = socket.getaddrinfo(hostname, None)
    except (socket.gaierror, UnicodeError) as e:
        raise SSRFError(f"Failed to resolve hostname {hostname}: {e}")

    ips = {info[4][0] for info in addr_info}
    private_ips = sorted(ip for ip in ips if is_private_ip(ip))
    if private_ips:
        raise SSRFError(f"Hostname {hostname} resolves to private IP(s): {private_ips}")
    return ips


@dataclass
class URLSecurityPolicy:
    """Validation rules applied to every link before it is crawled.

    ``resolver`` is called for hostnames that are not IP literals; set it to
    None to skip DNS checks.
    """
    allowed_schemes: FrozenSet[str] = ALLOWED_SCHEMES
    blocked_ports: FrozenSet[int] = BLOCKED_PORTS
    resolver: Optional[Callable[[str], Set[str]]] = field(default=resolve_hostname)

    def validate(self, url: str) -> Tuple[bool, Optional[str]]:
        """Validate a URL.

        Returns:
            Tuple of (is_safe, error_message)
        """
        try:
            parsed = urlparse(url)
            scheme = parsed.scheme.lower()
            if scheme not in self.allowed_schemes:
                return False, f"Scheme '{parsed.scheme}' not allowed"

            hostname = parsed.hostname
            if not hostname:
                return False, "URL must have a valid hostname"
            hostname = hostname.lower()

            if hostname in LOCALHOST_NAMES:
                return False, f"Localhost hostname '{hostname}' is blocked"

            port = parsed.port
            if port and port in self.blocked_ports:
                return False, f"Port {port} is blocked (internal service port)"

            for pattern in METADATA_HOSTS:
                if pattern in hostname:
                    return False, f"Metadata host '{pattern}' is blocked"

            try:
                ip = ipaddress.ip_address(hostname)
            except ValueError:
                ip = None

            if ip is not None:
                if is_private_ip(str(ip)):
                    return False, f"Private IP address '{hostname}' is blocked"
            elif self.resolver is not None:
                try:
                    self.resolver(hostname)
                except SSRFError as e:
                    return False, str(e)

            return True, None

        except ValueError as e:
            return False, f"URL validation error: {e}"

    def check(self, url: str) -> None:
        """Raise SSRFError if ``url`` is unsafe."""
        is_safe, error_msg = self.validate(url)
        if not is_safe:
            logger.debug(f"URL blocked by security policy: {url} - {error_msg}")
            raise SSRFError(f"URL blocked: {error_msg}")


default_policy = URLSecurityPolicy()


def validate_url_security(url: str) -> Tuple[bool, Optional[str]]:
    """Validate ``url`` with the default policy."""
    return default_policy.validate(url)


def check_url_ssrf(url: str) -> None:
    """Raise SSRFError if ``url`` fails the default policy."""
    default_policy.check(url)
