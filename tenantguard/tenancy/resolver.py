"""Host to tenant resolution and tenant URL helpers.

Pure string parsing against the configured base domain. Reserved names
short-circuit before any tenant lookup happens; anything unparseable
resolves to ``None``.
"""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterable

from tenantguard.config.settings import DEFAULT_RESERVED_SUBDOMAINS
from tenantguard.models.domain import HostResolution
from tenantguard.types import HostKind

SUBDOMAIN_PATTERN = re.compile(r"\A[a-z0-9-]{1,63}\Z")

_MAIN_ALIASES = frozenset({"www"})


def _strip_port(host: str) -> str:
    if host.startswith("["):
        # [::1]:8000
        end = host.find("]")
        return host[1:end] if end != -1 else host
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class DomainResolver:
    """Maps request hosts onto tenant subdomains."""

    def __init__(
        self,
        base_domain: str = "localhost",
        reserved: Iterable[str] = DEFAULT_RESERVED_SUBDOMAINS,
        use_https: bool = False,
        port: int | None = None,
    ) -> None:
        self._base_domain = _strip_port(base_domain.strip().lower().rstrip("."))
        self._reserved = frozenset(name.lower() for name in reserved)
        self._use_https = use_https
        self._port = port

    @property
    def base_domain(self) -> str:
        return self._base_domain

    @property
    def protocol(self) -> str:
        return "https" if self._use_https else "http"

    def is_reserved(self, name: str | None) -> bool:
        return bool(name) and str(name).lower() in self._reserved

    def extract_subdomain(self, host: str | None) -> str | None:
        """Return the label(s) left of the base domain, or None."""
        if not host or not isinstance(host, str):
            return None
        host = _strip_port(host.strip().lower().rstrip("."))
        if not host or host == "localhost" or _is_ip(host):
            return None
        if host == self._base_domain:
            return None
        suffix = f".{self._base_domain}"
        if not host.endswith(suffix):
            return None
        subdomain = host[: -len(suffix)]
        return subdomain or None

    def resolve(self, host: str | None) -> HostResolution | None:
        """Classify a host as main domain (None), reserved, or a tenant candidate."""
        subdomain = self.extract_subdomain(host)
        if subdomain is None or subdomain in _MAIN_ALIASES:
            return None
        if subdomain in self._reserved:
            return HostResolution(kind=HostKind.RESERVED, name=subdomain)
        if not SUBDOMAIN_PATTERN.match(subdomain):
            return None
        return HostResolution(kind=HostKind.TENANT, name=subdomain)

    # -- URL helpers -------------------------------------------------------

    def _origin(self, host: str) -> str:
        port = f":{self._port}" if self._port else ""
        return f"{self.protocol}://{host}{port}"

    def main_url(self, path: str | None = None) -> str:
        url = self._origin(self._base_domain)
        return f"{url}/{path.lstrip('/')}" if path else url

    def subdomain_url(self, subdomain: str, path: str | None = None) -> str:
        url = self._origin(f"{subdomain}.{self._base_domain}")
        return f"{url}/{path.lstrip('/')}" if path else url

    def organization_url(self, subdomain: str, path: str | None = None) -> str:
        return self.subdomain_url(subdomain, path)

    def auth_url(self, path: str | None = None) -> str:
        return self.subdomain_url("auth", path)

    def api_url(self, path: str | None = None) -> str:
        return self.subdomain_url("api", path)

    def login_url(self, return_to: str | None = None) -> str:
        path = "login"
        if return_to:
            path += f"?return_to={return_to}"
        return self.auth_url(path)
