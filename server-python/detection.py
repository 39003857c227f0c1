"""
Link Gate Detection Module - Request Classification

User-Agent denylist, network origin (ASN / CIDR), geography allow-list and
request method checks. Everything here is a pure function of the request
descriptor and the static configuration.
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from settings import Settings, normalize_asn


# =============================================================================
# Request Descriptor
# =============================================================================

@dataclass(frozen=True)
class RequestDescriptor:
    client_id: str
    user_agent: Optional[str]
    method: str
    path: str = "/"
    query: Dict[str, str] = field(default_factory=dict)
    cookie_header: str = ""
    country: Optional[str] = None
    asn: Optional[str] = None
    body: Optional[Dict[str, Any]] = None


def first_hop(value: Optional[str]) -> str:
    """Return the left-most address of a forwarded-for style header."""
    if not value:
        return ""
    return value.split(",")[0].strip()


def resolve_client_id(headers, header_names: Sequence[str], peer: Optional[str]) -> str:
    for name in header_names:
        hop = first_hop(headers.get(name))
        if hop:
            return hop
    return peer or "unknown"


# =============================================================================
# Verdict
# =============================================================================

@dataclass(frozen=True)
class Verdict:
    passed: bool
    reason: str = ""

    @classmethod
    def ok(cls) -> "Verdict":
        return cls(True)

    @classmethod
    def reject(cls, reason: str) -> "Verdict":
        return cls(False, reason)


# =============================================================================
# Classifier
# =============================================================================

class Classifier:
    def __init__(
        self,
        ua_denylist: Sequence[str],
        asn_denylist: Sequence[str] = (),
        network_denylist: Sequence[str] = (),
        country_allowlist: Sequence[str] = (),
        preview_safe_paths: Sequence[str] = (),
    ):
        self.ua_patterns = [p.lower() for p in ua_denylist if p]
        self.bad_asns = {normalize_asn(a) for a in asn_denylist} - {""}
        self.bad_networks = [ipaddress.ip_network(cidr, strict=False) for cidr in network_denylist]
        self.allowed_countries = {c.upper() for c in country_allowlist}
        self.preview_safe_paths = tuple(preview_safe_paths)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Classifier":
        return cls(
            ua_denylist=settings.ua_denylist,
            asn_denylist=settings.asn_denylist,
            network_denylist=settings.network_denylist,
            country_allowlist=settings.country_allowlist,
            preview_safe_paths=settings.preview_safe_paths,
        )

    def classify(self, req: RequestDescriptor) -> Verdict:
        """Run every check; the first disqualifying signal wins."""
        for check in (self._check_user_agent, self._check_method,
                      self._check_network, self._check_country):
            reason = check(req)
            if reason:
                return Verdict.reject(reason)
        return Verdict.ok()

    def is_preview_safe(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.preview_safe_paths)

    # -------------------------------------------------------------------------

    def _check_user_agent(self, req: RequestDescriptor) -> str:
        ua = (req.user_agent or "").strip().lower()
        if not ua:
            return "empty_user_agent"
        for pattern in self.ua_patterns:
            if pattern in ua:
                return f"user_agent:{pattern}"
        return ""

    def _check_method(self, req: RequestDescriptor) -> str:
        if req.method.upper() == "HEAD" and not self.is_preview_safe(req.path):
            return "head_request"
        return ""

    def _check_network(self, req: RequestDescriptor) -> str:
        asn = normalize_asn(req.asn)
        if asn and asn in self.bad_asns:
            return f"asn:{asn}"
        if self.bad_networks and is_in_networks(req.client_id, self.bad_networks):
            return "network_denylist"
        return ""

    def _check_country(self, req: RequestDescriptor) -> str:
        if not self.allowed_countries or not req.country:
            return ""
        country = req.country.strip().upper()
        if country and country not in self.allowed_countries:
            return f"country:{country}"
        return ""


def is_in_networks(ip_str: str, networks: List) -> bool:
    """Check if an IP belongs to any of the given networks."""
    try:
        ip = ipaddress.ip_address(ip_str)
        return any(ip in network for network in networks)
    except ValueError:
        return False
