"""
Configuration module for the group membership resolver.
Defines tunable traversal parameters, directory backends, and Graph API settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Optional

from .resolver import FailureMode, ResolverOptions, Strategy


# ─── Tenant Authentication ───────────────────────────────────────────────────

CERT_PASSWORD_ENV = "MEMBERSHIP_RESOLVER_CERT_PASSWORD"

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Falls back to MEMBERSHIP_RESOLVER_CERT_PASSWORD

@dataclass
class DelegatedAuth:
    """Delegated (device code) authentication configuration."""
    tenant_id: str
    client_id: str
    scopes: list[str] = field(default_factory=lambda: [
        "GroupMember.Read.All",
    ])

@dataclass
class AuthConfig:
    """Authentication configuration — supports both modes."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"

# Rate limiting / throttling
MAX_CONCURRENT_REQUESTS = 4       # Parallel requests to Graph
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor

# Pagination
DEFAULT_PAGE_SIZE = 999           # Maximum items per page ($top)
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops

# Attributes carried through on every group record
GROUP_SELECT_FIELDS = ["id", "displayName", "mail", "groupTypes", "securityEnabled"]


# ─── LDAP Settings ──────────────────────────────────────────────────────────

@dataclass
class LdapConfig:
    """On-premises Active Directory connection settings."""
    server: str = ""
    base_dn: str = ""             # empty = defaultNamingContext from the server
    port: int = 0                 # 0 = 636 with SSL, 389 without
    use_ssl: bool = True
    user: str = ""                # DOMAIN\\user or user@domain; empty = anonymous
    password: str = ""
    timeout: int = 30

    @property
    def effective_port(self) -> int:
        return self.port or (636 if self.use_ssl else 389)


# ─── Traversal Settings ─────────────────────────────────────────────────────

@dataclass
class TraversalConfig:
    """Controls for the membership traversal."""
    mode: str = "strict"                  # "strict" or "best_effort"
    strategy: str = "depth"               # "depth" (sequential) or "breadth" (concurrent)
    max_concurrency: int = MAX_CONCURRENT_REQUESTS
    lookup_timeout: Optional[float] = 30.0   # Per lookup call
    timeout: Optional[float] = None          # Whole resolution
    max_groups: Optional[int] = None         # Safety cap on result size

    def to_options(self) -> ResolverOptions:
        return ResolverOptions(
            mode=FailureMode(self.mode),
            strategy=Strategy(self.strategy),
            max_concurrency=self.max_concurrency,
            lookup_timeout=self.lookup_timeout,
            timeout=self.timeout,
            max_groups=self.max_groups,
        )


# ─── Master Configuration ───────────────────────────────────────────────────

BACKENDS = ("file", "graph", "ldap")

@dataclass
class ResolverConfig:
    """Top-level configuration for a resolution run."""
    backend: str = "file"
    auth: AuthConfig = field(default_factory=AuthConfig)
    ldap: LdapConfig = field(default_factory=LdapConfig)
    traversal: TraversalConfig = field(default_factory=TraversalConfig)
    directory_file: str = ""      # JSON directory snapshot for the "file" backend
    verbose: bool = False

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown backend: {self.backend} (expected one of {', '.join(BACKENDS)})")

    def certificate_password(self) -> str:
        cert = self.auth.certificate
        if cert and cert.certificate_password:
            return cert.certificate_password
        return os.environ.get(CERT_PASSWORD_ENV, "")

    @classmethod
    def from_file(cls, path: str) -> "ResolverConfig":
        """Load configuration from a JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        config = cls(backend=data.get("backend", "file"))
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            if "certificate" in auth_data:
                c = auth_data["certificate"]
                config.auth.certificate = CertificateAuth(
                    tenant_id=c["tenant_id"],
                    client_id=c["client_id"],
                    certificate_path=c.get("certificate_path", "./base64.txt"),
                    certificate_password=c.get("certificate_password", ""),
                )
            if "delegated" in auth_data:
                d = auth_data["delegated"]
                config.auth.delegated = DelegatedAuth(
                    tenant_id=d["tenant_id"],
                    client_id=d["client_id"],
                )
                if "scopes" in d:
                    config.auth.delegated.scopes = list(d["scopes"])
        if "ldap" in data:
            for k, v in data["ldap"].items():
                if hasattr(config.ldap, k):
                    setattr(config.ldap, k, v)
        if "traversal" in data:
            for k, v in data["traversal"].items():
                if hasattr(config.traversal, k):
                    setattr(config.traversal, k, v)
        config.directory_file = data.get("directory_file", "")
        config.verbose = data.get("verbose", False)
        return config


# ─── Required Graph API Permissions (Least Privilege, Read-Only) ─────────

REQUIRED_PERMISSIONS = {
    "GroupMember.Read.All": "Read memberOf for users, devices, groups and service principals",
    "Directory.Read.All": "Alternative to GroupMember.Read.All for tenants that already grant it",
}
