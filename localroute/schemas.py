# localroute/schemas.py

from __future__ import annotations

import re

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictBool, field_validator

UPSTREAM_RE = re.compile(r"^https?://[^/?#\s]+$")
SCHEME_PREFIX_RE = re.compile(r"^https?://")
VALID_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)(?!-)[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.(?!-)[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)*$"
)

# Field names as they appear in site files, for error messages.
FIELD_LABELS = {
    "domain": "network_domain",
    "network_domain": "network_domain",
    "upstream": "real_host",
    "real_host": "real_host",
    "tls_required": "force_ssl",
    "force_ssl": "force_ssl",
    "dns_override": "force_dns",
    "force_dns": "force_dns",
}


def strip_scheme(upstream: str) -> str:
    """Return ``host[:port]`` for an upstream; bare ``host:port`` values pass through."""
    return SCHEME_PREFIX_RE.sub("", upstream, count=1)


class Site(BaseModel):
    """One declared routing intent. Field order is validation order."""

    model_config = ConfigDict(frozen=True)

    domain: str = Field(validation_alias=AliasChoices("domain", "network_domain"))
    upstream: str = Field(validation_alias=AliasChoices("upstream", "real_host"))
    tls_required: StrictBool = Field(validation_alias=AliasChoices("tls_required", "force_ssl"))
    dns_override: StrictBool = Field(validation_alias=AliasChoices("dns_override", "force_dns"))

    @field_validator("domain", mode="before")
    def validate_domain(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("must be a non-empty string")
        normalized = v.strip().lower().rstrip(".")
        if not VALID_DOMAIN_RE.fullmatch(normalized):
            raise ValueError(f"{v!r} is not a valid domain name")
        return normalized

    @field_validator("upstream", mode="before")
    def validate_upstream(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("must be a non-empty string")
        candidate = v.strip()
        if not UPSTREAM_RE.fullmatch(candidate):
            raise ValueError(f"{candidate!r} must look like http(s)://host[:port] without a path")
        return candidate

    @property
    def upstream_address(self) -> str:
        return strip_scheme(self.upstream)
