from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from localroute.errors import ConfigWriteError
from localroute.schemas import Site, strip_scheme
from localroute.utils.files import stage_file


logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parents[1] / "templates"
PROXY_TEMPLATE = "nginx/nginx.conf.j2"
RESOLVER_TEMPLATE = "dnsmasq/dnsmasq.conf.j2"
DEFAULT_LOCAL_ADDRESS = "172.20.0.2"
DEFAULT_FALLBACK_RESOLVERS = ("1.1.1.1", "8.8.8.8")
DEFAULT_CACHE_SIZE = 1000
DEFAULT_PROXY_CERT_DIR = "/etc/nginx/ssl"


@dataclass(frozen=True, slots=True)
class RenderedConfig:
    proxy_config: str
    resolver_config: str


class ConfigRenderer:
    def __init__(
        self,
        local_address: str = DEFAULT_LOCAL_ADDRESS,
        proxy_cert_dir: str = DEFAULT_PROXY_CERT_DIR,
        fallback_resolvers: Sequence[str] = DEFAULT_FALLBACK_RESOLVERS,
        cache_size: int = DEFAULT_CACHE_SIZE,
        template_dir: str | Path | None = None,
    ) -> None:
        self.local_address = local_address
        self.proxy_cert_dir = proxy_cert_dir.rstrip("/")
        self.fallback_resolvers = tuple(fallback_resolvers)
        self.cache_size = cache_size
        self.template_dir = Path(template_dir or DEFAULT_TEMPLATE_DIR)

        self._jinja = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )

    def certificate_paths(self, domain: str) -> tuple[str, str]:
        return f"{self.proxy_cert_dir}/{domain}.crt", f"{self.proxy_cert_dir}/{domain}.key"

    def _site_context(self, site: Site) -> dict[str, object]:
        cert_path, key_path = self.certificate_paths(site.domain)
        return {
            "domain": site.domain,
            "upstream_address": strip_scheme(site.upstream),
            "tls_required": site.tls_required,
            "cert_path": cert_path,
            "key_path": key_path,
        }

    def render_proxy_config(self, sites: Sequence[Site]) -> str:
        template = self._jinja.get_template(PROXY_TEMPLATE)
        rendered = template.render(sites=[self._site_context(site) for site in sites])
        return rendered.strip() + "\n"

    def render_resolver_config(self, sites: Sequence[Site]) -> str:
        template = self._jinja.get_template(RESOLVER_TEMPLATE)
        rendered = template.render(
            local_address=self.local_address,
            fallback_resolvers=self.fallback_resolvers,
            cache_size=self.cache_size,
            overrides=[{"domain": site.domain} for site in sites if site.dns_override],
        )
        return rendered.strip() + "\n"

    def render(self, sites: Sequence[Site]) -> RenderedConfig:
        return RenderedConfig(
            proxy_config=self.render_proxy_config(sites),
            resolver_config=self.render_resolver_config(sites),
        )


def _stage_and_verify(path: Path, content: str, staged: list[Path]) -> Path:
    payload = content.encode("utf-8")
    try:
        temp_path = stage_file(path, payload, 0o644)
        staged.append(temp_path)
        written = temp_path.read_bytes()
    except OSError as exc:
        raise ConfigWriteError(f"Failed to write {path}: {exc}", entity=str(path)) from exc

    if written != payload:
        raise ConfigWriteError(
            f"Verification of {path} failed: expected {len(payload)} bytes but read {len(written)}.",
            entity=str(path),
        )
    return temp_path


def write_config_files(rendered: RenderedConfig, proxy_path: str | Path, resolver_path: str | Path) -> list[Path]:
    """Stage and verify both configs before replacing either target."""
    targets = [(Path(proxy_path), rendered.proxy_config), (Path(resolver_path), rendered.resolver_config)]
    staged: list[Path] = []
    try:
        pending = [(path, _stage_and_verify(path, content, staged)) for path, content in targets]
        for path, temp_path in pending:
            try:
                os.replace(temp_path, path)
            except OSError as exc:
                raise ConfigWriteError(f"Failed to write {path}: {exc}", entity=str(path)) from exc
            logger.info("Wrote %s", path)
    finally:
        for temp_path in staged:
            temp_path.unlink(missing_ok=True)
    return [path for path, _ in targets]


def remove_config_files(*paths: str | Path) -> list[Path]:
    removed: list[Path] = []
    for raw_path in paths:
        path = Path(raw_path)
        if path.exists():
            path.unlink()
            removed.append(path)
            logger.info("Removed %s", path)
    return removed
