import re

import pytest

from localroute.errors import ConfigWriteError
from localroute.schemas import Site, strip_scheme
from localroute.services.config_renderer import (
    ConfigRenderer,
    RenderedConfig,
    remove_config_files,
    write_config_files,
)


SERVER_BLOCK_RE = re.compile(r"\n  server \{\n(.*?)\n  \}", re.S)


def _site(**overrides) -> Site:
    base = {
        "domain": "app.local",
        "upstream": "http://127.0.0.1:8080",
        "tls_required": False,
        "dns_override": True,
    }
    base.update(overrides)
    return Site(**base)


def _server_blocks(proxy_config: str) -> list[str]:
    return SERVER_BLOCK_RE.findall(proxy_config)


def _blocks_for(proxy_config: str, domain: str) -> list[str]:
    return [block for block in _server_blocks(proxy_config) if f"server_name {domain};" in block]


def _override_lines(resolver_config: str) -> list[str]:
    return [line for line in resolver_config.splitlines() if line.startswith("address=/") and not line.startswith("address=/.local/")]


def test_render_is_deterministic() -> None:
    renderer = ConfigRenderer()
    sites = [_site(), _site(domain="api.local", upstream="https://10.0.0.2:8443", tls_required=True)]

    assert renderer.render(sites) == renderer.render(list(sites))


def test_default_catch_all_block_is_always_present() -> None:
    rendered = ConfigRenderer().render([])
    blocks = _server_blocks(rendered.proxy_config)

    assert len(blocks) == 1
    assert "listen 80 default_server;" in blocks[0]
    assert "server_name _;" in blocks[0]
    assert "return 404;" in blocks[0]


def test_plain_site_gets_single_port_80_proxy_block() -> None:
    rendered = ConfigRenderer().render([_site()])
    blocks = _blocks_for(rendered.proxy_config, "app.local")

    assert len(blocks) == 1
    block = blocks[0]
    assert "listen 80;" in block
    assert "proxy_pass http://127.0.0.1:8080;" in block
    assert "proxy_set_header Host $host;" in block
    assert "proxy_set_header X-Real-IP $remote_addr;" in block
    assert "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;" in block
    assert "proxy_set_header X-Forwarded-Proto $scheme;" in block
    assert "return 301" not in block
    assert "listen 443" not in rendered.proxy_config


def test_tls_site_gets_redirect_and_tls_blocks() -> None:
    renderer = ConfigRenderer(proxy_cert_dir="/etc/nginx/ssl/")
    rendered = renderer.render([_site(tls_required=True)])
    blocks = _blocks_for(rendered.proxy_config, "app.local")

    assert len(blocks) == 2
    redirect, tls = blocks
    assert "listen 80;" in redirect
    assert "return 301 https://$server_name$request_uri;" in redirect
    assert "proxy_pass" not in redirect

    assert "listen 443 ssl;" in tls
    assert "ssl_certificate /etc/nginx/ssl/app.local.crt;" in tls
    assert "ssl_certificate_key /etc/nginx/ssl/app.local.key;" in tls
    assert "proxy_pass http://127.0.0.1:8080;" in tls


def test_sites_render_in_supplied_order() -> None:
    sites = [_site(domain="zeta.local"), _site(domain="alpha.local"), _site(domain="mid.local")]
    proxy_config = ConfigRenderer().render(sites).proxy_config

    positions = [proxy_config.index(f"server_name {site.domain};") for site in sites]
    assert positions == sorted(positions)


def test_mixed_sites_keep_their_block_shapes() -> None:
    sites = [
        _site(domain="a.local", tls_required=True),
        _site(domain="b.local", tls_required=False),
        _site(domain="c.local", tls_required=True),
    ]
    proxy_config = ConfigRenderer().render(sites).proxy_config

    for site in sites:
        blocks = _blocks_for(proxy_config, site.domain)
        listens_443 = [block for block in blocks if "listen 443 ssl;" in block]
        if site.tls_required:
            assert len(blocks) == 2
            assert len(listens_443) == 1
        else:
            assert len(blocks) == 1
            assert not listens_443


@pytest.mark.parametrize(
    "upstream,expected",
    [
        ("http://127.0.0.1:8080", "127.0.0.1:8080"),
        ("https://backend.internal:8443", "backend.internal:8443"),
        ("http://backend", "backend"),
        ("127.0.0.1:8080", "127.0.0.1:8080"),
        ("backend.http.internal:80", "backend.http.internal:80"),
    ],
)
def test_strip_scheme_only_removes_the_prefix(upstream: str, expected: str) -> None:
    assert strip_scheme(upstream) == expected


def test_resolver_preamble() -> None:
    resolver_config = ConfigRenderer(local_address="172.20.0.2").render([]).resolver_config

    assert "no-resolv" in resolver_config
    assert "server=1.1.1.1" in resolver_config
    assert "server=8.8.8.8" in resolver_config
    assert "cache-size=1000" in resolver_config
    assert "local=/local/" in resolver_config
    assert "address=/.local/172.20.0.2" in resolver_config
    assert _override_lines(resolver_config) == []


def test_resolver_overrides_only_dns_sites() -> None:
    sites = [
        _site(domain="a.local", dns_override=True),
        _site(domain="b.local", dns_override=False),
        _site(domain="c.local", dns_override=True),
    ]
    resolver_config = ConfigRenderer(local_address="172.20.0.2").render(sites).resolver_config

    assert _override_lines(resolver_config) == [
        "address=/a.local/172.20.0.2",
        "address=/c.local/172.20.0.2",
    ]


def test_resolver_uses_configured_fallbacks_and_cache() -> None:
    renderer = ConfigRenderer(local_address="10.1.0.2", fallback_resolvers=["9.9.9.9"], cache_size=250)
    resolver_config = renderer.render([_site()]).resolver_config

    assert "server=9.9.9.9" in resolver_config
    assert "server=1.1.1.1" not in resolver_config
    assert "cache-size=250" in resolver_config
    assert "address=/app.local/10.1.0.2" in resolver_config


def test_scenario_plain_site_with_dns_override() -> None:
    rendered = ConfigRenderer(local_address="172.20.0.2").render([_site()])

    assert "address=/app.local/172.20.0.2" in rendered.resolver_config
    blocks = _blocks_for(rendered.proxy_config, "app.local")
    assert len(blocks) == 1
    assert "proxy_pass http://127.0.0.1:8080;" in blocks[0]
    assert "listen 443" not in rendered.proxy_config


def test_write_config_files_writes_and_verifies(tmp_path) -> None:
    rendered = ConfigRenderer().render([_site()])
    proxy_path = tmp_path / "docker" / "nginx" / "nginx.conf"
    resolver_path = tmp_path / "docker" / "dnsmasq" / "dnsmasq.conf"

    written = write_config_files(rendered, proxy_path, resolver_path)

    assert written == [proxy_path, resolver_path]
    assert proxy_path.read_text(encoding="utf-8") == rendered.proxy_config
    assert resolver_path.read_text(encoding="utf-8") == rendered.resolver_config
    assert list(proxy_path.parent.glob(".nginx.conf.*")) == []


def test_write_config_files_wraps_os_errors(tmp_path) -> None:
    blocker = tmp_path / "docker"
    blocker.write_text("not a directory", encoding="utf-8")
    rendered = RenderedConfig(proxy_config="a\n", resolver_config="b\n")

    with pytest.raises(ConfigWriteError) as exc_info:
        write_config_files(rendered, blocker / "nginx" / "nginx.conf", tmp_path / "dnsmasq.conf")

    assert "nginx.conf" in exc_info.value.entity


def test_remove_config_files_ignores_missing(tmp_path) -> None:
    present = tmp_path / "nginx.conf"
    present.write_text("x", encoding="utf-8")

    removed = remove_config_files(present, tmp_path / "dnsmasq.conf")

    assert removed == [present]
    assert not present.exists()


def test_failed_resolver_write_leaves_proxy_config_untouched(tmp_path) -> None:
    proxy_path = tmp_path / "nginx" / "nginx.conf"
    proxy_path.parent.mkdir()
    proxy_path.write_text("previous proxy\n", encoding="utf-8")
    blocker = tmp_path / "dnsmasq"
    blocker.write_text("not a directory", encoding="utf-8")
    rendered = RenderedConfig(proxy_config="new proxy\n", resolver_config="new resolver\n")

    with pytest.raises(ConfigWriteError) as exc_info:
        write_config_files(rendered, proxy_path, blocker / "dnsmasq.conf")

    assert "dnsmasq.conf" in exc_info.value.entity
    assert proxy_path.read_text(encoding="utf-8") == "previous proxy\n"
    assert sorted(p.name for p in proxy_path.parent.iterdir()) == ["nginx.conf"]
