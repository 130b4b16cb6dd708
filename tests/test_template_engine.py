"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from vpsctl.desired import BanRule, ProxyRoute, ProxySite, RateLimit, SSHHardening
from vpsctl.providers.firewall import render_jail
from vpsctl.providers.nginx import render_site
from vpsctl.templates import TemplateEngine, TemplateRenderError


def _site(**overrides: object) -> ProxySite:
    values: dict[str, object] = {
        "name": "app",
        "server_names": ("app.example.com", "www.app.example.com"),
        "routes": (
            ProxyRoute("/", "http://127.0.0.1:8080"),
            ProxyRoute("/api/", "http://127.0.0.1:9000"),
        ),
    }
    values.update(overrides)
    return ProxySite(**values)  # type: ignore[arg-type]


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "ssh/hardening.conf.j2",
        {"ssh": SSHHardening(port=2222, allow_users=("deploy", "ops"))},
    )

    assert "Port 2222" in output
    assert "PermitRootLogin no" in output
    assert "PasswordAuthentication no" in output
    assert "AllowUsers deploy ops" in output


def test_missing_variables_raise() -> None:
    """StrictUndefined turns a missing variable into a render error."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateRenderError):
        engine.render_to_string("fail2ban/jail.local.j2", {})


def test_override_directory_shadows_builtin(tmp_path: Path) -> None:
    """Templates under the override directory win over built-in ones."""
    override = tmp_path / "templates" / "fail2ban"
    override.mkdir(parents=True)
    (override / "jail.local.j2").write_text("[{{ ban.service }}]\nenabled = false\n")
    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    output = render_jail(engine, BanRule(service="sshd"))

    assert output == "[sshd]\nenabled = false\n"


def test_site_renders_routes_and_rate_limit() -> None:
    """Every route becomes a location sharing the site's rate-limit zone."""
    engine = TemplateEngine.with_overrides(None)

    output = render_site(engine, _site(rate_limit=RateLimit(rate="5r/s", burst=10)))

    assert "server_name app.example.com www.app.example.com;" in output
    assert "limit_req_zone $binary_remote_addr zone=vpsctl_app:10m rate=5r/s;" in output
    assert output.count("limit_req zone=vpsctl_app burst=10 nodelay;") == 2
    assert "proxy_pass http://127.0.0.1:9000;" in output
    assert "ssl_certificate" not in output


def test_site_with_tls_redirects_and_terminates() -> None:
    """TLS sites redirect port 80 and point at the live certificate directory."""
    engine = TemplateEngine.with_overrides(None)

    output = render_site(engine, _site(tls="app.example.com"), live_dir="/etc/le/live")

    assert "return 301 https://$host$request_uri;" in output
    assert "listen 443 ssl http2;" in output
    assert "listen [::]:443 ssl http2;" in output
    assert "http2 on;" not in output
    assert "ssl_certificate /etc/le/live/app.example.com/fullchain.pem;" in output
    assert "location /.well-known/acme-challenge/" in output
