"""Reverse proxy configurator for nginx sites.

Sites are rendered from templates, staged and syntax-checked in isolation
(``nginx -t -c <wrapper>``), then promoted into ``sites-available`` and
activated with a graceful ``nginx -s reload``. The live configuration is never
modified by validation, and a promotion that fails the full ``nginx -t`` is
rolled back to the previous file.
"""
from __future__ import annotations

import posixpath
import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..desired import ProxySite
from ..errors import ProxyConfigSyntaxError
from ..templates import TemplateEngine
from ..transport import CommandResult, Transport
from .files import FilesProvider, content_digest

_ZONE_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


def render_site(
    templates: TemplateEngine,
    site: ProxySite,
    *,
    live_dir: str = "/etc/letsencrypt/live",
    acme_webroot: str = "/var/www/html",
) -> str:
    """Render the nginx configuration text for ``site``."""
    context = {
        "site": site,
        "zone": f"vpsctl_{_ZONE_UNSAFE.sub('_', site.name)}",
        "cert_dir": posixpath.join(live_dir, site.tls) if site.tls else None,
        "acme_webroot": acme_webroot,
    }
    return templates.render_to_string("nginx/site.conf.j2", context)


@dataclass(frozen=True, slots=True)
class ProxyValidation:
    """Outcome of validating a rendered site."""

    site: str
    valid: bool
    digest: str
    staged_path: str
    output: str = ""


@dataclass(frozen=True, slots=True)
class ProxyReload:
    """Outcome of promoting a validated site."""

    site: str
    changed: bool
    digest: str


@dataclass(slots=True)
class ReverseProxyConfigurator:
    """Render, validate and activate nginx site configurations on a host."""

    transport: Transport
    files: FilesProvider
    templates: TemplateEngine
    sites_available: str = "/etc/nginx/sites-available"
    sites_enabled: str = "/etc/nginx/sites-enabled"
    staging_dir: str = "/etc/nginx/vpsctl-staging"
    mime_types: str = "/etc/nginx/mime.types"
    live_dir: str = "/etc/letsencrypt/live"
    acme_webroot: str = "/var/www/html"
    nginx_bin: str = "nginx"
    _validated: dict[str, str] = field(default_factory=dict, init=False)

    def site_filename(self, site_name: str) -> str:
        """Return the canonical configuration filename for ``site_name``."""
        return f"vpsctl-{site_name}.conf"

    def live_path(self, site_name: str) -> str:
        """Return the ``sites-available`` path for ``site_name``."""
        return posixpath.join(self.sites_available, self.site_filename(site_name))

    def enabled_path(self, site_name: str) -> str:
        """Return the ``sites-enabled`` symlink path for ``site_name``."""
        return posixpath.join(self.sites_enabled, self.site_filename(site_name))

    def staged_path(self, site_name: str) -> str:
        """Return the staging path for ``site_name``."""
        return posixpath.join(self.staging_dir, self.site_filename(site_name))

    def render(self, site: ProxySite) -> str:
        """Render the configuration text for ``site``."""
        return render_site(
            self.templates, site, live_dir=self.live_dir, acme_webroot=self.acme_webroot
        )

    def live_digest(self, site_name: str) -> str | None:
        """Return the digest of the live configuration, if any."""
        state = self.files.stat(self.live_path(site_name))
        return state.sha256 if state else None

    def validate(self, site_name: str, text: str) -> ProxyValidation:
        """Syntax-check ``text`` in the staging area without touching live config."""
        staged = self.staged_path(site_name)
        wrapper = posixpath.join(self.staging_dir, f"{self.site_filename(site_name)}.check")
        wrapper_text = self.templates.render_to_string(
            "nginx/validate.conf.j2",
            {
                "pid_path": posixpath.join(self.staging_dir, "nginx-check.pid"),
                "mime_types": self.mime_types,
                "site_path": staged,
            },
        )
        digest = content_digest(text)
        self._validated.pop(site_name, None)
        self.files.write(staged, text, mode=0o640)
        self.files.write(wrapper, wrapper_text, mode=0o640)
        result = self._run_nginx(["-t", "-c", wrapper])
        output = (result.stderr or result.stdout).strip()
        if not result.ok:
            return ProxyValidation(
                site=site_name, valid=False, digest=digest, staged_path=staged, output=output
            )
        self._validated[site_name] = digest
        return ProxyValidation(
            site=site_name, valid=True, digest=digest, staged_path=staged, output=output
        )

    def reload(self, site_name: str, text: str) -> ProxyReload:
        """Promote previously validated ``text`` and gracefully reload nginx."""
        digest = content_digest(text)
        live = self.live_path(site_name)
        enabled = self.enabled_path(site_name)
        if self.live_digest(site_name) == digest:
            self.files.link(live, enabled)
            return ProxyReload(site=site_name, changed=False, digest=digest)
        if self._validated.get(site_name) != digest:
            raise ProxyConfigSyntaxError(
                f"Refusing to activate unvalidated configuration for site '{site_name}'.",
                host=self.transport.host,
                resource=live,
            )

        previous = self.files.read(live)
        self.transport.run(["mkdir", "-p", self.sites_available])
        self.files.move(self.staged_path(site_name), live)
        self.files.link(live, enabled)
        result = self._run_nginx(["-t"])
        if not result.ok:
            if previous is None:
                self.files.remove(enabled)
                self.files.remove(live)
            else:
                self.files.write(live, previous, mode=0o640)
            self._validated.pop(site_name, None)
            detail = (result.stderr or result.stdout).strip() or "nginx -t failed"
            raise ProxyConfigSyntaxError(
                f"nginx rejected site '{site_name}'; previous configuration restored: {detail}",
                host=self.transport.host,
                resource=live,
            )
        reload_result = self._run_nginx(["-s", "reload"])
        if not reload_result.ok:
            detail = (reload_result.stderr or reload_result.stdout).strip() or "no output"
            raise ProxyConfigSyntaxError(
                f"nginx reload failed for site '{site_name}': {detail}",
                host=self.transport.host,
                resource=live,
            )
        self._validated.pop(site_name, None)
        return ProxyReload(site=site_name, changed=True, digest=digest)

    def apply(self, site: ProxySite) -> ProxyReload:
        """Render, validate and activate ``site`` in one step."""
        text = self.render(site)
        if self.live_digest(site.name) == content_digest(text):
            return ProxyReload(site=site.name, changed=False, digest=content_digest(text))
        validation = self.validate(site.name, text)
        if not validation.valid:
            raise ProxyConfigSyntaxError(
                f"Rendered configuration for site '{site.name}' is invalid: {validation.output}",
                host=self.transport.host,
                resource=validation.staged_path,
            )
        return self.reload(site.name, text)

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> CommandResult:
        return self.transport.run([self.nginx_bin, *args], check=False)


__all__ = ["ProxyReload", "ProxyValidation", "ReverseProxyConfigurator", "render_site"]
