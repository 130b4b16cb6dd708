"""Render generated configuration for a desired state."""
from __future__ import annotations

from dataclasses import dataclass

from ..desired import SSHD_DROPIN_PATH, BanRule, DesiredHostState, ManagedFile, ProxySite
from ..providers.firewall import render_jail
from ..providers.nginx import render_site
from ..templates import TemplateEngine


@dataclass(frozen=True, slots=True)
class ConfigRenderer:
    """Produce the exact text the host should hold for generated resources."""

    templates: TemplateEngine
    live_dir: str = "/etc/letsencrypt/live"
    acme_webroot: str = "/var/www/html"

    def site(self, site: ProxySite) -> str:
        """Return the nginx configuration for ``site``."""
        return render_site(
            self.templates, site, live_dir=self.live_dir, acme_webroot=self.acme_webroot
        )

    def jail(self, ban: BanRule) -> str:
        """Return the fail2ban drop-in for ``ban``."""
        return render_jail(self.templates, ban)

    def managed_files(self, desired: DesiredHostState) -> tuple[ManagedFile, ...]:
        """Return the declared files plus the generated sshd drop-in."""
        files = list(desired.files)
        if desired.ssh is not None:
            content = self.templates.render_to_string("ssh/hardening.conf.j2", {"ssh": desired.ssh})
            files.append(
                ManagedFile(
                    path=SSHD_DROPIN_PATH,
                    content=content,
                    mode=0o644,
                    notify=("ssh",),
                )
            )
        return tuple(files)


__all__ = ["ConfigRenderer"]
