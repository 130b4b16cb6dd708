"""Provider implementations that act on a managed host."""
from __future__ import annotations

from dataclasses import dataclass

from ..config import AppConfig
from ..templates import TemplateEngine
from ..transport import Transport
from .certbot import CertbotClient, CertificateInfo
from .docker import ContainerInfo, DockerRuntime, Readiness
from .files import FileState, FilesProvider
from .firewall import Fail2banJails, FirewallStatus, UfwFirewall
from .nginx import ProxyReload, ProxyValidation, ReverseProxyConfigurator
from .packages import PackagesProvider
from .systemd import SystemdError, SystemdProvider, UnitState
from .users import UserInfo, UsersProvider


@dataclass(slots=True)
class HostProviders:
    """Every provider bound to one host transport."""

    transport: Transport
    packages: PackagesProvider
    users: UsersProvider
    firewall: UfwFirewall
    jails: Fail2banJails
    files: FilesProvider
    services: SystemdProvider
    certificates: CertbotClient
    proxy: ReverseProxyConfigurator
    containers: DockerRuntime

    @property
    def host(self) -> str:
        """Return the host these providers act on."""
        return self.transport.host

    @classmethod
    def for_transport(
        cls,
        transport: Transport,
        config: AppConfig,
        templates: TemplateEngine,
    ) -> HostProviders:
        """Wire the default providers for ``transport`` using ``config``."""
        files = FilesProvider(transport)
        return cls(
            transport=transport,
            packages=PackagesProvider(transport),
            users=UsersProvider(transport, files),
            firewall=UfwFirewall(transport),
            jails=Fail2banJails(transport, files),
            files=files,
            services=SystemdProvider(transport),
            certificates=CertbotClient(
                transport,
                files,
                live_dir=str(config.tls.live_dir),
                certbot_bin=config.tls.certbot_bin,
            ),
            proxy=ReverseProxyConfigurator(
                transport,
                files,
                templates,
                sites_available=str(config.nginx.sites_available),
                sites_enabled=str(config.nginx.sites_enabled),
                staging_dir=str(config.nginx.staging_dir),
                mime_types=str(config.nginx.mime_types),
                live_dir=str(config.tls.live_dir),
                nginx_bin=config.nginx.bin,
            ),
            containers=DockerRuntime(transport, docker_bin=config.containers.docker_bin),
        )


__all__ = [
    "CertbotClient",
    "CertificateInfo",
    "ContainerInfo",
    "DockerRuntime",
    "Fail2banJails",
    "FileState",
    "FilesProvider",
    "FirewallStatus",
    "HostProviders",
    "PackagesProvider",
    "ProxyReload",
    "ProxyValidation",
    "Readiness",
    "ReverseProxyConfigurator",
    "SystemdError",
    "SystemdProvider",
    "UfwFirewall",
    "UnitState",
    "UserInfo",
    "UsersProvider",
]
