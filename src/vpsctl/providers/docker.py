"""Container runtime provider driving the ``docker`` CLI on the host."""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from ..errors import CommandError
from ..transport import Transport


class Readiness(str, Enum):
    """Readiness verdict for a freshly started container."""

    READY = "ready"
    STARTING = "starting"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ContainerInfo:
    """Subset of ``docker inspect`` used by vpsctl."""

    name: str
    image: str
    image_id: str
    state: str
    health: str | None = None

    @property
    def running(self) -> bool:
        """Return ``True`` when the container is running."""
        return self.state == "running"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "image": self.image,
            "image_id": self.image_id,
            "state": self.state,
            "health": self.health,
        }


def parse_inspect(payload: Mapping[str, object]) -> ContainerInfo:
    """Build :class:`ContainerInfo` from one ``docker inspect`` document."""
    config = payload.get("Config") or {}
    state = payload.get("State") or {}
    health = state.get("Health") if isinstance(state, Mapping) else None
    return ContainerInfo(
        name=str(payload.get("Name", "")).lstrip("/"),
        image=str(config.get("Image", "")) if isinstance(config, Mapping) else "",
        image_id=str(payload.get("Image", "")),
        state=str(state.get("Status", "unknown")) if isinstance(state, Mapping) else "unknown",
        health=str(health.get("Status")) if isinstance(health, Mapping) else None,
    )


@dataclass(slots=True)
class DockerRuntime:
    """Pull images and manage containers through the docker CLI."""

    transport: Transport
    docker_bin: str = "docker"
    curl_bin: str = "curl"
    pull_timeout: float = 600.0
    probe_timeout: float = 5.0

    def login(self, registry: str, user: str, token: str) -> None:
        """Authenticate against ``registry``; the token travels on stdin."""
        self.transport.run(
            [self.docker_bin, "login", registry, "--username", user, "--password-stdin"],
            input=token,
        )

    def logout(self, registry: str) -> None:
        """Drop stored credentials for ``registry``."""
        self.transport.run([self.docker_bin, "logout", registry], check=False)

    def pull(self, image: str) -> None:
        """Pull ``image``."""
        self.transport.run([self.docker_bin, "pull", image], timeout=self.pull_timeout)

    def inspect(self, name: str) -> ContainerInfo | None:
        """Return details about container ``name`` or ``None`` when absent."""
        result = self.transport.run(
            [self.docker_bin, "inspect", "--type", "container", name], check=False
        )
        if not result.ok:
            return None
        documents = json.loads(result.stdout or "[]")
        if not documents:
            return None
        return parse_inspect(documents[0])

    def list(self, prefix: str) -> list[ContainerInfo]:
        """Return the containers whose names start with ``prefix``."""
        result = self.transport.run(
            [
                self.docker_bin,
                "ps",
                "--all",
                "--filter",
                f"name=^{prefix}",
                "--format",
                "{{.Names}}",
            ]
        )
        containers = []
        for name in sorted(result.stdout.split()):
            info = self.inspect(name)
            if info is not None:
                containers.append(info)
        return containers

    def run(
        self,
        name: str,
        image: str,
        *,
        binding: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Start a detached container ``name`` from ``image``."""
        args = [self.docker_bin, "run", "--detach", "--name", name, "--restart", "unless-stopped"]
        if binding:
            args.extend(["--publish", binding])
        for key, value in sorted((env or {}).items()):
            args.extend(["--env", f"{key}={value}"])
        args.append(image)
        self.transport.run(args)

    def stop(self, name: str) -> None:
        """Stop container ``name``."""
        self.transport.run([self.docker_bin, "stop", name])

    def start(self, name: str) -> None:
        """Start the existing container ``name``."""
        self.transport.run([self.docker_bin, "start", name])

    def rename(self, name: str, new_name: str) -> None:
        """Rename container ``name`` to ``new_name``."""
        self.transport.run([self.docker_bin, "rename", name, new_name])

    def remove(self, name: str) -> None:
        """Force-remove container ``name``."""
        self.transport.run([self.docker_bin, "rm", "--force", name])

    def readiness(self, name: str, health_url: str | None = None) -> Readiness:
        """Return whether container ``name`` is ready to serve traffic.

        With ``health_url`` the endpoint is fetched from the host with curl;
        otherwise the container's own health status decides. A container
        without a health check is ready as soon as it is running.
        """
        info = self.inspect(name)
        if info is None or info.state in {"exited", "dead"}:
            return Readiness.FAILED
        if info.health == "unhealthy":
            return Readiness.FAILED
        if health_url:
            try:
                self.transport.run(
                    [
                        self.curl_bin,
                        "--fail",
                        "--silent",
                        "--max-time",
                        str(int(self.probe_timeout)),
                        "--output",
                        "/dev/null",
                        health_url,
                    ],
                    timeout=self.probe_timeout + 5,
                )
            except CommandError:
                return Readiness.STARTING
            return Readiness.READY
        if info.health in {None, "healthy"} and info.running:
            return Readiness.READY
        return Readiness.STARTING


__all__ = ["ContainerInfo", "DockerRuntime", "Readiness", "parse_inspect"]
