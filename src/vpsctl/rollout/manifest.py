"""Deployment manifests: the CI-supplied list of content-addressed images.

A manifest is accepted as YAML or JSON::

    version: "2024.06.01-3"
    services:
      - name: backend
        image: registry.example.com/app/backend@sha256:<64 hex>
        binding: "127.0.0.1:8080:8080"
        health_url: http://127.0.0.1:8080/healthz
        env: {LOG_LEVEL: info}

CI events may use ``manifestVersion`` and an ``imageReferences`` mapping of
service name to image instead.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from ..errors import ManifestError

IMAGE_PATTERN = re.compile(r"^[^@\s]+@sha256:[0-9a-f]{64}$")
_SERVICE_NAME = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")
_SERVICE_KEYS = {"name", "image", "binding", "health_url", "env"}


@dataclass(frozen=True)
class ServiceRelease:
    """Target image and runtime settings for one service."""

    name: str
    image: str
    binding: str | None = None
    health_url: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation without environment values."""
        return {
            "name": self.name,
            "image": self.image,
            "binding": self.binding,
            "health_url": self.health_url,
            "env": sorted(self.env),
        }


@dataclass(frozen=True)
class DeploymentManifest:
    """An ordered set of service releases identified by ``version``."""

    version: str
    services: tuple[ServiceRelease, ...]

    def __post_init__(self) -> None:
        """Validate the manifest."""
        if not self.version:
            raise ManifestError("Manifest version must not be empty.")
        if not self.services:
            raise ManifestError(f"Manifest {self.version} lists no services.")
        seen: set[str] = set()
        for release in self.services:
            if not _SERVICE_NAME.match(release.name):
                raise ManifestError(
                    f"Invalid service name {release.name!r}.", resource=release.name
                )
            if release.name in seen:
                raise ManifestError(f"Duplicate service '{release.name}'.", resource=release.name)
            seen.add(release.name)
            if not IMAGE_PATTERN.match(release.image):
                raise ManifestError(
                    f"Image for '{release.name}' is not content-addressed "
                    f"(expected repo@sha256:<digest>): {release.image}",
                    resource=release.name,
                )

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "version": self.version,
            "services": [release.to_dict() for release in self.services],
        }


def load_manifest(path: Path) -> DeploymentManifest:
    """Read and validate the manifest at ``path``."""
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ManifestError(f"Cannot read manifest {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ManifestError(f"Invalid YAML in manifest {path}: {exc}") from exc
    return parse_manifest(raw)


def parse_manifest(raw: object) -> DeploymentManifest:
    """Build a :class:`DeploymentManifest` from decoded YAML/JSON data."""
    if not isinstance(raw, Mapping):
        raise ManifestError("Manifest must be a mapping.")
    version = raw.get("version", raw.get("manifestVersion"))
    if version is None or isinstance(version, (Mapping, list)):
        raise ManifestError("Manifest must declare a scalar 'version'.")

    if "services" in raw:
        entries = raw["services"]
        if not isinstance(entries, list):
            raise ManifestError("'services' must be a list.")
        services = tuple(_parse_release(entry) for entry in entries)
    elif "imageReferences" in raw:
        references = raw["imageReferences"]
        if not isinstance(references, Mapping):
            raise ManifestError("'imageReferences' must map service names to images.")
        services = tuple(
            _parse_release({"name": name, "image": image}) for name, image in references.items()
        )
    else:
        raise ManifestError("Manifest must declare 'services'.")
    return DeploymentManifest(version=str(version), services=services)


def _parse_release(entry: object) -> ServiceRelease:
    if not isinstance(entry, Mapping):
        raise ManifestError("Each service entry must be a mapping.")
    unknown = set(entry) - _SERVICE_KEYS
    if unknown:
        raise ManifestError(f"Unknown service keys: {', '.join(sorted(map(str, unknown)))}.")
    name = entry.get("name")
    image = entry.get("image")
    if not isinstance(name, str) or not isinstance(image, str):
        raise ManifestError("Service entries need string 'name' and 'image'.")
    env = entry.get("env") or {}
    if not isinstance(env, Mapping):
        raise ManifestError(f"'env' for '{name}' must be a mapping.", resource=name)
    binding = entry.get("binding")
    health_url = entry.get("health_url")
    return ServiceRelease(
        name=name,
        image=image.strip(),
        binding=str(binding) if binding is not None else None,
        health_url=str(health_url) if health_url is not None else None,
        env={str(key): str(value) for key, value in env.items()},
    )


__all__ = [
    "DeploymentManifest",
    "IMAGE_PATTERN",
    "ServiceRelease",
    "load_manifest",
    "parse_manifest",
]
