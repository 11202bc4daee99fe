"""Shared test fixtures for devcontainer-templates."""

from __future__ import annotations

import io
import json
import tarfile
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

import pytest

from devcontainer_templates.cache import LAYER_MEDIA_TYPE, ArtifactCache
from devcontainer_templates.errors import RegistryNotFoundError
from devcontainer_templates.models import OciDescriptor, OciManifest
from devcontainer_templates.oci_ref import OciReference
from devcontainer_templates.registry import DEVCONTAINER_ARTIFACT_TYPE, OCI_MANIFEST, sha256_digest


def make_tar(files: dict[str, bytes]) -> bytes:
    """Build an uncompressed tar archive in memory."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def to_bytes(value: object) -> bytes:
    return json.dumps(value, indent="\t").encode("utf-8")


# ---------------------------------------------------------------------------
# In-memory registry
# ---------------------------------------------------------------------------


class FakeRegistryClient:
    """RegistryClient implementation that serves published artifacts from memory."""

    def __init__(self) -> None:
        self._manifests: dict[str, OciManifest] = {}
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.resolve_calls: list[str] = []
        self.blob_calls: list[str] = []

    def __enter__(self) -> FakeRegistryClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        pass

    def publish(
        self,
        reference: str,
        files: Optional[dict[str, bytes]] = None,
        *,
        blob: Optional[bytes] = None,
        media_type: str = LAYER_MEDIA_TYPE,
    ) -> OciManifest:
        """Publish a single-layer artifact under the given tag reference."""
        ref = OciReference.parse(reference)
        content = blob if blob is not None else make_tar(files or {})
        layer_digest = sha256_digest(content)
        self._blobs[layer_digest] = content
        manifest = OciManifest(
            media_type=OCI_MANIFEST,
            artifact_type=DEVCONTAINER_ARTIFACT_TYPE,
            layers=[OciDescriptor(media_type=media_type, digest=layer_digest, size=len(content))],
        )
        digest = sha256_digest(manifest.model_dump_json(by_alias=True).encode("utf-8"))
        manifest = manifest.model_copy(update={"digest": digest})
        self._manifests[str(ref)] = manifest
        self._manifests[str(ref.with_digest(digest))] = manifest
        return manifest

    def resolve(self, ref: OciReference, artifact_type: Optional[str] = None) -> OciManifest:
        with self._lock:
            self.resolve_calls.append(str(ref))
        try:
            return self._manifests[str(ref)]
        except KeyError:
            raise RegistryNotFoundError(ref, "not found") from None

    def fetch_blob(self, ref: OciReference, digest: str) -> Iterator[bytes]:
        with self._lock:
            self.blob_calls.append(digest)
        try:
            content = self._blobs[digest]
        except KeyError:
            raise RegistryNotFoundError(ref, f"blob {digest} not found") from None
        for i in range(0, len(content), 7):
            yield content[i : i + 7]


# ---------------------------------------------------------------------------
# Sample artifacts
# ---------------------------------------------------------------------------

BASE_TEMPLATE = "ghcr.io/devcontainers/templates/base:latest"
FOO_FEATURE = "ghcr.io/devcontainers/features/foo:1"
BAR_FEATURE = "ghcr.io/devcontainers/features/bar:1"


def base_template_files(devcontainer: Optional[str] = None) -> dict[str, bytes]:
    metadata = {
        "id": "base",
        "version": "1.0.0",
        "name": "Base",
        "type": "image",
        "fileCount": 3,
        "options": {
            "imageVariant": {
                "type": "string",
                "default": "jammy",
                "proposals": ["jammy", "focal"],
            },
            "flavor": {
                "type": "string",
                "enum": ["slim", "full"],
                "default": "slim",
            },
        },
    }
    config = devcontainer or json.dumps(
        {
            "name": "Base",
            "image": "mcr.microsoft.com/devcontainers/base:${templateOption:imageVariant}",
        },
        indent="\t",
    )
    return {
        "devcontainer-template.json": to_bytes(metadata),
        ".devcontainer/devcontainer.json": config.encode("utf-8"),
        "README.md": b"# Base\n",
    }


def feature_files(
    feature_id: str,
    options: Optional[dict] = None,
    customizations: Optional[dict] = None,
    deprecated: bool = False,
) -> dict[str, bytes]:
    metadata: dict = {
        "id": feature_id,
        "version": "1.0.0",
        "name": feature_id.title(),
        "options": options or {},
        "deprecated": deprecated,
    }
    if customizations:
        metadata["customizations"] = customizations
    return {
        "devcontainer-feature.json": to_bytes(metadata),
        "install.sh": b"#!/bin/sh\necho install\n",
    }


@pytest.fixture()
def registry() -> FakeRegistryClient:
    client = FakeRegistryClient()
    client.publish(BASE_TEMPLATE, base_template_files())
    client.publish(
        FOO_FEATURE,
        feature_files(
            "foo",
            options={"version": {"type": "string", "default": "latest", "proposals": ["latest", "1.0"]}},
            customizations={"vscode": {"extensions": ["foo.vscode-foo"], "settings": {"foo.enabled": True}}},
        ),
    )
    client.publish(
        BAR_FEATURE,
        feature_files(
            "bar",
            options={"install": {"type": "boolean", "default": "true"}},
            customizations={"vscode": {"extensions": ["bar.vscode-bar", "foo.vscode-foo"]}},
        ),
    )
    return client


@pytest.fixture()
def cache(tmp_path: Path, registry: FakeRegistryClient) -> ArtifactCache:
    return ArtifactCache(tmp_path / "artifacts", registry)


# ---------------------------------------------------------------------------
# Collection index
# ---------------------------------------------------------------------------


SAMPLE_INDEX = {
    "collections": [
        {
            "sourceInformation": {
                "name": "Development Container Features",
                "maintainer": "Dev Container Spec Maintainers",
                "contact": "https://github.com/devcontainers/features/issues",
                "repository": "https://github.com/devcontainers/features",
                "ociReference": "ghcr.io/devcontainers/features",
            },
            "features": [
                {
                    "id": "ghcr.io/devcontainers/features/node",
                    "version": "1.3.0",
                    "name": "Node.js (via nvm), yarn and pnpm",
                    "description": "Installs Node.js, nvm, yarn, pnpm, and needed dependencies.",
                    "keywords": ["javascript", "npm"],
                    "majorVersion": "1",
                    "options": {"version": {"type": "string", "default": "lts", "proposals": ["lts", "latest"]}},
                },
                {
                    "id": "ghcr.io/devcontainers/features/python",
                    "version": "1.2.0",
                    "name": "Python",
                    "description": "Installs the provided version of Python.",
                    "keywords": ["pip"],
                    "majorVersion": "1",
                },
                {
                    "id": "ghcr.io/devcontainers/features/broken",
                    "name": "Missing version",
                },
            ],
            "templates": [],
        },
        {
            "sourceInformation": {
                "name": "Development Container Templates",
                "maintainer": "Dev Container Spec Maintainers",
                "ociReference": "ghcr.io/devcontainers/templates",
            },
            "templates": [
                {
                    "id": "ghcr.io/devcontainers/templates/python",
                    "version": "3.0.0",
                    "name": "Python 3",
                    "description": "Develop Python 3 applications.",
                    "keywords": ["python"],
                    "type": "image",
                    "fileCount": 4,
                },
                {
                    "id": "ghcr.io/devcontainers/templates/javascript-node",
                    "version": "3.0.0",
                    "name": "Node.js & JavaScript",
                    "description": "Develop Node.js based applications.",
                    "type": "image",
                },
            ],
        },
        {
            "sourceInformation": {
                "name": "Old Templates",
                "maintainer": "Deprecated - no longer maintained",
                "ociReference": "ghcr.io/legacy/templates",
            },
            "templates": [
                {
                    "id": "ghcr.io/legacy/templates/python-old",
                    "version": "0.1.0",
                    "name": "Old Python",
                    "description": "Legacy python template.",
                },
            ],
        },
        {"sourceInformation": {"name": "No reference"}},
    ]
}


@pytest.fixture()
def index_file(tmp_path: Path) -> Path:
    path = tmp_path / "devcontainer-index.json"
    path.write_text(json.dumps(SAMPLE_INDEX), encoding="utf-8")
    return path
