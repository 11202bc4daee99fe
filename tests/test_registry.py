"""Tests for the HTTP registry client."""

import json

import httpx
import pytest

from devcontainer_templates.auth import DockerCredentials, RegistryAuth, parse_challenge
from devcontainer_templates.errors import (
    RegistryError,
    RegistryNotFoundError,
    RegistryTransportError,
    RegistryUnauthorizedError,
)
from devcontainer_templates.models import OciIndex
from devcontainer_templates.oci_ref import OciReference
from devcontainer_templates.registry import (
    DEVCONTAINER_ARTIFACT_TYPE,
    OCI_INDEX,
    OCI_MANIFEST,
    HttpRegistryClient,
    select_manifest,
    sha256_digest,
)

REF = OciReference.parse("ghcr.io/devcontainers/features/node:1")
LAYER = b"layer-content"


def manifest_body() -> bytes:
    return json.dumps(
        {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST,
            "artifactType": DEVCONTAINER_ARTIFACT_TYPE,
            "layers": [
                {
                    "mediaType": "application/vnd.devcontainers.layer.v1+tar",
                    "digest": sha256_digest(LAYER),
                    "size": len(LAYER),
                }
            ],
        }
    ).encode()


def make_client(handler, **kwargs) -> HttpRegistryClient:
    kwargs.setdefault("auth", RegistryAuth(DockerCredentials()))
    kwargs.setdefault("backoff", 0)
    return HttpRegistryClient(transport=httpx.MockTransport(handler), **kwargs)


class TestResolve:
    """Test HttpRegistryClient.resolve."""

    def test_resolve_manifest(self):
        """Test resolving a tag to an image manifest."""
        body = manifest_body()
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, content=body, headers={"Content-Type": OCI_MANIFEST})

        with make_client(handler) as client:
            manifest = client.resolve(REF)

        assert manifest.digest == sha256_digest(body)
        assert manifest.layers[0].digest == sha256_digest(LAYER)
        assert requests[0].url.path == "/v2/devcontainers/features/node/manifests/1"
        assert OCI_MANIFEST in requests[0].headers["Accept"]

    def test_docker_content_digest_header(self):
        """Test that the Docker-Content-Digest header is preferred."""
        digest = "sha256:" + "b" * 64

        def handler(request):
            return httpx.Response(200, content=manifest_body(), headers={"Docker-Content-Digest": digest})

        with make_client(handler) as client:
            assert client.resolve(REF).digest == digest

    def test_manifest_list_selects_artifact_type(self):
        """Test that a manifest list resolves to the entry with the matching artifactType."""
        body = manifest_body()
        digest = sha256_digest(body)
        other = "sha256:" + "c" * 64
        index = json.dumps(
            {
                "schemaVersion": 2,
                "mediaType": OCI_INDEX,
                "manifests": [
                    {"mediaType": OCI_MANIFEST, "digest": other, "size": 1},
                    {
                        "mediaType": OCI_MANIFEST,
                        "digest": digest,
                        "size": len(body),
                        "artifactType": DEVCONTAINER_ARTIFACT_TYPE,
                    },
                ],
            }
        ).encode()

        def handler(request):
            if request.url.path.endswith("/manifests/1"):
                return httpx.Response(200, content=index)
            if request.url.path.endswith(f"/manifests/{digest}"):
                return httpx.Response(200, content=body)
            return httpx.Response(404)

        with make_client(handler) as client:
            manifest = client.resolve(REF, DEVCONTAINER_ARTIFACT_TYPE)

        assert manifest.digest == digest

    def test_digest_mismatch(self):
        """Test that a digest reference whose body does not match is rejected."""
        ref = REF.with_digest("sha256:" + "d" * 64)

        def handler(request):
            return httpx.Response(200, content=manifest_body())

        with make_client(handler) as client:
            with pytest.raises(RegistryTransportError):
                client.resolve(ref)

    def test_not_found(self):
        """Test that 404 raises RegistryNotFoundError without retrying."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        with make_client(handler) as client:
            with pytest.raises(RegistryNotFoundError) as exc_info:
                client.resolve(REF)

        assert len(calls) == 1
        assert exc_info.value.exit_code == 4

    def test_forbidden(self):
        """Test that 403 raises RegistryUnauthorizedError."""
        with make_client(lambda request: httpx.Response(403)) as client:
            with pytest.raises(RegistryUnauthorizedError):
                client.resolve(REF)

    def test_unexpected_client_error(self):
        """Test that other 4xx responses raise RegistryError."""
        with make_client(lambda request: httpx.Response(418)) as client:
            with pytest.raises(RegistryError):
                client.resolve(REF)

    def test_invalid_json(self):
        """Test that a non-JSON manifest raises RegistryError."""
        with make_client(lambda request: httpx.Response(200, content=b"<html>")) as client:
            with pytest.raises(RegistryError):
                client.resolve(REF)


class TestRetry:
    """Test retry behaviour."""

    def test_retries_server_errors(self):
        """Test that 5xx responses are retried until success."""
        responses = [httpx.Response(503), httpx.Response(502), httpx.Response(200, content=manifest_body())]

        def handler(request):
            return responses.pop(0)

        with make_client(handler, max_retries=3) as client:
            manifest = client.resolve(REF)

        assert manifest.layers
        assert responses == []

    def test_retries_transport_errors(self):
        """Test that connection errors are retried."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, content=manifest_body())

        with make_client(handler) as client:
            client.resolve(REF)

        assert len(calls) == 2

    def test_gives_up_after_max_retries(self):
        """Test that persistent failures raise RegistryTransportError."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        with make_client(handler, max_retries=2) as client:
            with pytest.raises(RegistryTransportError):
                client.resolve(REF)

        assert len(calls) == 3


class TestFetchBlob:
    """Test HttpRegistryClient.fetch_blob."""

    def test_fetch_blob(self):
        """Test streaming a blob."""
        digest = sha256_digest(LAYER)

        def handler(request):
            assert request.url.path == f"/v2/devcontainers/features/node/blobs/{digest}"
            return httpx.Response(200, content=LAYER)

        with make_client(handler) as client:
            assert b"".join(client.fetch_blob(REF, digest)) == LAYER

    def test_fetch_missing_blob(self):
        """Test that a missing blob raises RegistryNotFoundError."""
        with make_client(lambda request: httpx.Response(404)) as client:
            with pytest.raises(RegistryNotFoundError):
                b"".join(client.fetch_blob(REF, sha256_digest(LAYER)))


class TestAuthentication:
    """Test the registry token flow."""

    def test_anonymous_bearer_token(self):
        """Test that a Bearer challenge is answered with an anonymous token."""
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.host == "auth.example.com":
                assert "Authorization" not in request.headers
                assert request.url.params["scope"] == "repository:devcontainers/features/node:pull"
                return httpx.Response(200, json={"token": "abc"})
            if request.headers.get("Authorization") == "Bearer abc":
                return httpx.Response(200, content=manifest_body())
            return httpx.Response(
                401,
                headers={
                    "WWW-Authenticate": 'Bearer realm="https://auth.example.com/token",'
                    'service="ghcr.io",scope="repository:devcontainers/features/node:pull"'
                },
            )

        with make_client(handler) as client:
            client.resolve(REF)
            client.resolve(REF)

        # the second resolve reuses the cached token
        assert len(seen) == 4

    def test_bearer_token_with_credentials(self):
        """Test that stored credentials are sent to the token endpoint."""
        credentials = DockerCredentials({"ghcr.io": ("user", "secret")})

        def handler(request):
            if request.url.host == "auth.example.com":
                assert request.headers["Authorization"].startswith("Basic ")
                return httpx.Response(200, json={"access_token": "xyz"})
            if request.headers.get("Authorization") == "Bearer xyz":
                return httpx.Response(200, content=manifest_body())
            return httpx.Response(401, headers={"WWW-Authenticate": 'Bearer realm="https://auth.example.com/token"'})

        with make_client(handler, auth=RegistryAuth(credentials)) as client:
            assert client.resolve(REF).layers

    def test_token_failure_raises_unauthorized(self):
        """Test that a rejected token request ends in RegistryUnauthorizedError."""

        def handler(request):
            if request.url.host == "auth.example.com":
                return httpx.Response(403)
            return httpx.Response(401, headers={"WWW-Authenticate": 'Bearer realm="https://auth.example.com/token"'})

        with make_client(handler) as client:
            with pytest.raises(RegistryUnauthorizedError):
                client.resolve(REF)


class TestHelpers:
    """Test module helpers."""

    def test_parse_challenge(self):
        """Test parsing a WWW-Authenticate header."""
        scheme, params = parse_challenge('Bearer realm="https://r/token",service="svc"')

        assert scheme == "bearer"
        assert params == {"realm": "https://r/token", "service": "svc"}
        assert parse_challenge("") is None

    def test_select_manifest_falls_back_to_first(self):
        """Test that a list without a matching artifactType uses the first entry."""
        index = OciIndex.model_validate(
            {"manifests": [{"mediaType": OCI_MANIFEST, "digest": "sha256:" + "1" * 64}]}
        )
        assert select_manifest(index, DEVCONTAINER_ARTIFACT_TYPE).digest == "sha256:" + "1" * 64

    def test_docker_credentials_from_file(self, tmp_path):
        """Test reading both auth formats from a docker config file."""
        config = tmp_path / "config.json"
        config.write_text(
            json.dumps(
                {
                    "auths": {
                        "ghcr.io": {"auth": "dXNlcjpwYXNz"},
                        "https://index.docker.io/v1/": {"username": "u", "password": "p"},
                    }
                }
            )
        )

        credentials = DockerCredentials.from_file(config)

        assert credentials.get("ghcr.io") == ("user", "pass")
        assert credentials.get("index.docker.io") == ("u", "p")
        assert credentials.get("quay.io") is None

    def test_docker_credentials_missing_file(self, tmp_path):
        """Test that a missing docker config yields no credentials."""
        assert DockerCredentials.from_file(tmp_path / "missing.json").get("ghcr.io") is None
