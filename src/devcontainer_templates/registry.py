"""
OCIレジストリクライアント

マニフェストの解決とblobの取得を行います。
このパッケージの中でレジストリとのネットワーク通信を行うのはこのモジュールだけです。
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Iterator
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from .auth import RegistryAuth
from .errors import (
    RegistryError,
    RegistryNotFoundError,
    RegistryTransportError,
    RegistryUnauthorizedError,
)
from .models import OciDescriptor, OciIndex, OciManifest
from .oci_ref import OciReference

logger = logging.getLogger(__name__)

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
MANIFEST_ACCEPT = ", ".join([OCI_MANIFEST, OCI_INDEX, DOCKER_MANIFEST, DOCKER_MANIFEST_LIST])
INDEX_MEDIA_TYPES = frozenset([OCI_INDEX, DOCKER_MANIFEST_LIST])

DEVCONTAINER_ARTIFACT_TYPE = "application/vnd.devcontainers"

_CHUNK_SIZE = 65536


def sha256_digest(data: bytes) -> str:
    """'sha256:<hex>' 形式のダイジェストを返す。"""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


class RegistryClient(Protocol):
    """
    レジストリへのアクセス手段。

    ArtifactCache と IndexStore はこのインターフェースだけに依存するため、
    テストではインメモリの実装に差し替えられる。
    """

    def resolve(self, ref: OciReference, artifact_type: Optional[str] = None) -> OciManifest:
        ...

    def fetch_blob(self, ref: OciReference, digest: str) -> Iterator[bytes]:
        ...


def select_manifest(index: OciIndex, artifact_type: Optional[str]) -> OciDescriptor:
    """
    マニフェストリストから対象のマニフェストを選ぶ。

    artifact_type が一致するエントリがなければ先頭のエントリを使う。
    古い形式で公開されたアーティファクトとの互換性のための挙動。
    """
    if artifact_type is not None:
        for entry in index.manifests:
            if entry.artifact_type == artifact_type:
                return entry
    # TODO: decide whether a list without a matching artifactType should be rejected instead
    logger.debug("No manifest with artifactType %s; using the first entry", artifact_type)
    return index.manifests[0]


class HttpRegistryClient:
    """
    httpx を使ったOCI Distribution APIクライアント。

    GETのみを行い、通信エラーと5xx応答は指数バックオフで上限回数までリトライする。
    404と401/403はリトライせずにそのまま送出する。
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        auth: Optional[httpx.Auth] = None,
        transport: Optional[httpx.BaseTransport] = None,
        scheme: str = "https",
    ) -> None:
        self.max_retries = max_retries
        self.backoff = backoff
        self.scheme = scheme
        self._client = httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            auth=auth if auth is not None else RegistryAuth(),
            transport=transport,
        )

    def __enter__(self) -> HttpRegistryClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _url(self, ref: OciReference, kind: str, reference: str) -> str:
        return f"{self.scheme}://{ref.registry}/v2/{ref.repository}/{kind}/{reference}"

    def _send(self, ref: OciReference, url: str, headers: dict[str, str], stream: bool = False) -> httpx.Response:
        """
        GETリクエストを送信し、ステータスコードを型付き例外に変換する。

        Raises:
            RegistryNotFoundError: 404の場合
            RegistryUnauthorizedError: 401/403の場合
            RegistryTransportError: リトライ上限まで通信エラーまたは5xxが続いた場合
        """
        last_error = ""
        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self.backoff * (2 ** (attempt - 1))
                logger.debug("Retrying %s in %.1fs (attempt %d)", url, delay, attempt + 1)
                time.sleep(delay)
            try:
                request = self._client.build_request("GET", url, headers=headers)
                response = self._client.send(request, stream=stream)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                continue

            if response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                response.close()
                continue
            if response.status_code == 404:
                response.close()
                raise RegistryNotFoundError(ref, f"not found ({url})")
            if response.status_code in (401, 403):
                response.close()
                raise RegistryUnauthorizedError(ref, f"HTTP {response.status_code}")
            if response.status_code >= 400:
                response.close()
                raise RegistryError(ref, f"unexpected HTTP {response.status_code} from {url}")
            return response

        raise RegistryTransportError(ref, f"giving up after {self.max_retries + 1} attempts: {last_error}")

    def resolve(self, ref: OciReference, artifact_type: Optional[str] = None) -> OciManifest:
        """
        参照をマニフェストに解決する。

        マニフェストリスト（OCI index）が返された場合は artifact_type に
        一致するエントリを選び、そのダイジェストで再度解決する。

        Args:
            ref: 解決するOCI参照
            artifact_type: マニフェストリストから選ぶアーティファクトタイプ

        Returns:
            ダイジェスト付きのマニフェスト
        """
        response = self._send(ref, self._url(ref, "manifests", ref.reference), {"Accept": MANIFEST_ACCEPT})
        body = response.content
        actual = sha256_digest(body)
        if ref.digest is not None and actual != ref.digest:
            raise RegistryTransportError(ref, f"manifest digest mismatch: got {actual}")

        try:
            data = json.loads(body)
        except ValueError as e:
            raise RegistryError(ref, f"manifest is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise RegistryError(ref, "manifest is not a JSON object")

        media_type = data.get("mediaType") or response.headers.get("Content-Type", "").split(";")[0]
        try:
            if media_type in INDEX_MEDIA_TYPES or "manifests" in data:
                index = OciIndex.model_validate(data)
                if not index.manifests:
                    raise RegistryNotFoundError(ref, "manifest list is empty")
                entry = select_manifest(index, artifact_type)
                logger.debug("Resolved manifest list %s to %s", ref, entry.digest)
                return self.resolve(ref.with_digest(entry.digest), artifact_type)
            manifest = OciManifest.model_validate(data)
        except ValidationError as e:
            raise RegistryError(ref, f"invalid manifest: {e}") from e

        digest = response.headers.get("Docker-Content-Digest") or actual
        logger.debug("Resolved %s to %s (%d layers)", ref, digest, len(manifest.layers))
        return manifest.model_copy(update={"digest": digest})

    def fetch_blob(self, ref: OciReference, digest: str) -> Iterator[bytes]:
        """
        blobをチャンク単位で取得する。

        Raises:
            RegistryTransportError: 受信中に通信が切断された場合
        """
        response = self._send(ref, self._url(ref, "blobs", digest), {}, stream=True)
        try:
            yield from response.iter_bytes(_CHUNK_SIZE)
        except httpx.TransportError as e:
            raise RegistryTransportError(ref, f"blob {digest} interrupted: {e}") from e
        finally:
            response.close()
