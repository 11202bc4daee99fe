"""
アーティファクトキャッシュ

取得したアーティファクトのtarレイヤーを、マニフェストダイジェストをキーとする
ディレクトリに展開して保持します。

ディレクトリ構成::

    <root>/sha256-<hex>/manifest.json   # OciManifest
    <root>/sha256-<hex>/files/          # 展開されたレイヤーの内容

展開は同じディレクトリ内の一時ディレクトリで行い、完了後に rename で公開する。
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import os
import shutil
import tarfile
import tempfile
import threading
import zlib
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .errors import CacheCorruptError, CacheIoError
from .models import OciDescriptor, OciManifest
from .oci_ref import OciReference
from .registry import DEVCONTAINER_ARTIFACT_TYPE, OCI_MANIFEST, RegistryClient

logger = logging.getLogger(__name__)

LAYER_MEDIA_TYPE = "application/vnd.devcontainers.layer.v1+tar"
MANIFEST_FILENAME = "manifest.json"
FILES_DIRNAME = "files"
_ENTRY_PREFIX = "sha256-"
_TMP_PREFIX = ".tmp-"


@dataclass(frozen=True)
class CachedArtifact:
    """
    展開済みのアーティファクト。

    Attributes:
        reference: 取得に使ったOCI参照（キャッシュ一覧から得た場合はNone）
        digest: マニフェストダイジェスト
        local_path: 展開されたファイルのディレクトリ
        manifest: アーティファクトのマニフェスト
    """

    reference: Optional[OciReference]
    digest: str
    local_path: Path
    manifest: OciManifest


def entry_name(digest: str) -> str:
    """ダイジェストからキャッシュエントリのディレクトリ名を求める。"""
    algorithm, _, hex_digest = digest.partition(":")
    if algorithm != "sha256" or not hex_digest:
        raise ValueError(f"Unsupported digest: {digest}")
    return f"{_ENTRY_PREFIX}{hex_digest}"


class ArtifactCache:
    """
    マニフェストダイジェストで重複排除されるアーティファクトキャッシュ。

    同じダイジェストに対する materialize は何度呼んでも同じディレクトリを返す。
    複数スレッド・プロセスから同時に呼ばれても、書きかけのディレクトリが
    他の読み手に見えることはない。
    """

    def __init__(self, root: Path, client: Optional[RegistryClient] = None) -> None:
        self.root = Path(root)
        self.client = client

    def _entry_dir(self, digest: str) -> Path:
        return self.root / entry_name(digest)

    def get(self, digest: str, reference: Optional[OciReference] = None) -> Optional[CachedArtifact]:
        """
        キャッシュ済みのアーティファクトを返す。

        Returns:
            キャッシュにあればCachedArtifact、なければNone

        Raises:
            CacheCorruptError: manifest.json が読み込めない場合
        """
        entry = self._entry_dir(digest)
        manifest_path = entry / MANIFEST_FILENAME
        if not manifest_path.is_file():
            return None
        try:
            manifest = OciManifest.model_validate_json(manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise CacheCorruptError(digest, f"unreadable cache entry: {e}") from e
        return CachedArtifact(reference, digest, entry / FILES_DIRNAME, manifest)

    def materialize(self, ref: OciReference, media_type: str = LAYER_MEDIA_TYPE) -> CachedArtifact:
        """
        アーティファクトを取得してキャッシュに展開する。

        ダイジェスト指定の参照がキャッシュ済みなら通信せずに返す。
        タグ指定の場合はマニフェストを解決し、そのダイジェストがキャッシュ済みなら
        レイヤーを取得せずに返す。

        Args:
            ref: 取得するOCI参照
            media_type: 展開するレイヤーのメディアタイプ

        Returns:
            展開済みのCachedArtifact

        Raises:
            RegistryError: マニフェストまたはblobの取得に失敗した場合
            CacheCorruptError: レイヤーがtarとして解釈できない場合
            CacheIoError: ローカルファイルシステムの操作に失敗した場合
        """
        return self._materialize(ref, media_type, None)

    def _materialize(
        self, ref: OciReference, media_type: str, cancel: Optional[threading.Event]
    ) -> CachedArtifact:
        if ref.digest is not None:
            cached = self.get(ref.digest, ref)
            if cached is not None:
                logger.debug("Cache hit for %s", ref)
                return cached

        if self.client is None:
            raise ValueError("ArtifactCache has no registry client")

        _check_cancelled(cancel, str(ref))
        manifest = self.client.resolve(ref, DEVCONTAINER_ARTIFACT_TYPE)
        cached = self.get(manifest.digest, ref)
        if cached is not None:
            logger.debug("Cache hit for %s (%s)", ref, manifest.digest)
            return cached

        layers = _select_layers(manifest, media_type)
        if not layers:
            raise CacheCorruptError(manifest.digest, f"{ref} has no tar layer")

        def populate(files: Path) -> None:
            for layer in layers:
                self._extract_layer(ref, manifest.digest, layer, files, cancel)

        logger.debug("Extracting %d layer(s) of %s", len(layers), ref)
        return self._publish(manifest.digest, ref, manifest, populate)

    def materialize_all(
        self,
        refs: Iterable[OciReference],
        media_type: str = LAYER_MEDIA_TYPE,
        max_workers: int = 4,
    ) -> list[CachedArtifact]:
        """
        複数のアーティファクトを並行して取得する。

        すべての取得が終わるまで待ち、失敗があれば最初の例外を送出する。
        他のアーティファクトの取得は失敗の影響を受けない。

        待機中に KeyboardInterrupt などで中断された場合は、未着手の取得を
        取り消し、実行中の取得もblobのチャンク境界で打ち切ってから例外を再送出する。

        Returns:
            入力と同じ順序のCachedArtifactのリスト
        """
        refs = list(refs)
        if not refs:
            return []
        cancel = threading.Event()
        pool = ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(refs))))
        try:
            futures = [pool.submit(self._materialize, ref, media_type, cancel) for ref in refs]
            wait(futures)
        except BaseException:
            cancel.set()
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        pool.shutdown()
        for future in futures:
            error = future.exception()
            if error is not None:
                raise error
        return [future.result() for future in futures]

    def store_local(self, reference: OciReference, files: dict[str, bytes]) -> CachedArtifact:
        """
        メモリ上のファイル群をアーティファクトとしてキャッシュに登録する。

        ダイジェストはファイル名と内容から求めるため、同じ内容は同じエントリになる。
        """
        hasher = hashlib.sha256()
        for name in sorted(files):
            hasher.update(name.encode("utf-8") + b"\0")
            hasher.update(hashlib.sha256(files[name]).digest())
        digest = f"sha256:{hasher.hexdigest()}"

        cached = self.get(digest, reference)
        if cached is not None:
            return cached

        manifest = OciManifest(
            media_type=OCI_MANIFEST,
            artifact_type=DEVCONTAINER_ARTIFACT_TYPE,
            annotations={"org.opencontainers.image.ref.name": str(reference)},
            digest=digest,
        )

        def populate(root: Path) -> None:
            for name, content in files.items():
                target = root / name
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)

        return self._publish(digest, reference, manifest, populate)

    def entries(self) -> list[CachedArtifact]:
        """キャッシュ済みのアーティファクト一覧を返す。"""
        if not self.root.is_dir():
            return []
        result = []
        for entry in sorted(self.root.iterdir()):
            if not entry.name.startswith(_ENTRY_PREFIX):
                continue
            digest = "sha256:" + entry.name[len(_ENTRY_PREFIX):]
            cached = self.get(digest)
            if cached is not None:
                result.append(cached)
        return result

    def evict(self, digest: str) -> bool:
        """
        キャッシュエントリを削除する。

        一時ディレクトリに rename してから削除するため、
        削除途中のディレクトリが読み手に見えることはない。

        Returns:
            削除した場合True、エントリが存在しなかった場合False
        """
        entry = self._entry_dir(digest)
        if not entry.exists():
            return False
        graveyard = Path(tempfile.mkdtemp(prefix=_TMP_PREFIX, dir=self.root))
        try:
            os.rename(entry, graveyard / entry.name)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CacheIoError(digest, f"could not evict: {e}") from e
        finally:
            shutil.rmtree(graveyard, ignore_errors=True)
        return True

    def clear(self) -> int:
        """すべてのキャッシュエントリを削除し、削除した件数を返す。"""
        return sum(1 for cached in self.entries() if self.evict(cached.digest))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _publish(
        self,
        digest: str,
        reference: Optional[OciReference],
        manifest: OciManifest,
        populate: Callable[[Path], None],
    ) -> CachedArtifact:
        """
        一時ディレクトリに内容を作成し、rename でキャッシュエントリとして公開する。

        rename の競合に負けた場合は先に公開されたエントリを使う。
        失敗した場合は一時ディレクトリを必ず削除する。
        """
        final = self._entry_dir(digest)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp = Path(tempfile.mkdtemp(prefix=_TMP_PREFIX, dir=self.root))
        except OSError as e:
            raise CacheIoError(digest, f"could not create cache directory: {e}") from e

        try:
            files = tmp / FILES_DIRNAME
            files.mkdir()
            populate(files)
            (tmp / MANIFEST_FILENAME).write_text(
                manifest.model_dump_json(by_alias=True, indent=2), encoding="utf-8"
            )
            try:
                os.rename(tmp, final)
            except OSError:
                if not (final / MANIFEST_FILENAME).is_file():
                    raise
                logger.debug("Another process already published %s", digest)
        except OSError as e:
            raise CacheIoError(digest, str(e)) from e
        finally:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)

        return CachedArtifact(reference, digest, final / FILES_DIRNAME, manifest)

    def _extract_layer(
        self,
        ref: OciReference,
        digest: str,
        layer: OciDescriptor,
        destination: Path,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """
        レイヤーのblobを取得してtarとして展開する。

        blobは一時ファイルに書き出しながらハッシュを計算し、
        ディスクリプタのダイジェストと一致することを確認する。
        cancel がセットされるとチャンクの境界で CacheIoError を送出して打ち切る。
        """
        if self.client is None:
            raise ValueError("ArtifactCache has no registry client")
        _check_cancelled(cancel, digest)
        with tempfile.TemporaryFile(dir=self.root) as spool:
            hasher = hashlib.sha256()
            for chunk in self.client.fetch_blob(ref, layer.digest):
                _check_cancelled(cancel, digest)
                hasher.update(chunk)
                spool.write(chunk)
            actual = f"sha256:{hasher.hexdigest()}"
            if actual != layer.digest:
                raise CacheCorruptError(digest, f"layer {layer.digest} does not match its content ({actual})")

            spool.seek(0)
            try:
                with tarfile.open(fileobj=spool, mode="r:*") as tar:
                    tar.extractall(destination, filter="data")
            except (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError) as e:
                raise CacheCorruptError(digest, f"layer {layer.digest} is not a valid tar archive: {e}") from e


def _check_cancelled(cancel: Optional[threading.Event], digest: str) -> None:
    if cancel is not None and cancel.is_set():
        raise CacheIoError(digest, "interrupted")


def _select_layers(manifest: OciManifest, media_type: str) -> list[OciDescriptor]:
    layers = [layer for layer in manifest.layers if layer.media_type == media_type]
    if layers:
        return layers
    return [layer for layer in manifest.layers if "tar" in layer.media_type]
