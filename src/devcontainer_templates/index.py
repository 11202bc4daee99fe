"""
コレクションインデックス管理モジュール

ローカルに保存されたコレクションインデックス（devcontainer-index.json）の
読み込み・検索と、レジストリからの再取得（refresh）を提供します。
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from .errors import (
    CollectionIndexError,
    EntryNotFoundError,
    IndexMalformedError,
    IndexMissingError,
    InvalidReferenceError,
    RegistryNotFoundError,
)
from .models import Collection, Feature, IndexEntry, SourceInformation, Template
from .oci_ref import OciReference
from .registry import RegistryClient

logger = logging.getLogger(__name__)

DEFAULT_INDEX_REFERENCE = "ghcr.io/devcontainers/index:latest"
INDEX_LAYER_MEDIA_TYPE = "application/vnd.devcontainers.index.layer.v1+json"
INDEX_FILENAME = "devcontainer-index.json"


def normalize_id(entry_id: Union[str, OciReference]) -> str:
    """
    検索キーとして使うIDを正規化する。

    タグやダイジェストは無視し、``registry/namespace/name`` の形にそろえる。
    参照として解析できない文字列は小文字化したものをそのまま使う。
    """
    if isinstance(entry_id, OciReference):
        return entry_id.id
    try:
        return OciReference.parse(entry_id).id
    except InvalidReferenceError:
        return entry_id.strip().lower()


def _is_deprecated_collection(source_information: SourceInformation) -> bool:
    # テンプレートの非推奨はコレクションのmaintainer欄でのみ表現されている
    return "deprecated" in source_information.maintainer.lower()


def _parse_collection(value: Any) -> Optional[Collection]:
    """
    コレクション1件を解析する。

    sourceInformationやfeatures/templatesの形式が不正なコレクションは
    スキップし、個別に解析できないエントリも警告を出して除外する。
    """
    if not isinstance(value, dict):
        logger.warning("Skipping collection: entry is not an object")
        return None

    try:
        source_information = SourceInformation.model_validate(value.get("sourceInformation"))
    except ValidationError:
        logger.warning("Skipping collection due to parsing error of sourceInformation")
        return None

    oci_reference = source_information.oci_reference
    raw_features = value.get("features", [])
    raw_templates = value.get("templates", [])
    if not isinstance(raw_features, list) or not isinstance(raw_templates, list):
        logger.warning(
            "Skipping collection %s: features and templates must be arrays", oci_reference
        )
        return None

    features: list[Feature] = []
    for raw in raw_features:
        try:
            features.append(Feature.model_validate(raw))
        except ValidationError:
            logger.warning("Skipping feature due to parsing error. Collection: %s", oci_reference)

    deprecated = _is_deprecated_collection(source_information)
    templates: list[Template] = []
    for raw in raw_templates:
        try:
            template = Template.model_validate(raw)
        except ValidationError:
            logger.warning("Skipping template due to parsing error. Collection: %s", oci_reference)
            continue
        if deprecated:
            template = template.model_copy(update={"deprecated": True})
        templates.append(template)

    return Collection(
        source_information=source_information,
        features=features,
        templates=templates,
    )


class CollectionIndex:
    """
    読み込み済みのコレクションインデックス。

    読み込み後は変更されない。IDによる検索はO(1)、
    イテレーションはインデックスファイルの順序を保つ。
    """

    def __init__(self, collections: list[Collection], last_updated: Optional[datetime] = None) -> None:
        self._collections = list(collections)
        self.last_updated = last_updated
        self._templates: list[Template] = []
        self._features: list[Feature] = []
        self._by_id: dict[str, IndexEntry] = {}
        self._by_collection: dict[str, Collection] = {}

        for collection in self._collections:
            self._by_collection[collection.source_information.oci_reference] = collection
            for template in collection.templates:
                self._templates.append(template)
                self._by_id.setdefault(normalize_id(template.id), template)
            for feature in collection.features:
                self._features.append(feature)
                self._by_id.setdefault(normalize_id(feature.id), feature)

    @property
    def collections(self) -> list[Collection]:
        return list(self._collections)

    def get_collection(self, oci_reference: str) -> Optional[Collection]:
        """コレクションのOCI参照からコレクションを取得する。"""
        return self._by_collection.get(oci_reference)

    def iter_templates(self, include_deprecated: bool = True) -> Iterator[Template]:
        for template in self._templates:
            if include_deprecated or not template.deprecated:
                yield template

    def iter_features(self, include_deprecated: bool = True) -> Iterator[Feature]:
        for feature in self._features:
            if include_deprecated or not feature.deprecated:
                yield feature

    def find(self, entry_id: Union[str, OciReference]) -> IndexEntry:
        """
        IDでテンプレートまたはフィーチャーを検索する。

        Raises:
            EntryNotFoundError: 該当するエントリがない場合
        """
        key = normalize_id(entry_id)
        try:
            return self._by_id[key]
        except KeyError:
            raise EntryNotFoundError(str(entry_id)) from None

    def find_template(self, entry_id: Union[str, OciReference]) -> Optional[Template]:
        entry = self._by_id.get(normalize_id(entry_id))
        return entry if isinstance(entry, Template) else None

    def find_feature(self, entry_id: Union[str, OciReference]) -> Optional[Feature]:
        entry = self._by_id.get(normalize_id(entry_id))
        return entry if isinstance(entry, Feature) else None

    def __len__(self) -> int:
        return len(self._templates) + len(self._features)


class IndexStore:
    """
    インデックスファイルの読み込みと更新を担当する。

    プロセス内では一度読み込んだインデックスをキャッシュする。
    ファイルの書き込みは refresh のみが行い、必ずアトミックに置き換える。
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._index: Optional[CollectionIndex] = None

    @property
    def index(self) -> CollectionIndex:
        """読み込み済みのインデックス。未読み込みならここで読み込む。"""
        if self._index is None:
            self._index = self.load(self.path)
        return self._index

    @staticmethod
    def load(path: Path) -> CollectionIndex:
        """
        インデックスファイルを読み込む。

        トップレベルはコレクションの配列、または公開されている
        ``{"collections": [...]}`` 形式のどちらも受け付ける。

        Args:
            path: インデックスファイルのパス

        Returns:
            読み込まれたCollectionIndex

        Raises:
            IndexMissingError: ファイルが存在しない場合
            IndexMalformedError: JSONとして不正、またはトップレベルの形式が不正な場合
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            raise IndexMissingError(path) from None
        except json.JSONDecodeError as e:
            raise IndexMalformedError(path, str(e)) from e
        except OSError as e:
            raise IndexMalformedError(path, str(e)) from e

        if isinstance(data, dict):
            data = data.get("collections")
        if not isinstance(data, list):
            raise IndexMalformedError(path, "expected an array of collections")

        collections = [c for c in map(_parse_collection, data) if c is not None]
        index = CollectionIndex(collections, datetime.fromtimestamp(mtime, tz=timezone.utc))

        logger.debug(
            "Loaded %d collections, %d features, %d templates from %s",
            len(collections),
            sum(1 for _ in index.iter_features()),
            sum(1 for _ in index.iter_templates()),
            path,
        )
        return index

    def refresh(
        self,
        client: RegistryClient,
        reference: Union[str, OciReference] = DEFAULT_INDEX_REFERENCE,
    ) -> Path:
        """
        レジストリからインデックスを取得し、ローカルファイルを置き換える。

        同じディレクトリの一時ファイルに書き込んでから rename するため、
        同時に読み込むプロセスが書きかけのファイルを見ることはない。

        Args:
            client: レジストリクライアント
            reference: インデックスアーティファクトのOCI参照

        Returns:
            書き込んだインデックスファイルのパス

        Raises:
            RegistryError: 取得に失敗した場合
            CollectionIndexError: 取得した内容がJSONでない場合、または書き込みに失敗した場合
        """
        ref = reference if isinstance(reference, OciReference) else OciReference.parse(reference)
        manifest = client.resolve(ref)
        layer = next(
            (layer for layer in manifest.layers if layer.media_type == INDEX_LAYER_MEDIA_TYPE),
            None,
        )
        if layer is None:
            raise RegistryNotFoundError(ref, f"no layer of media type {INDEX_LAYER_MEDIA_TYPE}")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".index-", suffix=".json")
        tmp_path = Path(tmp_name)
        try:
            size = 0
            with os.fdopen(fd, "wb") as f:
                for chunk in client.fetch_blob(ref, layer.digest):
                    f.write(chunk)
                    size += len(chunk)
            # 壊れたファイルで既存のインデックスを置き換えない
            try:
                with open(tmp_path, encoding="utf-8") as f:
                    json.load(f)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise IndexMalformedError(ref, f"downloaded index is not valid JSON: {e}") from e
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise CollectionIndexError(f"Could not write {self.path}: {e}") from e
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        logger.debug("Wrote %d bytes of index to %s", size, self.path)
        self._index = None
        return self.path
