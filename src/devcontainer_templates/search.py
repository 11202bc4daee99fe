"""
検索モジュール

インデックスのエントリをフィールドとキーワードで絞り込みます。
関連度によるランキングは行わず、インデックスの順序を保ったまま絞り込みます。
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

from .models import IndexEntry


class SearchField(str, Enum):
    """検索対象のフィールド。"""

    ID = "id"
    NAME = "name"
    DESCRIPTION = "description"
    KEYWORDS = "keywords"


DEFAULT_FIELDS = frozenset({SearchField.ID, SearchField.KEYWORDS, SearchField.DESCRIPTION})


class SearchResult(BaseModel):
    """検索結果の表示・JSON出力用のレコード。"""

    collection: Literal["template", "feature"]
    id: str
    version: str
    name: str
    description: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)

    @classmethod
    def from_entry(cls, entry: IndexEntry) -> SearchResult:
        return cls(
            collection=entry.kind,
            id=entry.id,
            version=entry.version,
            name=entry.name,
            description=entry.description,
            keywords=list(entry.keywords),
        )


def _matches(entry: IndexEntry, needle: str, fields: Iterable[SearchField]) -> bool:
    for field in fields:
        if field is SearchField.KEYWORDS:
            if any(needle in keyword.lower() for keyword in entry.keywords):
                return True
            continue
        value = {
            SearchField.ID: entry.id,
            SearchField.NAME: entry.name,
            SearchField.DESCRIPTION: entry.description,
        }[field]
        if value and needle in value.lower():
            return True
    return False


def search(
    entries: Iterable[IndexEntry],
    query: str,
    fields: Optional[Iterable[SearchField]] = None,
    include_deprecated: bool = False,
) -> list[IndexEntry]:
    """
    エントリを大文字小文字を区別しない部分一致で絞り込む。

    選択したフィールドのいずれかにクエリが含まれるエントリを返す。
    keywords はいずれかのキーワードに含まれれば一致とみなす。

    Args:
        entries: 検索対象のエントリ
        query: 検索文字列
        fields: 検索するフィールド（省略時は id, keywords, description）
        include_deprecated: 非推奨のエントリも含めるかどうか

    Returns:
        元の順序を保った一致エントリのリスト
    """
    selected = DEFAULT_FIELDS if fields is None else frozenset(SearchField(f) for f in fields)
    # 並びを固定してから照合する
    ordered = [f for f in SearchField if f in selected]
    needle = query.strip().lower()

    return [
        entry
        for entry in entries
        if (include_deprecated or not entry.deprecated) and _matches(entry, needle, ordered)
    ]
