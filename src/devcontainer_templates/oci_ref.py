"""
OCI参照モジュール

``registry/namespace/name[:tag]`` 形式および
``registry/namespace/name@sha256:<hex>`` 形式の参照文字列を解析します。
I/Oは一切行いません。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Optional

from .errors import InvalidReferenceError

DEFAULT_REGISTRY = "ghcr.io"
DEFAULT_TAG = "latest"

_SEGMENT_RE = re.compile(r"^[a-z0-9._-]+$")
_REGISTRY_RE = re.compile(r"^[a-z0-9.-]+(:[0-9]+)?$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]{0,127}$")
_DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")


def _looks_like_registry(segment: str) -> bool:
    return "." in segment or ":" in segment or segment == "localhost"


@dataclass(frozen=True)
class OciReference:
    """
    解析済みのOCI参照。

    tagとdigestはどちらか一方だけが設定される。
    """

    registry: str
    namespace: str
    name: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.tag is None) == (self.digest is None):
            raise InvalidReferenceError(
                f"{self.registry}/{self.namespace}/{self.name}",
                "exactly one of tag or digest must be set",
            )

    @classmethod
    def parse(cls, value: str) -> OciReference:
        """
        参照文字列を解析する。

        先頭のセグメントは ``.`` か ``:`` を含むか ``localhost`` の場合に限り
        レジストリのホスト名とみなす（Docker と同じ規則）。そのため
        ``my.org/tool`` は名前空間のない ``my.org`` レジストリの参照と解釈されて
        エラーになり、``my.org/team/tool`` はレジストリ ``my.org`` の参照になる。

        Args:
            value: ``ghcr.io/devcontainers/features/node:1`` のような参照文字列

        Returns:
            解析されたOciReference

        Raises:
            InvalidReferenceError: 参照文字列が不正な場合
        """
        text = value.strip() if value else ""
        if not text:
            raise InvalidReferenceError(value, "reference is empty")

        digest: Optional[str] = None
        if "@" in text:
            text, digest = text.split("@", 1)
            if not _DIGEST_RE.match(digest):
                raise InvalidReferenceError(value, "digest must be sha256:<64 lowercase hex characters>")

        segments = text.split("/")
        tag: Optional[str] = None
        last = segments[-1]
        if ":" in last:
            last, tag = last.split(":", 1)
            segments[-1] = last
            if digest is not None:
                raise InvalidReferenceError(value, "tag and digest are both present")
            if not _TAG_RE.match(tag):
                raise InvalidReferenceError(value, f"invalid tag {tag!r}")

        if len(segments) >= 2 and _looks_like_registry(segments[0]):
            registry, path = segments[0], segments[1:]
            if not _REGISTRY_RE.match(registry):
                raise InvalidReferenceError(value, f"invalid registry {registry!r}")
        else:
            registry, path = DEFAULT_REGISTRY, segments

        if not path or not path[-1]:
            raise InvalidReferenceError(value, "name component is empty")
        if len(path) < 2:
            raise InvalidReferenceError(value, "a namespace and a name are required")
        for segment in path:
            if not _SEGMENT_RE.match(segment):
                raise InvalidReferenceError(value, f"invalid path segment {segment!r}")

        if tag is None and digest is None:
            tag = DEFAULT_TAG

        return cls(
            registry=registry,
            namespace="/".join(path[:-1]),
            name=path[-1],
            tag=tag,
            digest=digest,
        )

    @property
    def repository(self) -> str:
        """レジストリ内のリポジトリ名（``namespace/name``）。"""
        return f"{self.namespace}/{self.name}"

    @property
    def id(self) -> str:
        """タグやダイジェストを含まない正規化済みID。"""
        return f"{self.registry}/{self.repository}"

    @property
    def reference(self) -> str:
        """マニフェストAPIに渡すタグまたはダイジェスト。"""
        return self.digest if self.digest is not None else str(self.tag)

    @property
    def tag_name(self) -> str:
        return self.tag or DEFAULT_TAG

    def with_tag(self, tag: str) -> OciReference:
        """タグだけを差し替えた参照を返す。"""
        if not _TAG_RE.match(tag):
            raise InvalidReferenceError(f"{self.id}:{tag}", f"invalid tag {tag!r}")
        return replace(self, tag=tag, digest=None)

    def with_digest(self, digest: str) -> OciReference:
        """ダイジェストで固定した参照を返す。"""
        if not _DIGEST_RE.match(digest):
            raise InvalidReferenceError(f"{self.id}@{digest}", "digest must be sha256:<64 lowercase hex characters>")
        return replace(self, tag=None, digest=digest)

    def __str__(self) -> str:
        if self.digest is not None:
            return f"{self.id}@{self.digest}"
        return f"{self.id}:{self.tag}"
