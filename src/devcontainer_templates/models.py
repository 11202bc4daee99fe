"""
データモデル

コレクションインデックス、フィーチャー・テンプレートのメタデータ、
OCIマニフェストのPydanticモデルを定義します。
"""

from __future__ import annotations

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

__all__ = [
    "Collection",
    "Feature",
    "IndexEntry",
    "OciDescriptor",
    "OciIndex",
    "OciManifest",
    "OptionSchema",
    "SourceInformation",
    "Template",
]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OptionSchema(_CamelModel):
    """
    テンプレート・フィーチャーのオプション定義。

    ``enum`` を持つstring型は列挙型として扱い、値を制限する。
    ``proposals`` は候補の提示のみで値を制限しない。
    """

    type: Literal["string", "boolean"]
    # メンテナーによってはboolean型のdefaultを文字列で公開している
    default: Union[bool, str, None] = None
    description: Optional[str] = None
    enum: Optional[list[str]] = None
    proposals: Optional[list[str]] = None

    @property
    def kind(self) -> str:
        """表示用の型名（string / boolean / enum）。"""
        if self.type == "string" and self.enum is not None:
            return "enum"
        return self.type

    def configured_default(self) -> Union[bool, str]:
        """
        オプションの既定値を返す。

        string型でdefaultが省略されている場合はproposalsの先頭を使う。

        Returns:
            boolean型ならbool、それ以外は文字列
        """
        if self.type == "boolean":
            if isinstance(self.default, bool):
                return self.default
            return str(self.default).strip().lower() == "true"
        if self.default is not None:
            return str(self.default)
        if self.proposals:
            return self.proposals[0]
        if self.enum:
            return self.enum[0]
        return ""

    def coerce(self, value: Any) -> Union[bool, str]:
        """
        ユーザーが指定した値をスキーマに従って正規化する。

        Args:
            value: 指定された値（CLIからは文字列で渡される）

        Returns:
            正規化された値

        Raises:
            ValueError: 値が型または列挙値の制約を満たさない場合
        """
        if self.type == "boolean":
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().lower() in ("true", "false"):
                return value.strip().lower() == "true"
            raise ValueError(f"expected a boolean, got {value!r}")

        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ValueError(f"expected a string, got {value!r}")
        text = str(value)
        if self.enum is not None and text not in self.enum:
            raise ValueError(f"{text!r} is not one of {', '.join(self.enum)}")
        return text

    def describe(self) -> str:
        parts = [f"type={self.kind}", f"default={_format_value(self.configured_default())}"]
        if self.enum:
            parts.append(f"enum=[{', '.join(self.enum)}]")
        elif self.proposals:
            parts.append(f"proposals=[{', '.join(self.proposals)}]")
        return ", ".join(parts)


def _format_value(value: Union[bool, str]) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


class SourceInformation(_CamelModel):
    """コレクションのメタデータ。"""

    name: str
    maintainer: str = ""
    contact: str = ""
    repository: str = ""
    oci_reference: str


class _Entry(_CamelModel):
    id: str
    version: str
    name: str
    description: Optional[str] = None
    documentation_url: Optional[str] = Field(default=None, alias="documentationURL")
    license_url: Optional[str] = Field(default=None, alias="licenseURL")
    keywords: list[str] = Field(default_factory=list)
    options: dict[str, OptionSchema] = Field(default_factory=dict)
    deprecated: bool = False
    owner: Optional[str] = None


class Feature(_Entry):
    """インデックスまたは devcontainer-feature.json のフィーチャー定義。"""

    major_version: Optional[str] = None
    installs_after: list[str] = Field(default_factory=list)
    legacy_ids: list[str] = Field(default_factory=list)
    container_env: dict[str, str] = Field(default_factory=dict)
    privileged: Optional[bool] = None
    init: Optional[bool] = None
    cap_add: list[str] = Field(default_factory=list)
    security_opt: list[str] = Field(default_factory=list)
    entrypoint: Optional[str] = None
    mounts: list[Union[str, dict[str, Any]]] = Field(default_factory=list)
    customizations: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> str:
        return "feature"


class Template(_Entry):
    """インデックスまたは devcontainer-template.json のテンプレート定義。"""

    type: Optional[Literal["image", "dockerfile", "dockerCompose"]] = None
    file_count: Optional[int] = None
    platforms: list[str] = Field(default_factory=list)
    publisher: Optional[str] = None
    feature_ids: list[str] = Field(default_factory=list)

    @property
    def kind(self) -> str:
        return "template"


IndexEntry = Union[Template, Feature]


class Collection(_CamelModel):
    """ひとつのコレクション（テンプレートとフィーチャーの集合）。"""

    source_information: SourceInformation
    features: list[Feature] = Field(default_factory=list)
    templates: list[Template] = Field(default_factory=list)


class OciDescriptor(_CamelModel):
    """OCIディスクリプタ（マニフェスト内のレイヤーや index 内のエントリ）。"""

    media_type: str
    digest: str
    size: int = 0
    artifact_type: Optional[str] = None
    annotations: dict[str, str] = Field(default_factory=dict)
    platform: Optional[dict[str, Any]] = None


class OciManifest(_CamelModel):
    """
    OCI Image Manifest (schema version 2)。

    ``digest`` はレジストリ応答から求めたマニフェスト自身のダイジェスト。
    """

    schema_version: int = 2
    media_type: Optional[str] = None
    artifact_type: Optional[str] = None
    config: Optional[OciDescriptor] = None
    layers: list[OciDescriptor] = Field(default_factory=list)
    annotations: dict[str, str] = Field(default_factory=dict)
    digest: str = ""


class OciIndex(_CamelModel):
    """OCI Image Index / Docker manifest list。"""

    schema_version: int = 2
    media_type: Optional[str] = None
    manifests: list[OciDescriptor] = Field(default_factory=list)
