"""
設定組み立てモジュール

テンプレートのベース設定にフィーチャーの宣言をマージして、
ひとつの devcontainer.json を組み立てる機能を提供します。
"""

from __future__ import annotations

import copy
import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional, Union

import json5
from pydantic import ValidationError

from .cache import CachedArtifact
from .document import DevcontainerDocument, InvalidDocumentError
from .errors import CommentsUnsupportedError, InvalidOptionError, MissingTemplateError
from .models import Feature, OptionSchema, Template
from .oci_ref import OciReference

TEMPLATE_METADATA = "devcontainer-template.json"
FEATURE_METADATA = "devcontainer-feature.json"
CONFIG_CANDIDATES = (".devcontainer/devcontainer.json", ".devcontainer.json")
TEMPLATE_SKIP = frozenset({"NOTES.md", "README.md", TEMPLATE_METADATA})

# image型テンプレートの標準的な構成は devcontainer.json, devcontainer-template.json,
# NOTES.md, README.md の4ファイル。これを超えるファイルは .devcontainer/ に置かれる。
SINGLE_FILE_MAX_FILES = 4

TEMPLATE_OPTION_RE = re.compile(rb"\$\{templateOption:\s*(?P<name>\w+)\s*\}")

SCRATCH_REFERENCE = OciReference("localhost", "devcontainer-templates", "scratch", tag="latest")

FeatureRequest = tuple[CachedArtifact, Mapping[str, Any]]


def deep_merge(
    target: dict[str, Any], source: dict[str, Any], prefer_target: bool = False
) -> dict[str, Any]:
    """
    2つの辞書を深くマージする。

    ネストされた辞書は再帰的にマージされ、
    リストは target の要素の後に source の要素を連結して重複が削除される。
    スカラー値が衝突した場合は prefer_target が True なら target の値を残し、
    そうでなければ source の値で上書きする。

    Args:
        target: マージ先の辞書
        source: マージ元の辞書
        prefer_target: スカラー値の衝突時に target を優先するかどうか

    Returns:
        マージされた新しい辞書（引数は変更しない）
    """
    result = target.copy()

    for key, value in source.items():
        if key in result:
            # 両方が辞書の場合は再帰的にマージ
            if isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = deep_merge(result[key], value, prefer_target)
            # 両方がリストの場合は結合して重複を削除
            elif isinstance(result[key], list) and isinstance(value, list):
                # 重複判定にのみ正規化したJSONを使い、要素自体のキー順は保つ
                unique_items: dict[str, Any] = {}
                for item in result[key] + copy.deepcopy(value):
                    unique_items.setdefault(json.dumps(item, sort_keys=True), item)
                result[key] = list(unique_items.values())
            elif not prefer_target:
                result[key] = copy.deepcopy(value)
        else:
            # キーが存在しない場合は追加
            result[key] = copy.deepcopy(value)

    return result


def resolve_options(
    owner: str, schema: Mapping[str, OptionSchema], values: Mapping[str, Any]
) -> dict[str, Union[bool, str]]:
    """
    指定されたオプション値を検証し、未指定のオプションを既定値で補完する。

    Args:
        owner: エラーメッセージに使うテンプレートまたはフィーチャーのID
        schema: オプション定義
        values: ユーザーが指定した値

    Returns:
        スキーマの順序に並んだオプション値

    Raises:
        InvalidOptionError: 未定義のオプション名、または制約を満たさない値の場合
    """
    for key in values:
        if key not in schema:
            raise InvalidOptionError(owner, key, "no such option")

    resolved: dict[str, Union[bool, str]] = {}
    for name, option in schema.items():
        if name in values:
            try:
                resolved[name] = option.coerce(values[name])
            except ValueError as e:
                raise InvalidOptionError(owner, name, str(e)) from e
        else:
            resolved[name] = option.configured_default()
    return resolved


def _owner(artifact: CachedArtifact) -> str:
    return str(artifact.reference) if artifact.reference is not None else artifact.digest


def _load_metadata(path: Path, owner: str) -> Optional[dict[str, Any]]:
    if not path.is_file():
        return None
    try:
        data = json5.loads(path.read_text(encoding="utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidDocumentError(f"{owner}:{path.name}", str(e)) from e
    if not isinstance(data, dict):
        raise InvalidDocumentError(f"{owner}:{path.name}", "top level must be an object")
    return data


def load_template_metadata(artifact: CachedArtifact) -> Optional[Template]:
    """
    アーティファクトの devcontainer-template.json を読み込む。

    Returns:
        テンプレート定義、ファイルがない場合はNone
    """
    owner = _owner(artifact)
    data = _load_metadata(artifact.local_path / TEMPLATE_METADATA, owner)
    if data is None:
        return None
    try:
        return Template.model_validate(data)
    except ValidationError as e:
        raise InvalidDocumentError(f"{owner}:{TEMPLATE_METADATA}", str(e)) from e


def load_feature(artifact: CachedArtifact) -> Feature:
    """
    アーティファクトの devcontainer-feature.json を読み込む。

    Raises:
        MissingTemplateError: devcontainer-feature.json が見つからない場合
    """
    owner = _owner(artifact)
    path = artifact.local_path / FEATURE_METADATA
    if not path.is_file():
        # 一部のコレクションはサブディレクトリに格納している
        path = next(iter(sorted(artifact.local_path.rglob(FEATURE_METADATA))), path)
    data = _load_metadata(path, owner)
    if data is None:
        raise MissingTemplateError(owner, FEATURE_METADATA)
    try:
        return Feature.model_validate(data)
    except ValidationError as e:
        raise InvalidDocumentError(f"{owner}:{FEATURE_METADATA}", str(e)) from e


def render_template_files(
    artifact: CachedArtifact, context: Mapping[str, Union[bool, str]]
) -> tuple[dict[str, bytes], list[str]]:
    """
    テンプレートのファイルを読み込み、``${templateOption:name}`` を置換する。

    置換は devcontainer.json に限らず、すべてのファイルに対して行う。

    Returns:
        (相対パス -> 置換後の内容, 警告メッセージのリスト)
    """
    warnings: list[str] = []
    values = {
        name: (("true" if value else "false") if isinstance(value, bool) else value)
        for name, value in context.items()
    }

    def substitute(match: re.Match[bytes]) -> bytes:
        name = match.group("name").decode("ascii", "replace")
        if name not in values:
            message = f"No value provided for ${{templateOption:{name}}}"
            if message not in warnings:
                warnings.append(message)
            return b""
        return values[name].encode("utf-8")

    rendered: dict[str, bytes] = {}
    for path in sorted(artifact.local_path.rglob("*")):
        if not path.is_file() or path.name in TEMPLATE_SKIP:
            continue
        relative = path.relative_to(artifact.local_path).as_posix()
        rendered[relative] = TEMPLATE_OPTION_RE.sub(substitute, path.read_bytes())
    return rendered, warnings


def single_file_eligibility(template: Optional[Template]) -> tuple[bool, Optional[str]]:
    """
    テンプレートを ``.devcontainer.json`` 1ファイルとして出力できるか判定する。

    Returns:
        (出力できるかどうか, できない場合の理由)
    """
    if template is None or template.type is None:
        return False, "Skipping single-file output as the template does not declare its type"
    if template.type == "dockerCompose":
        return False, "Skipping single-file output as the selected template includes a docker-compose.yml"
    if template.type == "dockerfile":
        return False, "Skipping single-file output as the selected template includes a Dockerfile"
    if template.file_count is not None and template.file_count > SINGLE_FILE_MAX_FILES:
        return False, f"Skipping single-file output as the selected template has {template.file_count} files"
    return True, None


def assemble(
    template: CachedArtifact,
    features: Iterable[FeatureRequest] = (),
    *,
    attempt_single_file: bool = False,
    remove_comments: bool = True,
    template_options: Optional[Mapping[str, Any]] = None,
) -> DevcontainerDocument:
    """
    テンプレートとフィーチャーから devcontainer.json を組み立てる。

    マージのルール:
    1. フィーチャーは指定された順に ``features`` へ追加する（キーはOCI参照文字列）
    2. ``customizations`` は辞書を再帰的にマージし、リストは連結する
    3. スカラー値が衝突した場合はテンプレート（先にあるもの）の値を優先する

    コメントを保持したままのマージはサポートしない。
    remove_comments が False でコメントを含むドキュメントにフィーチャーを
    マージしようとした場合は CommentsUnsupportedError を送出する。

    Args:
        template: 展開済みのテンプレート
        features: (展開済みのフィーチャー, オプション値) の列
        attempt_single_file: image型テンプレートを1ファイルで出力するかどうか
        remove_comments: コメントを取り除くかどうか
        template_options: テンプレートオプションの値

    Returns:
        組み立てたドキュメント

    Raises:
        MissingTemplateError: devcontainer.json または devcontainer-feature.json が見つからない場合
        InvalidOptionError: オプション名・値が不正な場合
        CommentsUnsupportedError: コメントを保持したままのマージが要求された場合
    """
    owner = _owner(template)
    metadata = load_template_metadata(template)
    context = resolve_options(owner, metadata.options if metadata else {}, template_options or {})
    rendered, warnings = render_template_files(template, context)

    config_name = next((name for name in CONFIG_CANDIDATES if name in rendered), None)
    if config_name is None:
        raise MissingTemplateError(owner, "devcontainer.json")
    source = f"{owner}:{config_name}"
    try:
        text = rendered.pop(config_name).decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidDocumentError(source, str(e)) from e
    document = DevcontainerDocument.parse(text, source)

    requests: list[tuple[str, dict[str, Union[bool, str]], Feature]] = []
    for artifact, values in features:
        feature = load_feature(artifact)
        key = str(artifact.reference) if artifact.reference is not None else feature.id
        options = resolve_options(key, feature.options, values)
        if feature.deprecated:
            warnings.append(f"Feature {key} is deprecated")
        requests.append((key, options, feature))

    if requests and document.has_comments and not remove_comments:
        raise CommentsUnsupportedError(source)
    if remove_comments:
        document = document.without_comments()

    if requests:
        data = copy.deepcopy(document.data)
        declared = data.get("features")
        merged_features: dict[str, Any] = dict(declared) if isinstance(declared, dict) else {}
        customizations = data.get("customizations")
        merged_customizations: dict[str, Any] = customizations if isinstance(customizations, dict) else {}

        for key, options, feature in requests:
            merged_features[key] = options
            if feature.customizations:
                merged_customizations = deep_merge(
                    merged_customizations, feature.customizations, prefer_target=True
                )

        data["features"] = merged_features
        if merged_customizations:
            data["customizations"] = merged_customizations
        document = replace(document, data=data, source_text=None)

    single_file = False
    if attempt_single_file:
        single_file, reason = single_file_eligibility(metadata)
        if reason:
            warnings.append(reason)

    return replace(document, single_file=single_file, files=rendered, warnings=warnings)


def create_scratch_template() -> dict[str, bytes]:
    """
    「ゼロから始める」ための組み込みテンプレートのファイル群を作成する。

    Returns:
        相対パス -> 内容
    """
    metadata = {
        "id": "scratch",
        "version": "1.0.0",
        "name": "Base Template",
        "options": {
            "imageVariant": {
                "type": "string",
                "default": "jammy",
                "proposals": ["bookworm", "bullseye", "jammy", "focal"],
            }
        },
        "type": "image",
        "fileCount": 2,
    }
    configuration = {
        "name": "Default",
        "image": "mcr.microsoft.com/devcontainers/base:${templateOption:imageVariant}",
    }
    return {
        TEMPLATE_METADATA: json.dumps(metadata, indent="\t").encode("utf-8"),
        CONFIG_CANDIDATES[0]: (json.dumps(configuration, indent="\t") + "\n").encode("utf-8"),
    }
