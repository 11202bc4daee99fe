"""
ユーティリティ関数

CLI層で共通に使用するファイル入出力と引数解析の関数を提供します。
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from rich.console import Console

from .document import DevcontainerDocument

console = Console()
err_console = Console(stderr=True)


def find_devcontainer_json(workspace: Path) -> Path | None:
    """
    ワークスペース内の既存の devcontainer.json を検索する。

    以下の順序で検索:
    1. .devcontainer/devcontainer.json
    2. .devcontainer.json (ルート)

    Args:
        workspace: 検索するワークスペースのパス

    Returns:
        見つかったファイルのパス、見つからない場合はNone
    """
    candidates = [
        workspace / ".devcontainer" / "devcontainer.json",
        workspace / ".devcontainer.json",
    ]

    for candidate in candidates:
        if candidate.exists():
            return candidate

    return None


def configuration_path(document: DevcontainerDocument, workspace: Path) -> Path:
    """出力先の devcontainer.json のパスを返す。"""
    if document.single_file:
        return workspace / ".devcontainer.json"
    return workspace / ".devcontainer" / "devcontainer.json"


def write_configuration(document: DevcontainerDocument, workspace: Path) -> list[Path]:
    """
    組み立てたドキュメントとテンプレートの付属ファイルをワークスペースに書き込む。

    Args:
        document: 組み立てたドキュメント
        workspace: 出力先のワークスペース

    Returns:
        書き込んだファイルのパス（devcontainer.json が先頭）

    Raises:
        OSError: 書き込みに失敗した場合
    """
    config_path = configuration_path(document, workspace)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(document.to_json(), encoding="utf-8")
    written = [config_path]

    for relative, content in document.files.items():
        target = (workspace / relative).resolve()
        # テンプレートがワークスペースの外へ書き込むことは許可しない
        try:
            target.relative_to(workspace.resolve())
        except ValueError:
            console.print(f"[yellow]Warning: Skipping file outside workspace: {relative}[/yellow]")
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        written.append(target)

    return written


def parse_assignments(values: Iterable[str]) -> dict[str, str]:
    """
    ``NAME=VALUE`` 形式の文字列を辞書に変換する。

    Raises:
        ValueError: ``=`` を含まない、または名前が空の場合
    """
    result: dict[str, str] = {}
    for value in values:
        if "=" not in value:
            raise ValueError(f"expected NAME=VALUE, got {value!r}")
        key, item = value.split("=", 1)
        if not key.strip():
            raise ValueError(f"expected NAME=VALUE, got {value!r}")
        result[key.strip()] = item
    return result
