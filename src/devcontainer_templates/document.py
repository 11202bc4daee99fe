"""
devcontainer.json ドキュメントモデル

値は挿入順を保つ辞書として保持し、コメントは値とは別の
サイドテーブル（JSONパス -> コメント文字列のリスト）として保持します。
コメントを保持したままのマージはサポートしません。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Union

import json5

from .errors import AssembleError

# コメントの付与先を表すJSONパス。要素はキー（str）または配列の添字（int）。
# 末尾が None のパスはそのコンテナの閉じ括弧の直前にあるコメントを表す。
JsonPath = tuple[Union[str, int, None], ...]

_LITERAL_DELIMITERS = frozenset(" \t\r\n,:[]{}/")


class InvalidDocumentError(AssembleError):
    """devcontainer.json をJSONCとして解釈できない場合の例外。"""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"{source} is not valid JSON with comments: {reason}")


@dataclass
class _Frame:
    kind: str
    path: JsonPath
    key: Optional[str] = None
    index: int = 0
    expect_key: bool = True


def _string_end(text: str, start: int) -> int:
    quote = text[start]
    i = start + 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == quote:
            return i + 1
        i += 1
    raise ValueError("unterminated string")


def scan_comments(text: str) -> dict[JsonPath, list[str]]:
    """
    JSONCテキストからコメントを抽出し、直後のキーまたは要素のパスに対応付ける。

    値そのものの解釈は json5 に任せ、ここでは構造の追跡だけを行う。

    Args:
        text: JSONCテキスト

    Returns:
        JSONパスをキー、コメント文字列（区切り記号を含む）のリストを値とする辞書

    Raises:
        ValueError: 文字列またはブロックコメントが閉じていない場合
    """
    comments: dict[JsonPath, list[str]] = {}
    pending: list[str] = []
    stack: list[_Frame] = []

    def attach(path: JsonPath) -> None:
        if pending:
            comments.setdefault(path, []).extend(pending)
            pending.clear()

    def value_path() -> JsonPath:
        if not stack:
            return ()
        frame = stack[-1]
        if frame.kind == "array":
            return frame.path + (frame.index,)
        return frame.path + (frame.key,)

    def start_value() -> JsonPath:
        path = value_path()
        attach(path)
        return path

    i, n = 0, len(text)
    while i < n:
        c = text[i]
        if c.isspace():
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            end = n if end == -1 else end
            pending.append(text[i:end].rstrip("\r"))
            i = end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end == -1:
                raise ValueError("unterminated block comment")
            pending.append(text[i : end + 2])
            i = end + 2
        elif c in "{[":
            path = start_value()
            stack.append(_Frame("object" if c == "{" else "array", path))
            i += 1
        elif c in "}]":
            if stack:
                attach(stack[-1].path + (None,))
                stack.pop()
            i += 1
        elif c == ",":
            if stack:
                frame = stack[-1]
                if frame.kind == "array":
                    frame.index += 1
                else:
                    frame.expect_key = True
            i += 1
        elif c == ":":
            i += 1
        else:
            if c in "\"'":
                end = _string_end(text, i)
            else:
                end = i
                while end < n and text[end] not in _LITERAL_DELIMITERS:
                    end += 1
                if end == i:
                    raise ValueError(f"unexpected character {c!r} at offset {i}")
            token = text[i:end]
            i = end
            frame = stack[-1] if stack else None
            if frame is not None and frame.kind == "object" and frame.expect_key:
                frame.key = json5.loads(token) if token[0] in "\"'" else token
                frame.expect_key = False
                attach(frame.path + (frame.key,))
            else:
                start_value()

    if pending:
        comments.setdefault((None,), []).extend(pending)
    return comments


@dataclass
class DevcontainerDocument:
    """
    組み立て対象の devcontainer.json。

    Attributes:
        data: 挿入順を保つ設定値
        comments: JSONパスに対応付けたコメント
        source_text: 何もマージしていない場合に、そのまま出力する元のテキスト
        single_file: ``.devcontainer.json`` 1ファイルとして出力するかどうか
        files: devcontainer.json 以外にワークスペースへ出力するファイル（相対パス -> 内容）
        warnings: 組み立て時の警告メッセージ
    """

    data: dict[str, Any]
    comments: dict[JsonPath, list[str]] = field(default_factory=dict)
    source_text: Optional[str] = None
    single_file: bool = False
    files: dict[str, bytes] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str, source: str = "devcontainer.json") -> DevcontainerDocument:
        """
        JSONCテキストを解析してドキュメントを作成する。

        Raises:
            InvalidDocumentError: JSONCとして不正、またはトップレベルがオブジェクトでない場合
        """
        try:
            data = json5.loads(text)
            comments = scan_comments(text)
        except ValueError as e:
            raise InvalidDocumentError(source, str(e)) from e
        if not isinstance(data, dict):
            raise InvalidDocumentError(source, "top level must be an object")
        return cls(data=data, comments=comments, source_text=text)

    @property
    def has_comments(self) -> bool:
        return any(self.comments.values())

    @property
    def features(self) -> dict[str, Any]:
        features = self.data.get("features")
        return features if isinstance(features, dict) else {}

    def without_comments(self) -> DevcontainerDocument:
        """コメントと元のテキストを取り除いたコピーを返す。"""
        return replace(self, comments={}, source_text=None)

    def to_json(self, indent: Union[int, str] = "\t") -> str:
        """
        ドキュメントをテキストに変換する。

        元のテキストを保持している場合（コメントを保持し、何もマージしていない場合）は
        それをそのまま返す。
        """
        if self.source_text is not None:
            return self.source_text
        return json.dumps(self.data, indent=indent, ensure_ascii=False) + "\n"
