"""
例外定義モジュール

コアの各コンポーネントが送出する型付き例外を定義します。
コアは例外を送出するだけで、ログ出力やユーザーへの表示はCLI層が担当します。
"""

from __future__ import annotations


class DevcontainerTemplatesError(Exception):
    """
    このパッケージが送出するすべての例外の基底クラス。

    CLI層はこのクラスのサブクラスごとに終了コードを割り当てる。
    """

    exit_code = 1


# ---------------------------------------------------------------------------
# ParseError
# ---------------------------------------------------------------------------


class ParseError(DevcontainerTemplatesError, ValueError):
    """呼び出し側の入力が不正な場合の例外。リトライはしない。"""

    exit_code = 2


class InvalidReferenceError(ParseError):
    """
    OCI参照文字列が不正な場合に発生する例外。

    Attributes:
        reference: 解析に失敗した文字列
        reason: 失敗理由
    """

    def __init__(self, reference: str, reason: str) -> None:
        self.reference = reference
        self.reason = reason
        super().__init__(f"Invalid OCI reference {reference!r}: {reason}")


# ---------------------------------------------------------------------------
# CollectionIndexError
# ---------------------------------------------------------------------------


class CollectionIndexError(DevcontainerTemplatesError):
    """ローカルのコレクションインデックスに関する例外。"""

    exit_code = 3


class IndexMissingError(CollectionIndexError):
    """インデックスファイルが存在しない場合の例外（先に refresh が必要）。"""

    def __init__(self, path: object) -> None:
        self.path = path
        super().__init__(f"Index file not found: {path}")


class IndexMalformedError(CollectionIndexError):
    """インデックスファイルの形式が不正な場合の例外。"""

    def __init__(self, path: object, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed index file {path}: {reason}")


class EntryNotFoundError(CollectionIndexError, KeyError):
    """インデックスに指定されたIDのエントリが存在しない場合の例外。"""

    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__(entry_id)

    def __str__(self) -> str:
        return f"No template or feature found for {self.entry_id!r}"


# ---------------------------------------------------------------------------
# RegistryError
# ---------------------------------------------------------------------------


class RegistryError(DevcontainerTemplatesError):
    """OCIレジストリとの通信に関する例外。"""

    exit_code = 4

    def __init__(self, reference: object, message: str) -> None:
        self.reference = reference
        super().__init__(f"{reference}: {message}")


class RegistryNotFoundError(RegistryError):
    """参照先のマニフェストまたはblobが存在しない場合の例外。"""


class RegistryUnauthorizedError(RegistryError):
    """認証に失敗した場合の例外。リトライせずにそのまま伝播する。"""


class RegistryTransportError(RegistryError):
    """ネットワーク障害。上限回数までリトライした後に送出される。"""


# ---------------------------------------------------------------------------
# CacheError
# ---------------------------------------------------------------------------


class CacheError(DevcontainerTemplatesError):
    """アーティファクトキャッシュに関する例外。"""

    exit_code = 5

    def __init__(self, digest: str, message: str) -> None:
        self.digest = digest
        super().__init__(f"{digest}: {message}")


class CacheCorruptError(CacheError):
    """レイヤーの内容がtarとして解釈できない、またはダイジェストが一致しない場合の例外。"""


class CacheIoError(CacheError):
    """ローカルファイルシステムの操作に失敗した場合の例外。"""


# ---------------------------------------------------------------------------
# AssembleError
# ---------------------------------------------------------------------------


class AssembleError(DevcontainerTemplatesError):
    """devcontainer.json の組み立てに関する例外。"""

    exit_code = 6


class InvalidOptionError(AssembleError):
    """
    オプション名またはオプション値がスキーマに適合しない場合の例外。

    Attributes:
        owner: オプションを持つテンプレートまたはフィーチャーのID
        key: 問題のオプション名
    """

    def __init__(self, owner: str, key: str, reason: str) -> None:
        self.owner = owner
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid option {key!r} for {owner}: {reason}")


class CommentsUnsupportedError(AssembleError):
    """コメントを保持したままのマージが要求された場合の例外。"""

    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(
            f"Cannot merge features into {source} while preserving its comments; "
            "remove the comments to continue"
        )


class MissingTemplateError(AssembleError):
    """テンプレートまたはフィーチャーの必須ファイルが見つからない場合の例外。"""

    def __init__(self, owner: str, filename: str) -> None:
        self.owner = owner
        self.filename = filename
        super().__init__(f"{filename} was not found in {owner}")
