"""
実行時設定

データディレクトリやレジストリ通信の設定を環境変数から読み込みます。
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

import click
from pydantic import BaseModel, Field

from .index import DEFAULT_INDEX_REFERENCE, INDEX_FILENAME

APP_NAME = "devcontainer-templates"

ENV_HOME = "DEVCONTAINER_TEMPLATES_HOME"
ENV_INDEX = "DEVCONTAINER_TEMPLATES_INDEX"
ENV_TIMEOUT = "DEVCONTAINER_TEMPLATES_TIMEOUT"
ENV_RETRIES = "DEVCONTAINER_TEMPLATES_RETRIES"


class Settings(BaseModel):
    """
    実行時設定。

    Attributes:
        data_dir: インデックスとキャッシュを保存するディレクトリ
        index_reference: コレクションインデックスのOCI参照
        timeout: レジストリ通信のタイムアウト（秒）
        max_retries: 通信エラー時のリトライ回数
    """

    data_dir: Path
    index_reference: str = DEFAULT_INDEX_REFERENCE
    timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)

    @property
    def index_path(self) -> Path:
        return self.data_dir / INDEX_FILENAME

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / "artifacts"

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        """
        環境変数から設定を作成する。

        未設定の項目は既定値を使う。データディレクトリの既定値は
        OSごとのアプリケーションディレクトリ（click.get_app_dir）。
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {
            "data_dir": Path(env.get(ENV_HOME) or click.get_app_dir(APP_NAME)),
        }
        if env.get(ENV_INDEX):
            values["index_reference"] = env[ENV_INDEX]
        if env.get(ENV_TIMEOUT):
            values["timeout"] = env[ENV_TIMEOUT]
        if env.get(ENV_RETRIES):
            values["max_retries"] = env[ENV_RETRIES]
        return cls.model_validate(values)
