"""
レジストリ認証モジュール

docker login 済みの認証情報（config.json）を読み込み、
レジストリのBearerトークン認証チャレンジに応答します。
認証情報をコードに埋め込むことはありません。
"""

from __future__ import annotations

import base64
import json
import logging
import os
import re
import threading
from collections.abc import Generator
from pathlib import Path
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


def docker_config_path() -> Path:
    """docker CLIの config.json のパスを返す（``$DOCKER_CONFIG`` を優先）。"""
    config_dir = os.environ.get("DOCKER_CONFIG")
    if config_dir:
        return Path(config_dir) / "config.json"
    return Path.home() / ".docker" / "config.json"


class DockerCredentials:
    """
    レジストリごとのユーザー名・パスワード。

    docker CLIの ``auths`` セクションのみをサポートする。
    credsStore などの外部ヘルパーは使用しない。
    """

    def __init__(self, credentials: Optional[dict[str, tuple[str, str]]] = None) -> None:
        self._credentials = dict(credentials or {})

    @classmethod
    def from_file(cls, path: Path) -> DockerCredentials:
        """
        config.json から認証情報を読み込む。

        ファイルが存在しない、または読み込めない場合は空の認証情報を返す。
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return cls()
        except (OSError, ValueError) as e:
            logger.debug("Ignoring unreadable docker config %s: %s", path, e)
            return cls()

        credentials: dict[str, tuple[str, str]] = {}
        auths = data.get("auths", {}) if isinstance(data, dict) else {}
        for host, entry in auths.items():
            if not isinstance(entry, dict):
                continue
            pair = _decode_auth_entry(entry)
            if pair is not None:
                credentials[_normalize_host(host)] = pair

        if isinstance(data, dict) and data.get("credsStore"):
            logger.debug("Credential helper %s is not supported; using anonymous access", data["credsStore"])
        return cls(credentials)

    @classmethod
    def from_environment(cls) -> DockerCredentials:
        return cls.from_file(docker_config_path())

    def get(self, host: str) -> Optional[tuple[str, str]]:
        return self._credentials.get(_normalize_host(host))


def _normalize_host(host: str) -> str:
    # "https://index.docker.io/v1/" のようなURL形式のキーも受け付ける
    host = re.sub(r"^https?://", "", host.strip())
    return host.split("/", 1)[0].lower()


def _decode_auth_entry(entry: dict[str, str]) -> Optional[tuple[str, str]]:
    if entry.get("username") and entry.get("password"):
        return entry["username"], entry["password"]
    encoded = entry.get("auth")
    if not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    username, password = decoded.split(":", 1)
    return username, password


def parse_challenge(header: str) -> Optional[tuple[str, dict[str, str]]]:
    """
    WWW-Authenticate ヘッダーを解析する。

    Returns:
        (スキーム（小文字）, パラメータ辞書)、解析できない場合はNone
    """
    header = header.strip()
    if not header:
        return None
    scheme, _, rest = header.partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


class RegistryAuth(httpx.Auth):
    """
    OCIレジストリのトークン認証フロー。

    401応答の Bearer チャレンジに対してトークンを取得して再送する。
    認証情報がなければ匿名トークンを要求する。トークンはスコープごとに保持する。
    """

    def __init__(self, credentials: Optional[DockerCredentials] = None) -> None:
        self._credentials = credentials if credentials is not None else DockerCredentials.from_environment()
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()

    def _basic_header(self, host: str) -> Optional[str]:
        pair = self._credentials.get(host)
        if pair is None:
            return None
        username, password = pair
        encoded = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        return f"Basic {encoded}"

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        host = request.url.netloc.decode("ascii")
        cache_key = f"{host}{_repository_path(request.url.path)}"
        with self._lock:
            token = self._tokens.get(cache_key)
        if token:
            request.headers["Authorization"] = f"Bearer {token}"

        response = yield request
        if response.status_code != 401:
            return

        challenge = parse_challenge(response.headers.get("WWW-Authenticate", ""))
        if challenge is None:
            return
        scheme, params = challenge
        basic = self._basic_header(host)

        if scheme == "basic":
            if basic is None:
                return
            request.headers["Authorization"] = basic
            yield request
            return

        if scheme != "bearer" or "realm" not in params:
            return

        query = {k: v for k, v in params.items() if k in ("service", "scope")}
        token_request = httpx.Request("GET", params["realm"], params=query)
        if basic is not None:
            token_request.headers["Authorization"] = basic
        token_response = yield token_request
        token_response.read()

        token = None
        if token_response.status_code == 200:
            try:
                payload = token_response.json()
            except ValueError:
                payload = {}
            token = payload.get("token") or payload.get("access_token")
        if not token:
            logger.debug("Token request to %s failed with %s", params["realm"], token_response.status_code)
            request.headers.pop("Authorization", None)
            yield request
            return

        with self._lock:
            self._tokens[cache_key] = token
        request.headers["Authorization"] = f"Bearer {token}"
        yield request


def _repository_path(path: str) -> str:
    # /v2/<repository>/manifests/<ref> から /<repository> を取り出す
    match = re.match(r"^/v2(/.+?)/(?:manifests|blobs)/", path)
    return match.group(1) if match else path
