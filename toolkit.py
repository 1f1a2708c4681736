"""
dirprobe の設定・出力まわりの部品

- EnvReader: `<PREFIX>_*` 環境変数を型つきで読む（.env が OS 環境変数に勝つ、CLI 明示は読まない）
- load_env_file: --env-file の読み込み
- setup_logger: stderr 用 logger
- write_json_file / post_json: トレース payload の保存と送信

変換できない値（`DIRPROBE_MARK_AFTER=abc` など）は ConfigError にして呼び出し元へ返す。
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Callable, Mapping, TextIO, TypeVar

import httpx

LOG_FORMAT = "[%(levelname)s] %(message)s"

_ENV_LINE = re.compile(r"^(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<val>.*)$")
_QUOTED = re.compile(r"""^(?P<q>['"])(?P<body>.*)(?P=q)$""")

_FLAG_WORDS = {
    "1": True, "true": True, "yes": True, "y": True, "on": True,
    "0": False, "false": False, "no": False, "n": False, "off": False, "": False,
}

T = TypeVar("T")


class ConfigError(ValueError):
    """env / config の値が期待する型に変換できない。"""


def parse_provided_options(argv: list[str] | None) -> set[str]:
    """CLI で明示された `--option` 名の集合（`--mark-after=3` は `--mark-after`）。"""
    return {token.split("=", 1)[0] for token in argv or () if token.startswith("--")}


def parse_flag(value: str, name: str = "value") -> bool:
    """
    bool 用の文字列を解釈する。知らない単語は ConfigError。

    `DIRPROBE_JSON=maybe` を黙って True にしないため。
    """
    try:
        return _FLAG_WORDS[value.strip().lower()]
    except KeyError:
        raise ConfigError(f"{name}: expected a boolean (1/0, true/false, yes/no, on/off), got {value!r}") from None


def load_env_file(path: Path, logger: logging.Logger) -> dict[str, str]:
    """
    KEY=VALUE 形式の .env を読む。読めなければ logger.error して空 dict。

    `export` 付き、値のクォート、コメント、空行に対応。
    KEY=VALUE として読めない行は行番号つきで info ログを出して飛ばす。
    """
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        logger.error("env file load failed: %s (%s)", path, exc)
        return {}

    env: dict[str, str] = {}
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        m = _ENV_LINE.match(line)
        if m is None:
            logger.info("%s:%d: not a KEY=VALUE line, skipped", path, lineno)
            continue
        val = m.group("val").strip()
        q = _QUOTED.match(val)
        env[m.group("key")] = q.group("body") if q else val
    return env


class EnvReader:
    """
    `<prefix>_<KEY>` を .env（--env-file）→ OS 環境変数の順に探して型変換する。

    - CLI で `--key` が明示されていれば None（CLI 優先）
    - 値が空なら None（未設定扱い）
    """

    def __init__(
        self,
        prefix: str,
        env_file: Mapping[str, str] | None = None,
        provided: set[str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.prefix = prefix
        self.env_file = dict(env_file or {})
        self.provided = provided or set()
        self.environ = os.environ if environ is None else environ

    def var_name(self, key: str) -> str:
        return f"{self.prefix}_{key.upper()}"

    def raw(self, key: str) -> str | None:
        name = self.var_name(key)
        for source in (self.env_file, self.environ):
            value = source.get(name)
            if value:
                return value
        return None

    def _get(self, key: str, convert: Callable[[str], T]) -> T | None:
        if "--" + key.replace("_", "-") in self.provided:
            return None
        value = self.raw(key)
        if value is None:
            return None
        try:
            return convert(value)
        except ValueError as exc:
            raise ConfigError(f"{self.var_name(key)}={value!r}: {exc}") from None

    def text(self, key: str) -> str | None:
        return self._get(key, str)

    def path(self, key: str) -> Path | None:
        return self._get(key, Path)

    def integer(self, key: str) -> int | None:
        return self._get(key, int)

    def number(self, key: str) -> float | None:
        return self._get(key, float)

    def flag(self, key: str) -> bool | None:
        return self._get(key, lambda v: parse_flag(v, self.var_name(key)))


def setup_logger(name: str, verbose: bool, stream: TextIO | None = None) -> logging.Logger:
    """
    stderr（または stream）にだけ書く logger を作り直して返す。

    stdout はトレースと JSON の出力専用。
    """
    logger = logging.getLogger(name)
    for old in list(logger.handlers):
        logger.removeHandler(old)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO if verbose else logging.WARNING)
    logger.propagate = False
    return logger


def encode_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)


def write_json_file(path: Path, payload: dict[str, Any], logger: logging.Logger) -> bool:
    """payload をファイルに保存する。失敗は logger.error して False。"""
    target = path.expanduser().resolve()
    try:
        target.write_text(encode_payload(payload) + "\n", encoding="utf-8")
    except OSError as exc:
        logger.error("failed to write payload to %s: %s", target, exc)
        return False
    logger.info("payload written to %s", target)
    return True


def post_json(url: str, payload: dict[str, Any], timeout: float, logger: logging.Logger) -> bool:
    """
    payload を JSON で POST する。接続エラーと 4xx/5xx は False。

    送る本文は write_json_file と同じエンコード。
    """
    body = encode_payload(payload).encode("utf-8")
    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.post(url, content=body, headers={"Content-Type": "application/json"})
    except httpx.HTTPError as exc:
        logger.error("POST %s failed: %s", url, exc)
        return False

    logger.info("POST %s -> %d (%d bytes)", url, resp.status_code, len(body))
    if resp.is_error:
        logger.warning("response body (truncated): %s", resp.text[:200])
        return False
    return True
