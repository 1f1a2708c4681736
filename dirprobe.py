"""
dirprobe: ディレクトリストリームの位置マーカー（telldir / seekdir / rewinddir）の挙動を観察する診断ツール

やること：
1. ディレクトリを開いて最後まで読む（各エントリの直後に tell したマーカーを記録する）
2. K 件目を読んだ直後のマーカーを保存しておく
3. 保存したマーカーへ seek して、最後まで読み直す
4. rewind してから「同じ（古い）マーカー」へ seek し、最後まで読み直す
5. 閉じる

4. の結果はプラットフォーム依存（POSIX でも未規定）。
ここでは「正しいかどうか」を判定せず、返ってきたものをそのまま出力する。
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

# Python 3.8 互換: TypeAlias は 3.10+。3.8/3.9 では typing_extensions を使う。
try:
    from typing import TypeAlias  # Python 3.10+
except ImportError:  # pragma: no cover
    from typing_extensions import TypeAlias  # Python 3.8/3.9

import toolkit
from dirstream import DirStream, OpenFailure, StreamOperationFailure

LOGGER_NAME = "dirprobe"

# 何件目を読んだ直後のマーカーを保存するか（K）
DEFAULT_MARK_AFTER = 2

Emit: TypeAlias = Callable[[str], None]
Pause: TypeAlias = Optional[Callable[[str], None]]
Opener: TypeAlias = Callable[[Path], Any]

PHASE_FIRST = "first"
PHASE_SEEK = "seek"
PHASE_REWIND_SEEK = "rewind-seek"


# -------------------------
# データモデル（DTO）
# -------------------------


@dataclass(frozen=True)
class TraceEntry:
    """
    1回の read の記録（名前 + 直後の tell の値）。

    marker は「このエントリの位置」ではなく「次の read が再開する位置」。
    ここを取り違えると seek したときに1件ずれる。
    """

    name: str
    marker: int


@dataclass(frozen=True)
class PhaseTrace:
    phase: str
    entries: list[TraceEntry]

    @property
    def names(self) -> list[str]:
        return [e.name for e in self.entries]


@dataclass(frozen=True)
class WalkReport:
    """
    walk 1回分の結果。

    stored_marker が None なのは「K 件に届かずマーカーを保存できなかった」場合。
    """

    directory: Path
    mark_after: int
    stored_marker: int | None
    phases: list[PhaseTrace]

    def phase(self, name: str) -> PhaseTrace:
        for p in self.phases:
            if p.phase == name:
                return p
        raise KeyError(name)


# -------------------------
# 走査（コアロジック）
# -------------------------


def format_entry(entry: TraceEntry) -> str:
    return f"{entry.name}\t{entry.marker}"


def read_to_end(stream: Any, phase: str, emit: Emit, mark_after: int = 0) -> tuple[PhaseTrace, int | None]:
    """
    stream を終端まで読み、(PhaseTrace, 保存したマーカー) を返す。

    - read の直後に tell し、名前とマーカーを emit する
    - mark_after > 0 なら、1始まりの件数が mark_after に達した回のマーカーを保存する
      （件数は単調増加なので1回しか達しない）
    """
    entries: list[TraceEntry] = []
    stored: int | None = None
    while True:
        ent = stream.read()
        if ent is None:
            break
        item = TraceEntry(name=ent.name, marker=stream.tell())
        entries.append(item)
        emit(format_entry(item))
        if mark_after > 0 and len(entries) == mark_after:
            stored = item.marker
            emit(f"storing marker {stored}")
    return PhaseTrace(phase=phase, entries=entries), stored


def seek_stored(stream: Any, stored: int | None, logger: logging.Logger) -> None:
    """
    保存したマーカーへ seek する。

    マーカーが保存されていない（None）ときは rewind する（先頭へ seek した扱い）。
    """
    if stored is None:
        logger.warning("no marker stored; seeking to the start of the stream instead")
        stream.rewind()
        return
    stream.seek(stored)


def _no_pause(label: str) -> None:
    return None


def walk(
    path: Path | str,
    *,
    mark_after: int = DEFAULT_MARK_AFTER,
    emit: Emit = print,
    pause: Pause = None,
    opener: Opener = DirStream.open,
    logger: logging.Logger | None = None,
) -> WalkReport:
    """
    ディレクトリストリームを開き、読み / seek / rewind+seek の各パスを順に実行して閉じる。

    - open に失敗したら OpenFailure をそのまま投げる（何も読まず、何も emit しない）
    - ストリームは with で1回だけ閉じる（途中で例外が出ても閉じる）
    - read / tell / close の失敗は StreamOperationFailure として呼び出し元へ
    """
    if mark_after < 1:
        raise ValueError(f"mark_after must be >= 1: {mark_after}")

    log = logger or logging.getLogger(LOGGER_NAME)
    wait = pause or _no_pause
    root = Path(path)

    stream = opener(root)
    log.info("opened %s", root)
    with stream:
        emit(f"directory: {root}")

        emit(f"== {PHASE_FIRST} pass ==")
        first, stored = read_to_end(stream, PHASE_FIRST, emit, mark_after=mark_after)
        if stored is None:
            log.warning("only %d entries read; fewer than mark-after=%d", len(first.entries), mark_after)

        wait(PHASE_SEEK)
        emit("no marker stored; rewinding" if stored is None else f"seeking back to {stored}")
        seek_stored(stream, stored, log)
        emit(f"== {PHASE_SEEK} pass ==")
        seek_pass, _ = read_to_end(stream, PHASE_SEEK, emit)

        wait(PHASE_REWIND_SEEK)
        emit("rewinding")
        stream.rewind()
        emit("no marker stored; rewinding again" if stored is None else f"seeking to {stored} after rewind")
        seek_stored(stream, stored, log)
        emit(f"== {PHASE_REWIND_SEEK} pass ==")
        rewind_pass, _ = read_to_end(stream, PHASE_REWIND_SEEK, emit)

    log.info("closed %s", root)
    return WalkReport(
        directory=root,
        mark_after=mark_after,
        stored_marker=stored,
        phases=[first, seek_pass, rewind_pass],
    )


# -------------------------
# CLIパース（I/O境界：入力）
# -------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    CLI引数を定義して、解析結果（args）を返す。

    directory は CLI でしか受け取らない（env/config からは読まない）。
    """
    parser = argparse.ArgumentParser(
        description="Probe directory stream positioning (telldir/seekdir/rewinddir) and print a trace."
    )

    parser.add_argument(
        "directory",
        nargs="?",
        default=None,
        type=Path,
        help="読み取るディレクトリ（省略時はカレントディレクトリ）",
    )
    parser.add_argument(
        "--mark-after",
        type=int,
        default=DEFAULT_MARK_AFTER,
        help=f"何件目を読んだ直後のマーカーを保存するか（default: {DEFAULT_MARK_AFTER}）",
    )
    parser.add_argument("--pause", action="store_true", help="各フェーズの間で Enter 待ちをする")
    parser.add_argument("--verbose", action="store_true", help="詳細ログを stderr に出す")
    parser.add_argument("--json", action="store_true", help="トレースを JSON で stdout に出す")
    parser.add_argument("--out", type=Path, default=None, help="Write the JSON payload to a file.")
    parser.add_argument("--post", type=str, default="", help="JSON payload を POST する URL")
    parser.add_argument("--timeout", type=float, default=10.0, help="HTTP POST のタイムアウト秒数")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON config file path. CLI args override config.",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load DIRPROBE_* variables from a .env file (wins over the OS environment).",
    )

    return parser.parse_args(argv)


# -------------------------
# config / env（I/O境界：入力）
# -------------------------


def load_config(path: Path, logger: logging.Logger) -> dict[str, Any]:
    """
    JSON設定ファイルを読み込む。

    例: {"mark_after": 3, "json": true, "out": "trace.json"}
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("config load failed: %s (%s)", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.error("config must be a JSON object: %s", path)
        return {}
    return data


_CONFIG_TYPES: dict[str, Callable[[Any], Any]] = {
    "mark_after": int,
    "timeout": float,
    "post": str,
    "out": lambda v: Path(str(v)),
}


def _config_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return toolkit.parse_flag(str(value))


def apply_config(args: argparse.Namespace, cfg: dict[str, Any], provided: set[str], logger: logging.Logger) -> None:
    """
    config の値で「CLI 未指定の項目だけ」を埋める。

    型が合わない値（"mark_after": "abc" など）は ConfigError。
    """
    converters: dict[str, Callable[[Any], Any]] = dict(_CONFIG_TYPES)
    converters.update({flag: _config_flag for flag in ("pause", "verbose", "json")})

    for key, convert in converters.items():
        if "--" + key.replace("_", "-") in provided or key not in cfg:
            continue
        try:
            setattr(args, key, convert(cfg[key]))
        except (TypeError, ValueError) as exc:
            raise toolkit.ConfigError(f"config {key}={cfg[key]!r}: {exc}") from None

    if "directory" in cfg:
        logger.warning("config key 'directory' is ignored; pass the directory on the command line")


def apply_env(args: argparse.Namespace, reader: toolkit.EnvReader, logger: logging.Logger) -> None:
    """
    DIRPROBE_* の値を args に反映する（CLI > env > config）。

    対応する環境変数：
      DIRPROBE_MARK_AFTER, DIRPROBE_TIMEOUT, DIRPROBE_POST, DIRPROBE_OUT,
      DIRPROBE_PAUSE, DIRPROBE_VERBOSE, DIRPROBE_JSON
    """
    values: dict[str, Any] = {
        "mark_after": reader.integer("mark_after"),
        "timeout": reader.number("timeout"),
        "post": reader.text("post"),
        "out": reader.path("out"),
        "pause": reader.flag("pause"),
        "verbose": reader.flag("verbose"),
        "json": reader.flag("json"),
    }
    for key, value in values.items():
        if value is not None:
            setattr(args, key, value)

    logger.info("env applied (CLI overrides env)")


def resolve_effective_args(argv: list[str] | None) -> tuple[argparse.Namespace, logging.Logger]:
    """
    CLI / env / config を統合して、最終的に使う args と logger を返す。

    env / config の値が変換できなければ toolkit.ConfigError。
    """
    args = parse_args(argv)
    provided = toolkit.parse_provided_options(argv)

    # まずはCLIのverboseで暫定loggerを作る（env/configでverboseが変わったら作り直す）
    logger = toolkit.setup_logger(LOGGER_NAME, args.verbose)

    env_file: dict[str, str] = {}
    if args.env_file is not None:
        env_file = toolkit.load_env_file(args.env_file, logger)
    reader = toolkit.EnvReader("DIRPROBE", env_file, provided)

    if args.config is None:
        args.config = reader.path("config")

    if args.config is not None:
        apply_config(args, load_config(args.config, logger), provided, logger)

    apply_env(args, reader, logger)

    logger = toolkit.setup_logger(LOGGER_NAME, args.verbose)
    return args, logger


def validate_args(args: argparse.Namespace) -> int:
    """入力検証。失敗したら終了コード 2 を返す。ディレクトリの存在は open 側で判定する。"""
    if args.mark_after < 1:
        print(f"Error: --mark-after の値は1以上でなければなりません: {args.mark_after}", file=sys.stderr)
        return 2
    if args.timeout <= 0:
        print(f"Error: --timeout の値は0より大きい必要があります: {args.timeout}", file=sys.stderr)
        return 2
    return 0


# -------------------------
# 出力（I/O境界：stdout / ファイル / HTTP）
# -------------------------


def build_json_payload(report: WalkReport) -> dict[str, Any]:
    return {
        "directory": str(report.directory),
        "mark_after": report.mark_after,
        "stored_marker": report.stored_marker,
        "phases": [
            {
                "phase": p.phase,
                "count": len(p.entries),
                "entries": [{"name": e.name, "marker": e.marker} for e in p.entries],
            }
            for p in report.phases
        ],
    }


def _discard(line: str) -> None:
    return None


def interactive_pause(label: str) -> None:
    """
    Enter を待つ。プロンプトは stderr へ（stdout はトレース / JSON 専用）。

    stdin が閉じている（EOF）なら待たずに次のパスへ進む。
    """
    print(f"-- next: {label} pass (press Enter) --", file=sys.stderr, flush=True)
    try:
        input()
    except EOFError:
        return


def main(argv: list[str] | None = None) -> int:
    """
    実行入口（テストからも呼べる形）。

    終了コード：0 = 成功 / 2 = 引数・設定不正、open 失敗 / 1 = ストリーム操作や出力の失敗
    """
    try:
        args, logger = resolve_effective_args(argv)
    except toolkit.ConfigError as exc:
        print(f"Error: 設定値が不正です: {exc}", file=sys.stderr)
        return 2

    rc = validate_args(args)
    if rc != 0:
        return rc

    directory = args.directory if args.directory is not None else Path(".")
    root = directory.expanduser().resolve()

    # --json のときは stdout を JSON 専用にする
    emit: Emit = _discard if args.json else print
    pause: Pause = interactive_pause if args.pause else None

    logger.info("walk start: directory=%s mark_after=%d", root, args.mark_after)
    try:
        report = walk(root, mark_after=args.mark_after, emit=emit, pause=pause, logger=logger)
    except OpenFailure as exc:
        print(f"Error: ディレクトリを開けません: {exc}", file=sys.stderr)
        return 2
    except StreamOperationFailure as exc:
        logger.error("directory stream operation failed: %s", exc)
        return 1
    logger.info("walk done: stored_marker=%s", report.stored_marker)

    if not (args.json or args.post or args.out is not None):
        return 0

    payload = build_json_payload(report)

    if args.json:
        print(json.dumps(payload, ensure_ascii=False, indent=2))

    if args.out is not None and not toolkit.write_json_file(args.out, payload, logger):
        return 1

    if args.post and not toolkit.post_json(args.post, payload, timeout=args.timeout, logger=logger):
        return 1

    return 0


def run() -> None:
    raise SystemExit(main(sys.argv[1:]))
