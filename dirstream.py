"""
ディレクトリストリーム（opendir / readdir / telldir / seekdir / rewinddir / closedir）の薄いラッパー

狙い：
- os.scandir では「位置マーカー（telldir）」と「seek（seekdir）」が扱えない
- なので cffi の ABI モードで C ライブラリを直接呼ぶ（ビルド不要）
- 呼び出し側（dirprobe）は DirStream だけを見ればよいようにする

注意：
- struct dirent のレイアウトは Linux（64bit）前提
- マーカー（telldir の戻り値）は「同じストリームに対してだけ」意味を持つ
"""

from __future__ import annotations

import errno
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from cffi import FFI

_CDEF = """
    typedef void DIR;

    struct dirent {
        uint64_t       d_ino;
        int64_t        d_off;
        unsigned short d_reclen;
        unsigned char  d_type;
        char           d_name[256];
    };

    DIR *opendir(const char *name);
    struct dirent *readdir(DIR *dirp);
    long telldir(DIR *dirp);
    void seekdir(DIR *dirp, long loc);
    void rewinddir(DIR *dirp);
    int closedir(DIR *dirp);
"""

ffi = FFI()
ffi.cdef(_CDEF)

_lib: Any = None


class OpenFailure(OSError):
    """ディレクトリを開けなかった（存在しない / ディレクトリではない / 権限なし）。"""


class StreamOperationFailure(OSError):
    """open 以降の操作（read / tell / seek / rewind / close）が失敗した。"""


def _check_platform() -> None:
    """_CDEF の struct dirent（64bit の d_ino / d_off）と合うプラットフォームか確認する。"""
    if not sys.platform.startswith("linux"):
        raise StreamOperationFailure(
            errno.ENOSYS, f"directory stream binding supports Linux only (platform: {sys.platform})"
        )
    if ffi.sizeof("long") != 8:
        raise StreamOperationFailure(
            errno.ENOSYS, f"directory stream binding needs a 64-bit long (got {ffi.sizeof('long') * 8}-bit)"
        )


def _libc() -> Any:
    global _lib
    if _lib is None:
        _check_platform()
        _lib = ffi.dlopen(None)
    return _lib


@dataclass(frozen=True)
class DirEntry:
    """
    readdir 1回分の結果をコピーしたDTO。

    C 側の struct dirent は次の readdir で上書きされうるので、
    必要な値だけ Python 側に取り出して持つ。
    """

    name: str
    inode: int
    d_type: int


class DirStream:
    """
    開いたディレクトリストリーム。

    状態：open → (read / seek / rewind)* → closed
    - close は1回だけ実際に closedir を呼ぶ（2回目以降は何もしない）
    - close 後の read / tell / seek / rewind は StreamOperationFailure
    """

    def __init__(self, path: Path, handle: Any) -> None:
        self.path = path
        self._handle = handle

    @classmethod
    def open(cls, path: str | os.PathLike[str]) -> "DirStream":
        p = Path(path)
        lib = _libc()
        ffi.errno = 0
        handle = lib.opendir(os.fsencode(p))
        if handle == ffi.NULL:
            code = ffi.errno or errno.EIO
            raise OpenFailure(code, os.strerror(code), str(p))
        return cls(p, handle)

    @property
    def closed(self) -> bool:
        return self._handle is None

    def _require_open(self, op: str) -> Any:
        if self._handle is None:
            raise StreamOperationFailure(errno.EBADF, f"{op} on closed directory stream", str(self.path))
        return self._handle

    def read(self) -> DirEntry | None:
        """次のエントリを返す。終端なら None。"""
        handle = self._require_open("read")
        ffi.errno = 0
        ent = _libc().readdir(handle)
        if ent == ffi.NULL:
            code = ffi.errno
            if code:
                raise StreamOperationFailure(code, os.strerror(code), str(self.path))
            return None
        return DirEntry(
            name=os.fsdecode(ffi.string(ent.d_name)),
            inode=int(ent.d_ino),
            d_type=int(ent.d_type),
        )

    def tell(self) -> int:
        """
        現在の読み取り位置（マーカー）を返す。

        マーカーは「直前に読んだエントリ」ではなく「次の read が再開する位置」を表す。
        """
        handle = self._require_open("tell")
        ffi.errno = 0
        loc = _libc().telldir(handle)
        if loc == -1:
            code = ffi.errno or errno.EINVAL
            raise StreamOperationFailure(code, os.strerror(code), str(self.path))
        return int(loc)

    def seek(self, marker: int) -> None:
        handle = self._require_open("seek")
        _libc().seekdir(handle, marker)

    def rewind(self) -> None:
        handle = self._require_open("rewind")
        _libc().rewinddir(handle)

    def close(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        ffi.errno = 0
        if _libc().closedir(handle) != 0:
            code = ffi.errno or errno.EIO
            raise StreamOperationFailure(code, os.strerror(code), str(self.path))

    def __iter__(self) -> Iterator[DirEntry]:
        while True:
            ent = self.read()
            if ent is None:
                return
            yield ent

    def __enter__(self) -> "DirStream":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<DirStream {self.path} ({state})>"
