"""
dirprobe のエントリーポイント（薄いラッパー）

- import される実装本体（dirprobe.py）と、CLI実行の入口を分ける
- テストは dirprobe.py を直接 import する
"""

from __future__ import annotations

import sys

if __name__ == "__main__":
    from dirprobe import main

    raise SystemExit(main(sys.argv[1:]))
