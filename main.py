"""
Fluenta スピーキング評価 - メインエントリーポイント
"""
import sys

from fluenta.cli import main

if __name__ == "__main__":
    sys.exit(main())
