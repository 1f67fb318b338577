#!/usr/bin/env python3
"""Fail when two services ship test modules with the same basename.

pyproject.toml sets --import-mode=importlib, which tolerates repeated
basenames. Unique names keep the suite collectable when that option is
overridden with --import-mode=prepend.
"""
from collections import defaultdict
from pathlib import Path
import sys


def find_duplicates(root: Path) -> dict:
    seen = defaultdict(list)
    for path in sorted(root.glob('services/*/tests/test_*.py')):
        seen[path.name].append(path)
    return {name: paths for name, paths in seen.items() if len(paths) > 1}


def main() -> int:
    dups = find_duplicates(Path(__file__).resolve().parents[1])
    if not dups:
        print('No duplicate test basenames found')
        return 0
    print('Duplicate test basenames found:')
    for name, paths in sorted(dups.items()):
        print(' -', name)
        for p in paths:
            print('    ', p)
    return 1


if __name__ == '__main__':
    sys.exit(main())
