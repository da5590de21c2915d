import os
from pathlib import Path


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def set_mtime(root: Path, seconds: float) -> None:
    """Give root and everything below it the same mtime."""
    ns = int(seconds * 1_000_000_000)
    if root.is_dir():
        for dirpath, dirnames, filenames in os.walk(root, topdown=False):
            for name in filenames:
                os.utime(os.path.join(dirpath, name), ns=(ns, ns))
            os.utime(dirpath, ns=(ns, ns))
    else:
        os.utime(root, ns=(ns, ns))
