"""Asset placement.

Copies the project's asset directory next to the built binary, preserving
the directory structure. Files whose size and modification time already
match are left alone. Assets whose top-level name collides with a file the
build owns are skipped with a warning.
"""

import logging
import shutil
from pathlib import Path
from typing import Iterable, List


def _up_to_date(src: Path, dst: Path) -> bool:
    if not dst.exists():
        return False
    s, d = src.stat(), dst.stat()
    return s.st_size == d.st_size and int(s.st_mtime) == int(d.st_mtime)


def copy_assets(assets_dir: Path, output_dir: Path, reserved: Iterable[str] = ()) -> List[Path]:
    """Copy assets recursively into the output directory.

    Args:
        assets_dir: Project asset directory; nothing happens if it is absent
        output_dir: Directory holding the built binary
        reserved: Entry names in output_dir that assets must not replace

    Returns:
        Destination paths of the files that were copied
    """
    assets_dir = Path(assets_dir)
    if not assets_dir.is_dir():
        return []

    reserved = {name.lower() for name in reserved}
    copied = []
    for src in sorted(assets_dir.rglob("*")):
        if not src.is_file():
            continue
        relative = src.relative_to(assets_dir)
        if relative.parts[0].lower() in reserved:
            logging.warning(f"Skipping asset {relative.as_posix()}: {relative.parts[0]} is part of the build output")
            continue
        dst = Path(output_dir) / relative
        if _up_to_date(src, dst):
            continue
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
        copied.append(dst)

    if copied:
        logging.info(f"Copied {len(copied)} asset(s) to {output_dir}")
    return copied
