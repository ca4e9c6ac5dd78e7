"""Filesystem operations behind the fileCopy / fileMove / fileDelete nodes."""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from .errors import IoError, ValidationError


def _io(exc: OSError) -> IoError:
    return IoError(str(exc))


def _delete_existing(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as exc:
        raise _io(exc) from exc


def _ensure_parent(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise _io(exc) from exc


def _copy_file(src: Path, dst: Path, overwrite: bool) -> None:
    if dst.exists():
        if not overwrite:
            raise ValidationError(f"target file already exists: {dst}")
        _delete_existing(dst)
    _ensure_parent(dst)
    try:
        shutil.copy2(src, dst)
    except OSError as exc:
        raise _io(exc) from exc


def _copy_dir(src: Path, dst: Path, overwrite: bool) -> None:
    if dst.exists():
        if not overwrite:
            raise ValidationError(f"target directory already exists: {dst}")
        _delete_existing(dst)
    try:
        dst.mkdir(parents=True, exist_ok=True)
        children = sorted(src.iterdir())
    except OSError as exc:
        raise _io(exc) from exc
    for child in children:
        if child.is_dir():
            _copy_dir(child, dst / child.name, overwrite)
        else:
            _copy_file(child, dst / child.name, overwrite)


def copy_path(source: str, target: str, overwrite: bool = False, recursive: bool = True) -> None:
    src, dst = Path(source), Path(target)
    if not src.exists():
        raise ValidationError(f"source path does not exist: {source}")
    if src.is_file():
        _copy_file(src, dst, overwrite)
        return
    if not recursive:
        raise ValidationError(f"source is a directory; enable recursive copy: {source}")
    _copy_dir(src, dst, overwrite)


def move_path(source: str, target: str, overwrite: bool = False) -> None:
    """Rename `source` to `target`, copying then deleting across devices."""
    src, dst = Path(source), Path(target)
    if not src.exists():
        raise ValidationError(f"source path does not exist: {source}")
    if dst.exists():
        if not overwrite:
            raise ValidationError(f"target path already exists: {target}")
        _delete_existing(dst)
    _ensure_parent(dst)

    try:
        os.rename(src, dst)
    except OSError:
        copy_path(source, target, overwrite, recursive=True)
        delete_path(source, recursive=True)


def delete_path(path: str, recursive: bool = True) -> None:
    target = Path(path)
    if not target.exists():
        raise ValidationError(f"path does not exist: {path}")
    try:
        if target.is_file():
            target.unlink()
        elif recursive:
            shutil.rmtree(target)
        else:
            target.rmdir()
    except OSError as exc:
        raise _io(exc) from exc


def read_text_file(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise IoError(f"failed to read text file '{path}': {exc}") from exc


def write_text_file(path: str, text: str, append: bool = False, create_parent_dir: bool = True) -> None:
    target = Path(path)
    if create_parent_dir and str(target.parent) not in ("", "."):
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IoError(f"failed to create directory '{target.parent}': {exc}") from exc
    try:
        with open(target, "a" if append else "w", encoding="utf-8") as f:
            f.write(text)
    except OSError as exc:
        raise IoError(f"failed to write file '{path}': {exc}") from exc
