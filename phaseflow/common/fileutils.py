#
# Copyright (c) 2023 Mikkel Schubert <MikkelSch@gmail.com>
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
#
"""Filesystem helpers that are safe to use from multiple worker processes."""

from __future__ import annotations

import errno
import os
import re
import shutil
import tempfile
import time
from os import fspath
from typing import Any, Callable, Iterable, Iterator, Union

from .utilities import safe_coerce_to_tuple

PathTypes = Union[str, "os.PathLike[str]"]

# Names of directories created by 'create_temp_dir'
_TEMP_DIR_NAME = re.compile(r"^\d{8}_\d{6}_")


def create_temp_dir(root: PathTypes) -> str:
    """Creates a directory in 'root' accessible only by the current user. The name
    starts with the current date and time, followed by a random suffix, so that
    directories left behind by earlier runs can be found by `stale_temp_dirs`."""
    make_dirs(root)

    return tempfile.mkdtemp(prefix=time.strftime("%Y%m%d_%H%M%S_"), dir=root)


def stale_temp_dirs(root: PathTypes) -> Iterator[str]:
    try:
        with os.scandir(root) as entries:
            candidates = sorted(entries, key=lambda it: it.name)
    except FileNotFoundError:
        return

    for it in candidates:
        if _TEMP_DIR_NAME.match(it.name) and it.is_dir(follow_symlinks=False):
            yield it.path


def validate_filenames(filenames: Iterable[PathTypes]) -> tuple[str, ...]:
    """Returns filenames as a tuple of strings; a single filename is accepted."""
    return tuple(map(fspath, safe_coerce_to_tuple(filenames)))


def missing_files(filenames: Iterable[PathTypes]) -> list[str]:
    """Returns the filenames that do not exist, whether as files or directories."""
    return [it for it in validate_filenames(filenames) if not os.path.exists(it)]


def missing_executables(filenames: Iterable[PathTypes]) -> list[str]:
    return [it for it in map(fspath, filenames) if shutil.which(it) is None]


def make_dirs(directory: PathTypes, mode: int = 0o777) -> bool:
    """Creates a directory and any missing parents. Returns false if the directory
    already existed, which may be because another process just created it."""
    if not fspath(directory):
        raise ValueError("Empty directory passed to make_dirs()")

    try:
        os.makedirs(directory, mode=mode)
    except FileExistsError:
        return False

    return True


def move_file(source: PathTypes, destination: PathTypes) -> None:
    """Moves a file, creating the destination directory if needed. Moves between
    filesystems copy the file to a temporary name next to the destination before
    renaming it, so that a partial file never exists under the final name."""
    source = fspath(source)
    destination = fspath(destination)

    try:
        os.replace(source, destination)
        return
    except FileNotFoundError:
        if not os.path.exists(source):
            raise

        make_dirs(os.path.dirname(destination) or ".")
    except OSError as error:
        if error.errno != errno.EXDEV:
            raise

        _copy_then_replace(source, destination)
        return

    move_file(source, destination)


def write_atomically(filename: PathTypes, text: str) -> None:
    """Writes 'text' to a temporary file next to 'filename', then renames it."""
    dirname = os.path.dirname(fspath(filename)) or "."
    make_dirs(dirname)

    handle, temp_name = tempfile.mkstemp(
        prefix=os.path.basename(filename) + ".",
        suffix=".tmp",
        dir=dirname,
    )

    try:
        with os.fdopen(handle, "w") as out:
            out.write(text)
        os.replace(temp_name, filename)
    except BaseException:
        try_remove(temp_name)
        raise


def try_remove(filename: PathTypes) -> bool:
    """Removes a file; returns false if it did not exist."""
    return _ignore_missing(os.remove, filename)


def try_rmtree(filename: PathTypes) -> bool:
    """Removes a directory tree; returns false if it did not exist."""
    return _ignore_missing(shutil.rmtree, filename)


def try_rmdirs(dirpath: PathTypes) -> bool:
    """Removes a directory tree only if it contains nothing but (empty) directories.
    Any empty sub-directories are removed regardless. Returns true if the directory
    no longer exists."""
    try:
        with os.scandir(dirpath) as entries:
            children = list(entries)
    except FileNotFoundError:
        return True

    emptied = [
        not it.is_symlink() and it.is_dir() and try_rmdirs(it.path) for it in children
    ]

    if all(emptied):
        _ignore_missing(os.rmdir, dirpath)
        return True

    return False


def _copy_then_replace(source: str, destination: str) -> None:
    temp_name = f"{destination}.{os.getpid()}.tmp"
    try:
        shutil.copy2(source, temp_name)
        os.replace(temp_name, destination)
    except OSError:
        try_remove(temp_name)
        raise

    os.unlink(source)


def _ignore_missing(func: Callable[[Any], Any], path: PathTypes) -> bool:
    try:
        func(fspath(path))
    except FileNotFoundError:
        return False

    return True
