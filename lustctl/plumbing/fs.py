"""
Staging of directories, files and links with fixed ownership and permissions.

Paths are checked with `lstat`, so a symlink is never followed when deciding whether a target is
already in place.
"""

from contextlib import contextmanager
import hashlib
import logging
import os
import shutil
import stat
import tempfile
from typing import Iterator, Optional

from .common import Ownership, PathConflict, PermissionDenied, Result, SourceNotFound, State


LOG = logging.getLogger(__name__)


@contextmanager
def _privileged(path: str) -> Iterator[None]:
    try:
        yield
    except PermissionError as ex:
        raise PermissionDenied("{}: {}".format(path, ex.strerror)) from ex


def _lstat(path: str) -> Optional[os.stat_result]:
    try:
        return os.lstat(path)
    except FileNotFoundError:
        return None


def _attrs_match(st: os.stat_result, owner: Ownership, mode: int) -> bool:
    return (st.st_uid, st.st_gid) == owner and stat.S_IMODE(st.st_mode) == mode


def _set_attrs(path: str, st: os.stat_result, owner: Ownership, mode: int) -> bool:
    changed = False
    if (st.st_uid, st.st_gid) != owner:
        LOG.debug("Chown %r: %d:%d -> %d:%d", path, st.st_uid, st.st_gid, *owner)
        os.chown(path, *owner)
        changed = True
    # Chown may clear set-ID bits, so always re-check the mode afterwards.
    if changed or stat.S_IMODE(st.st_mode) != mode:
        if stat.S_IMODE(os.lstat(path).st_mode) != mode:
            LOG.debug("Chmod %r: %o", path, mode)
            os.chmod(path, mode)
            changed = True
    return changed


def digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_digest(path: str) -> Optional[str]:
    """
    Hash the contents of a regular file, or return `None` if there's no such file.
    """
    st = _lstat(path)
    if not st or not stat.S_ISREG(st.st_mode):
        return None
    with _privileged(path), open(path, "rb") as src:
        return digest(src.read())


def read_source(path: str) -> bytes:
    """
    Read a source artifact to be installed.
    """
    try:
        with open(path, "rb") as src:
            return src.read()
    except OSError as ex:
        raise SourceNotFound("{}: {}".format(path, ex.strerror)) from ex


def directory_matches(path: str, owner: Ownership, mode: int) -> bool:
    st = _lstat(path)
    return bool(st) and stat.S_ISDIR(st.st_mode) and _attrs_match(st, owner, mode)


def file_matches(path: str, content: bytes, owner: Ownership, mode: int,
                 overwrite: bool = True) -> bool:
    """
    Test if a file is in place with the right attributes.  Without `overwrite`, existing content is
    accepted as-is.
    """
    st = _lstat(path)
    if not st or not stat.S_ISREG(st.st_mode) or not _attrs_match(st, owner, mode):
        return False
    return not overwrite or file_digest(path) == digest(content)


def symlink_matches(path: str, target: str) -> bool:
    return os.path.islink(path) and os.readlink(path) == target


def ensure_directory(path: str, owner: Ownership, mode: int = 0o755) -> Result[None]:
    """
    Create a directory, or correct the ownership and mode of an existing one.
    """
    with _privileged(path):
        st = _lstat(path)
        if not st:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            os.mkdir(path, mode)
            _set_attrs(path, os.lstat(path), owner, mode)
            LOG.debug("Created directory %r", path)
            return Result(State.created)
        if not stat.S_ISDIR(st.st_mode):
            raise PathConflict("Expected a directory at {!r}".format(path))
        if _set_attrs(path, st, owner, mode):
            return Result(State.success)
    return Result(State.unchanged)


def _write(path: str, content: bytes, owner: Ownership, mode: int) -> None:
    # Write beside the target and rename over it, so readers never see a partial file.
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path),
                               prefix=".{}.".format(os.path.basename(path)))
    try:
        with os.fdopen(fd, "wb") as dst:
            dst.write(content)
            os.fchown(dst.fileno(), *owner)
            os.fchmod(dst.fileno(), mode)
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise
    LOG.debug("Wrote %r (%d bytes)", path, len(content))


def ensure_file(path: str, content: bytes, owner: Ownership, mode: int = 0o644,
                overwrite: bool = True) -> Result[None]:
    """
    Write a file if missing or different.  With `overwrite` unset, the content of an existing file
    is preserved, though its ownership and mode are still corrected.
    """
    with _privileged(path):
        st = _lstat(path)
        if not st:
            _write(path, content, owner, mode)
            return Result(State.created)
        if not stat.S_ISREG(st.st_mode):
            raise PathConflict("Expected a regular file at {!r}".format(path))
        if file_digest(path) != digest(content):
            if overwrite:
                _write(path, content, owner, mode)
                return Result(State.success)
            LOG.warning("Not overwriting modified file %r", path)
        if _set_attrs(path, st, owner, mode):
            return Result(State.success)
    return Result(State.unchanged)


def ensure_symlink(path: str, target: str, replace: bool = False) -> Result[None]:
    """
    Point a symlink at the given target, replacing an existing link if it points elsewhere.

    A regular file at `path` is only replaced when `replace` is set.
    """
    with _privileged(path):
        st = _lstat(path)
        if not st:
            os.symlink(target, path)
            return Result(State.created)
        if stat.S_ISREG(st.st_mode) and replace:
            LOG.warning("Replacing file %r with a symlink", path)
        elif not stat.S_ISLNK(st.st_mode):
            raise PathConflict("Not replacing non-link {!r} with a symlink".format(path))
        elif os.readlink(path) == target:
            return Result(State.unchanged)
        tmp = "{}.{}.tmp".format(path, os.getpid())
        os.symlink(target, tmp)
        os.replace(tmp, path)
    return Result(State.success)


def remove_file(path: str) -> Result[None]:
    """
    Delete a file or symlink, if one exists.
    """
    with _privileged(path):
        st = _lstat(path)
        if not st:
            return Result(State.unchanged)
        if stat.S_ISDIR(st.st_mode):
            raise PathConflict("Expected a file at {!r}, found a directory".format(path))
        os.unlink(path)
    LOG.debug("Removed %r", path)
    return Result(State.success)


def remove_symlink(path: str, target: str) -> Result[None]:
    """
    Delete a symlink only if it points at the given target.
    """
    if not os.path.lexists(path):
        return Result(State.unchanged)
    if not symlink_matches(path, target):
        LOG.warning("Not removing %r, not a link to %r", path, target)
        return Result(State.unchanged)
    return remove_file(path)


def remove_directory(path: str) -> Result[None]:
    """
    Recursively delete a directory, if one exists.
    """
    with _privileged(path):
        st = _lstat(path)
        if not st:
            return Result(State.unchanged)
        if not stat.S_ISDIR(st.st_mode):
            raise PathConflict("Expected a directory at {!r}".format(path))
        shutil.rmtree(path)
    LOG.debug("Removed tree %r", path)
    return Result(State.success)
