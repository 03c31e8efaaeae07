"""
Unix account management for the dedicated service account.

Most methods identify users and groups using the `pwd` and `grp` module structs.
"""

import grp
import logging
import os
import pwd
from subprocess import CalledProcessError
from typing import Iterable, List

from .common import AccountInUse, Collect, command, CommandFailed, Ownership, Result, State


LOG = logging.getLogger(__name__)

# Type aliases for external callers, who need not be aware of the internal structure when chaining
# calls (e.g. ensure_service_account -> Ownership.of).
User = pwd.struct_passwd
Group = grp.struct_group

NOLOGIN_SHELL = "/usr/sbin/nologin"

NO_HOME = "/nonexistent"


def get_user(username: str) -> User:
    """
    Look up an existing user by name.
    """
    return pwd.getpwnam(username)


def get_group(groupname: str) -> Group:
    """
    Look up an existing group by name.
    """
    return grp.getgrnam(groupname)


def account_exists(name: str) -> bool:
    """
    Test for both the user and its same-named group.
    """
    try:
        get_user(name)
        get_group(name)
    except KeyError:
        return False
    else:
        return True


def get_ownership(name: str) -> Ownership:
    return Ownership.of(get_user(name), get_group(name))


def _run(args: List[str]) -> None:
    try:
        command(args)
    except CalledProcessError as ex:
        raise CommandFailed("{} exited with status {}".format(args[0], ex.returncode)) from ex


def _create_group(groupname: str) -> Result[Group]:
    _run(["/usr/sbin/groupadd", "--system", groupname])
    return Result(State.created, get_group(groupname))


def _create_user(username: str, group: Group) -> Result[User]:
    """
    Create a new system user without a login shell or home directory.
    """
    _run(["/usr/sbin/useradd", "--system", "--no-create-home", "--home-dir", NO_HOME,
          "--shell", NOLOGIN_SHELL, "--gid", group.gr_name, username])
    return Result(State.created, get_user(username))


@Result.collect
def ensure_group(groupname: str) -> Collect[Group]:
    """
    Create a new or retrieve an existing group.
    """
    try:
        return get_group(groupname)
    except KeyError:
        res_group = yield from _create_group(groupname)
        return res_group.value


@Result.collect
def ensure_service_account(name: str) -> Collect[User]:
    """
    Create a system user and group pair of the given name, reusing either half if present.
    """
    res_group = yield from ensure_group(name)
    try:
        user = get_user(name)
    except KeyError:
        res_user = yield from _create_user(name, res_group.value)
        user = res_user.value
    else:
        if user.pw_gid != res_group.value.gr_gid:
            LOG.warning("User %r has primary GID %d, expected %d", name, user.pw_gid,
                        res_group.value.gr_gid)
    return user


def _is_within(path: str, roots: Iterable[str]) -> bool:
    return any(path == root or path.startswith(root.rstrip("/") + "/") for root in roots)


def find_owned_paths(user: User, roots: Iterable[str], exclude: Iterable[str] = (),
                     limit: int = 10) -> List[str]:
    """
    Walk the given roots for paths owned by a user, skipping anything under `exclude`.  Symlinks
    are not followed, and the search stops after `limit` matches.
    """
    exclude = [os.path.normpath(path) for path in exclude]
    found: List[str] = []
    for root in roots:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [name for name in dirnames
                           if not _is_within(os.path.join(dirpath, name), exclude)]
            for name in dirnames + filenames:
                path = os.path.join(dirpath, name)
                if _is_within(path, exclude):
                    continue
                try:
                    owner = os.lstat(path).st_uid
                except FileNotFoundError:
                    continue
                if owner == user.pw_uid:
                    found.append(path)
                    if len(found) >= limit:
                        return found
    return found


def remove_service_account(name: str, managed: Iterable[str] = (),
                           audit_roots: Iterable[str] = ()) -> Result[None]:
    """
    Delete the service user and its group.  Refuses if the user still owns anything under
    `audit_roots` apart from the `managed` paths, in case the account is shared.
    """
    try:
        user = get_user(name)
    except KeyError:
        user = None
    state = State.unchanged
    if user:
        owned = find_owned_paths(user, audit_roots, managed)
        if owned:
            raise AccountInUse(name, owned)
        _run(["/usr/sbin/userdel", name])
        state = State.success
    # userdel only drops the group when USERGROUPS_ENAB is set.
    try:
        group = get_group(name)
    except KeyError:
        pass
    else:
        if group.gr_mem:
            LOG.warning("Keeping group %r, still has members: %s", name, ", ".join(group.gr_mem))
        else:
            _run(["/usr/sbin/groupdel", name])
            state = State.success
    return Result(state)
