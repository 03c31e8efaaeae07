"""
Registration and lifecycle of systemd units.

`Systemctl` is a thin wrapper around the `systemctl` command.  Callers should go through
`UnitRegistrar` to change unit definitions and `LifecycleController` to change unit state, which
between them guarantee that the manager's catalog is reloaded after every definition change and
before any enable/disable/start/stop call.
"""

import logging
import os.path
from subprocess import CalledProcessError
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional

from jinja2 import Environment, StrictUndefined, TemplateError

from .common import (command, current_ownership, LifecycleTransitionFailed, ManagerReloadFailed,
                     Ownership, Result, SourceNotFound, State)
from . import fs


LOG = logging.getLogger(__name__)

ENV = Environment(keep_trailing_newline=True, undefined=StrictUndefined)

ENABLED_STATES = ("enabled", "enabled-runtime")

ACTIVE_STATES = ("active", "reloading")


class UnitState(NamedTuple):
    """
    Observable lifecycle state of a unit.
    """

    enabled: bool
    active: bool


class UnitStatus(NamedTuple):
    """
    Raw status as reported by the service manager.  `stale` is set if the unit's definition on disk
    has changed since the manager last loaded it, and `loaded` if the manager has a definition for
    the unit at all.
    """

    enabled: bool
    active: bool
    stale: bool = False
    loaded: bool = True


class Systemctl:
    """
    Service manager backed by `systemctl`.  All calls block until systemd has processed them.
    """

    def __init__(self, binary: str = "/bin/systemctl"):
        self.binary = binary

    def _call(self, *args: str) -> bytes:
        return command([self.binary, *args], output=True).stdout

    def reload_catalog(self) -> None:
        self._call("daemon-reload")

    def enable(self, unit: str) -> None:
        self._call("enable", "--", unit)

    def disable(self, unit: str) -> None:
        self._call("disable", "--", unit)

    def start(self, unit: str) -> None:
        self._call("start", "--", unit)

    def stop(self, unit: str) -> None:
        self._call("stop", "--", unit)

    def restart(self, unit: str) -> None:
        self._call("restart", "--", unit)

    def status(self, unit: str) -> UnitStatus:
        out = self._call("show", "--property=LoadState,UnitFileState,ActiveState,NeedDaemonReload",
                         "--", unit)
        props: Dict[str, str] = {}
        for line in out.decode("utf-8").splitlines():
            key, _, value = line.partition("=")
            props[key] = value
        return UnitStatus(enabled=props.get("UnitFileState") in ENABLED_STATES,
                          active=props.get("ActiveState") in ACTIVE_STATES,
                          stale=props.get("NeedDaemonReload") == "yes",
                          loaded=props.get("LoadState") == "loaded")


class UnitRegistrar:
    """
    Installs and removes unit definitions, and tracks whether the manager needs a reload.
    """

    def __init__(self, manager: Any, owner: Optional[Ownership] = None):
        self.manager = manager
        self.owner = owner or current_ownership()
        self.pending = False

    def render(self, definition: str, context: Optional[Mapping[str, Any]] = None) -> bytes:
        """
        Fill in placeholders of a unit definition template.
        """
        source = fs.read_source(definition)
        try:
            template = ENV.from_string(source.decode("utf-8"))
            return template.render(**(context or {})).encode("utf-8")
        except (UnicodeDecodeError, TemplateError) as ex:
            raise SourceNotFound("{}: can't render unit definition: {}"
                                 .format(definition, ex)) from ex

    def unit_matches(self, definition: str, destination: str,
                     context: Optional[Mapping[str, Any]] = None) -> bool:
        content = self.render(definition, context)
        return fs.file_matches(destination, content, self.owner, 0o644)

    def install_unit(self, definition: str, destination: str,
                     context: Optional[Mapping[str, Any]] = None) -> Result[None]:
        """
        Write a unit definition, only touching the file if its content has changed.
        """
        content = self.render(definition, context)
        changed = fs.file_digest(destination) != fs.digest(content)
        result = fs.ensure_file(destination, content, self.owner, 0o644)
        if changed:
            self.pending = True
        return result

    def remove_unit(self, destination: str) -> Result[None]:
        result = fs.remove_file(destination)
        if result:
            self.pending = True
        return result

    def is_stale(self, unit: str, destination: Optional[str] = None) -> bool:
        """
        Test if the manager's catalog lags behind the unit definitions on disk.  Given the unit's
        `destination`, a definition present there but never loaded (e.g. cached as not-found) also
        counts as stale.
        """
        if self.pending:
            return True
        status = self.manager.status(unit)
        if status.stale:
            return True
        return bool(destination) and os.path.isfile(destination) and not status.loaded

    def reload_catalog(self) -> Result[None]:
        try:
            self.manager.reload_catalog()
        except CalledProcessError as ex:
            raise ManagerReloadFailed("Reload exited with status {}".format(ex.returncode)) from ex
        self.pending = False
        LOG.debug("Reloaded unit catalog")
        return Result(State.success)

    def sync(self) -> Result[None]:
        """
        Reload the catalog if a definition has changed since the last reload.
        """
        if self.pending:
            return self.reload_catalog()
        return Result(State.unchanged)


class LifecycleController:
    """
    Drives a unit between enabled/disabled and active/inactive, verifying each transition.
    """

    def __init__(self, manager: Any, registrar: UnitRegistrar):
        self.manager = manager
        self.registrar = registrar

    def query_state(self, unit: str) -> UnitState:
        status = self.manager.status(unit)
        return UnitState(status.enabled, status.active)

    def _apply(self, unit: str, action: Callable[[str], None], wanted: str,
               check: Callable[[UnitState], bool]) -> Result[UnitState]:
        error = None
        try:
            action(unit)
        except CalledProcessError as ex:
            LOG.debug("Unit %r: %s exited with status %d", unit, wanted, ex.returncode)
            error = ex
        observed = self.query_state(unit)
        if not check(observed):
            raise LifecycleTransitionFailed(unit, wanted, observed) from error
        return Result(State.success, observed)

    def set_enabled(self, unit: str, enabled: bool = True) -> Result[UnitState]:
        self.registrar.sync()
        if self.query_state(unit).enabled == enabled:
            return Result(State.unchanged)
        if enabled:
            return self._apply(unit, self.manager.enable, "enabled", lambda state: state.enabled)
        else:
            return self._apply(unit, self.manager.disable, "disabled",
                               lambda state: not state.enabled)

    def set_active(self, unit: str, active: bool = True) -> Result[UnitState]:
        self.registrar.sync()
        if self.query_state(unit).active == active:
            return Result(State.unchanged)
        if active:
            return self._apply(unit, self.manager.start, "active", lambda state: state.active)
        else:
            return self._apply(unit, self.manager.stop, "inactive", lambda state: not state.active)

    def restart(self, unit: str) -> Result[UnitState]:
        """
        Restart a unit to pick up changed files, ending in the active state.
        """
        self.registrar.sync()
        return self._apply(unit, self.manager.restart, "active", lambda state: state.active)
