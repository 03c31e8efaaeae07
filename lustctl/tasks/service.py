"""
Installation and removal of the service.

Both directions observe the host, build a `ProvisionPlan` of the steps still needed, and run it,
aborting at the first failure.  Nothing is rolled back: a failed run leaves every completed step
in place, and re-running the same operation resumes from the step that failed.
"""

import logging
import os.path
from typing import Any, Callable, Dict, Optional

from ..plumbing import fs, unix
from ..plumbing.common import Collect, Result
from ..plumbing.systemd import LifecycleController, Systemctl, UnitRegistrar
from .plan import HostState, ProvisionPlan, Report, Step
from .target import TargetSpec


LOG = logging.getLogger(__name__)

DIR_MODE = 0o755

BINARY_MODE = 0o755

CONFIG_MODE = 0o644


def _sources() -> Callable[[str], bytes]:
    # Sources are immutable for a run, so read each at most once.
    cache: Dict[str, bytes] = {}

    def read(path: str) -> bytes:
        if path not in cache:
            cache[path] = fs.read_source(path)
        return cache[path]
    return read


def _owned_directory(target: TargetSpec, path: str) -> Callable[[], bool]:
    def done() -> bool:
        return (unix.account_exists(target.account) and
                fs.directory_matches(path, unix.get_ownership(target.account), DIR_MODE))
    return done


def _owned_file(target: TargetSpec, path: str, content: Callable[[], bytes], mode: int,
                overwrite: bool = True) -> Callable[[], bool]:
    def done() -> bool:
        return (unix.account_exists(target.account) and
                fs.file_matches(path, content(), unix.get_ownership(target.account), mode,
                                overwrite))
    return done


def _account_removed(name: str) -> bool:
    try:
        unix.get_user(name)
    except KeyError:
        pass
    else:
        return False
    try:
        group = unix.get_group(name)
    except KeyError:
        return True
    # A group still shared with other members is left behind on purpose.
    return bool(group.gr_mem)


def plan_install(target: TargetSpec, registrar: UnitRegistrar, lifecycle: LifecycleController,
                 force: bool = False) -> ProvisionPlan:
    """
    Work out the steps needed to reach an installed, enabled and running service.  With `force`,
    an existing config file is replaced by the shipped one, and a regular file where the binary
    link belongs is replaced by the link.
    """
    read = _sources()
    unit = target.unit_name
    context = target.template_context()

    def owner():
        return unix.get_ownership(target.account)

    def has_account():
        return unix.account_exists(target.account)

    plan = ProvisionPlan()
    account = Step("create service account {}".format(target.account),
                   lambda: unix.ensure_service_account(target.account),
                   has_account)
    install_dir = Step("create install directory {}".format(target.install_dir),
                       lambda: fs.ensure_directory(target.install_dir, owner(), DIR_MODE),
                       _owned_directory(target, target.install_dir),
                       ready=has_account)
    config_dir = Step("create config directory {}".format(target.config_dir),
                      lambda: fs.ensure_directory(target.config_dir, owner(), DIR_MODE),
                      _owned_directory(target, target.config_dir),
                      ready=has_account)
    binary = Step("install binary {}".format(target.binary_path),
                  lambda: fs.ensure_file(target.binary_path, read(target.binary_source), owner(),
                                         BINARY_MODE),
                  _owned_file(target, target.binary_path, lambda: read(target.binary_source),
                              BINARY_MODE),
                  ready=lambda: os.path.isdir(target.install_dir),
                  changes_artifact=True)
    link = Step("link {} to {}".format(target.binary_link, target.binary_path),
                lambda: fs.ensure_symlink(target.binary_link, target.binary_path, replace=force),
                lambda: fs.symlink_matches(target.binary_link, target.binary_path),
                ready=lambda: os.path.isdir(target.bin_dir))
    config = Step("install config {}".format(target.config_path),
                  lambda: fs.ensure_file(target.config_path, read(target.config_source), owner(),
                                         CONFIG_MODE, overwrite=force),
                  _owned_file(target, target.config_path, lambda: read(target.config_source),
                              CONFIG_MODE, overwrite=force),
                  ready=lambda: os.path.isdir(target.config_dir),
                  changes_artifact=True)
    definition = Step("register unit {}".format(target.unit_path),
                      lambda: registrar.install_unit(target.unit_source, target.unit_path,
                                                     context),
                      lambda: registrar.unit_matches(target.unit_source, target.unit_path,
                                                     context),
                      ready=lambda: os.path.isdir(target.unit_dir),
                      changes_artifact=True)
    reload = Step("reload unit catalog",
                  registrar.reload_catalog,
                  lambda: not registrar.is_stale(unit, target.unit_path),
                  after=[definition])
    enable = Step("enable {}".format(unit),
                  lambda: lifecycle.set_enabled(unit, True),
                  lambda: lifecycle.query_state(unit).enabled,
                  ready=lambda: os.path.isfile(target.unit_path))
    start = Step("start {}".format(unit),
                 lambda: lifecycle.set_active(unit, True),
                 lambda: lifecycle.query_state(unit).active,
                 ready=lambda: os.path.isfile(target.unit_path))
    steps = [account, install_dir, config_dir, binary, link, config, definition, reload, enable,
             start]
    if lifecycle.query_state(unit).active:
        # Already running: pick up any replaced binary, config or unit definition.
        def restart():
            result = lifecycle.restart(unit)
            plan.artifacts_changed = False
            return result

        steps.append(Step("restart {}".format(unit), restart, lambda: not plan.artifacts_changed,
                          after=[binary, config, definition]))
    return plan.select(steps)


def plan_uninstall(target: TargetSpec, registrar: UnitRegistrar, lifecycle: LifecycleController,
                   keep_config: bool = False) -> ProvisionPlan:
    """
    Work out the steps needed to remove every trace of the service.  With `keep_config`, the
    config directory is left in place, along with the service account that owns it.
    """
    unit = target.unit_name

    def fresh():
        return not registrar.is_stale(unit, target.unit_path)

    plan = ProvisionPlan()
    # Make sure we stop the unit systemd knows about, not an outdated definition.
    refresh = Step("reload unit catalog", registrar.reload_catalog, fresh)
    stop = Step("stop {}".format(unit),
                lambda: lifecycle.set_active(unit, False),
                lambda: not lifecycle.query_state(unit).active)
    disable = Step("disable {}".format(unit),
                   lambda: lifecycle.set_enabled(unit, False),
                   lambda: not lifecycle.query_state(unit).enabled)
    definition = Step("remove unit {}".format(target.unit_path),
                      lambda: registrar.remove_unit(target.unit_path),
                      lambda: not os.path.lexists(target.unit_path))
    reload = Step("reload unit catalog", registrar.reload_catalog, fresh, after=[definition])
    link = Step("unlink {}".format(target.binary_link),
                lambda: fs.remove_symlink(target.binary_link, target.binary_path),
                lambda: not fs.symlink_matches(target.binary_link, target.binary_path))
    install_dir = Step("remove install directory {}".format(target.install_dir),
                       lambda: fs.remove_directory(target.install_dir),
                       lambda: not os.path.lexists(target.install_dir))
    steps = [refresh, stop, disable, definition, reload, link]
    if not keep_config:
        steps.append(Step("remove config directory {}".format(target.config_dir),
                          lambda: fs.remove_directory(target.config_dir),
                          lambda: not os.path.lexists(target.config_dir)))
    steps.append(install_dir)
    if not keep_config:
        steps.append(Step("remove service account {}".format(target.account),
                          lambda: unix.remove_service_account(target.account,
                                                              target.managed_paths,
                                                              target.audit_roots),
                          lambda: _account_removed(target.account)))
    return plan.select(steps)


def _components(manager: Optional[Any]) -> Any:
    manager = manager or Systemctl()
    registrar = UnitRegistrar(manager)
    return manager, registrar, LifecycleController(manager, registrar)


def inspect(target: TargetSpec, manager: Optional[Any] = None) -> HostState:
    """
    Report what is currently installed, without changing anything.
    """
    return HostState.observe(target, manager or Systemctl())


@Result.collect
def provision(target: TargetSpec, manager: Optional[Any] = None, force: bool = False,
              report: Optional[Report] = None) -> Collect[HostState]:
    """
    Install, enable and start the service, doing only what the current host state requires.
    """
    manager, registrar, lifecycle = _components(manager)
    LOG.debug("Host state before install: %r", HostState.observe(target, manager))
    plan = plan_install(target, registrar, lifecycle, force)
    LOG.debug("Install plan: %r", plan.labels)
    yield from plan.apply(report)
    return HostState.observe(target, manager)


@Result.collect
def decommission(target: TargetSpec, manager: Optional[Any] = None, keep_config: bool = False,
                 report: Optional[Report] = None) -> Collect[HostState]:
    """
    Stop, disable and remove the service, doing only what the current host state requires.
    """
    manager, registrar, lifecycle = _components(manager)
    LOG.debug("Host state before uninstall: %r", HostState.observe(target, manager))
    plan = plan_uninstall(target, registrar, lifecycle, keep_config)
    LOG.debug("Uninstall plan: %r", plan.labels)
    yield from plan.apply(report)
    return HostState.observe(target, manager)
