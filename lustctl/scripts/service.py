"""
Scripts to install and remove the service.
"""

from typing import Any

from .utils import entrypoint
from ..plumbing.common import require_root, Result
from ..tasks import service
from ..tasks.plan import Step
from ..tasks.target import TargetSpec


def progress(index: int, total: int, step: Step, result: Result[Any]) -> None:
    print("[{}/{}] {}: {}".format(index, total, step.label, result.state.name))


@entrypoint
@require_root
def install(target: TargetSpec, force: bool):
    """
    Install, enable and start the service.  Safe to re-run: only missing or changed pieces are
    put in place, and an interrupted install resumes where it stopped.

    An existing config file is kept unless --force is given.  A file left where the binary link
    belongs, such as a binary copied there by hand, is also only replaced with --force.

    Usage: {script} [--config=FILE] [--source-dir=DIR] [--force]
    """
    print("Installing {}...".format(target.name))
    result = service.provision(target, force=force, report=progress)
    if not result:
        print("Nothing to do, {} is already installed.".format(target.name))
    else:
        print("Installation complete, {} is running.".format(target.name))
    print("Check its status with: systemctl status {}".format(target.unit_name))
    print("Configuration file is located at: {}".format(target.config_path))


@entrypoint
@require_root
def uninstall(target: TargetSpec, keep_config: bool):
    """
    Stop, disable and remove the service, its files and its account.  Safe to run on a host where
    the service was never installed.

    With --keep-config, the config directory and the account owning it are left in place.

    Usage: {script} [--config=FILE] [--keep-config]
    """
    print("Removing {}...".format(target.name))
    result = service.decommission(target, keep_config=keep_config, report=progress)
    if not result:
        print("Nothing to do, {} is not installed.".format(target.name))
    else:
        print("Uninstallation complete.")


@entrypoint
def status(target: TargetSpec):
    """
    Show what parts of the service are currently installed.

    Usage: {script} [--config=FILE]
    """
    print(service.inspect(target))
