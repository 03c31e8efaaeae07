"""
Helpers for converting methods into scripts, and filling in arguments from the command line.
"""

from functools import wraps
from inspect import cleandoc, signature
import logging
import os
import os.path
from subprocess import CalledProcessError
import sys
from typing import Any, Callable, cast, Dict, List, Optional, Union

from docopt import docopt

from ..plumbing.common import PermissionDenied, ProvisionError
from ..tasks.target import TargetSpec


DocOptArgs = Dict[str, Union[bool, str, List[str], None]]


EXIT_FAILURE = 1
"""
Exit status of a run aborted by a failed step, or by invalid settings.
"""
EXIT_NOT_ROOT = 2
"""
Exit status when a script requiring root is run unprivileged.
"""


ENTRYPOINTS: List[str] = []

COMMANDS: Dict[str, Callable[..., Any]] = {}


def load_target(opts: DocOptArgs) -> TargetSpec:
    """
    Build a `TargetSpec` from the `--config` and `--source-dir` options, if present.
    """
    config = cast(Optional[str], opts.get("--config"))
    base_dir = cast(Optional[str], opts.get("--source-dir"))
    if not base_dir:
        base_dir = os.path.dirname(os.path.abspath(config)) if config else os.getcwd()
    return TargetSpec.from_config(config, os.path.abspath(base_dir))


def describe(ex: ProvisionError) -> str:
    """
    Format a failure for the user, naming the step it happened in.
    """
    if ex.step:
        return "Failed at step '{}': {}".format(ex.step, ex)
    return str(ex)


def entrypoint(fn: Callable[..., Any]) -> Callable[..., Any]:
    """
    Decorator to make an entrypoint out of a generic function.

    This uses `docopt` to parse arguments according to the method docstring, and will be formatted
    with `{script}` set to the script name.  At minimum, it should contain `Usage: {script}`.

    Functions may optionally accept arguments, but they must be annotated with a recognised type in
    order to be filled in:

    - `DocOptArgs` (a `dict` of input parameters parsed from the usage line)
    - `TargetSpec` (built from the `--config` and `--source-dir` options)
    - `bool` (a flag named after the variable, e.g. `keep_config` reads `--keep-config`)

    An example function:

        @entrypoint
        def install(target: TargetSpec, force: bool):
            \"""
            Install the service.

            Usage: {script} [--config=FILE] [--force]
            \"""

    Provisioning failures are reported on stderr along with the failing step, and exit non-zero.
    """
    label = "lustctl-{}".format(fn.__qualname__).replace("_", "-")

    @wraps(fn)
    def wrap(opts: Optional[DocOptArgs] = None):
        extra: Dict[str, Any] = {}
        script = "{} [--debug]".format(label)
        if opts is None:
            doc = cleandoc(fn.__doc__.format(script=script))
            opts = docopt(doc)
        if opts.pop("--debug", False):
            logging.basicConfig(level=logging.DEBUG)
        if getattr(fn, "requires_root", False) and os.geteuid() != 0:
            error("{} must be run as root".format(label), exit=EXIT_NOT_ROOT)
        try:
            for param in signature(fn).parameters.values():
                name = param.name
                cls = param.annotation
                if cls is DocOptArgs:
                    extra[name] = opts
                elif cls is TargetSpec:
                    extra[name] = load_target(opts)
                elif cls is bool:
                    extra[name] = bool(opts.get("--{}".format(name.replace("_", "-"))))
                else:
                    raise RuntimeError("Bad parameter {!r} type {!r}".format(name, cls))
        except (OSError, ValueError) as ex:
            error("Invalid settings: {}".format(ex), exit=EXIT_FAILURE)
        try:
            return fn(**extra)
        except PermissionDenied as ex:
            error(describe(ex), exit=EXIT_FAILURE if ex.step else EXIT_NOT_ROOT)
        except ProvisionError as ex:
            error(describe(ex), exit=EXIT_FAILURE)
        except CalledProcessError as ex:
            error("{} exited with status {}".format(ex.cmd[0], ex.returncode), exit=EXIT_FAILURE)
        except OSError as ex:
            error(str(ex), exit=EXIT_FAILURE)
    wrap.__doc__ = wrap.__doc__.format(script=label)
    # Create a console script line for setup.
    target = "{}:{}".format(fn.__module__, fn.__qualname__)
    ENTRYPOINTS.append("{}={}".format(label, target))
    COMMANDS[fn.__name__] = wrap
    return wrap


def error(msg: Optional[str] = None, *, exit: Optional[int] = None, colour: Optional[str] = None):
    """
    Print an error message and/or exit.
    """
    if msg:
        colour = colour or ("1" if exit else "3")
        print("\033[9{}m{}\033[0m".format(colour, msg), file=sys.stderr)
    if exit is not None:
        sys.exit(exit)
