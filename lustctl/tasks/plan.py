"""
Diff-then-apply machinery shared by installation and removal.

A `ProvisionPlan` is an ordered list of `Step` objects, each pairing an idempotent action with a
postcondition (`done`) and optionally a precondition (`ready`).  Plans are computed from the live
host state at the start of a run, executed once, and discarded.
"""

from contextlib import contextmanager
import logging
import os.path
from subprocess import CalledProcessError
from typing import Any, Callable, Iterable, Iterator, List, NamedTuple, Optional

from ..plumbing.common import (Collect, CommandFailed, PostconditionFailed, PreconditionFailed,
                               ProvisionError, Result, State)
from ..plumbing import fs, unix


LOG = logging.getLogger(__name__)

Report = Callable[[int, int, "Step", Result[Any]], None]
"""
Progress callback, receiving the step's position, plan length, step and its result.
"""


class HostState(NamedTuple):
    """
    Snapshot of what is currently installed, derived from the filesystem and service manager.  No
    field is assumed to imply any other.
    """

    install_dir_present: bool
    config_dir_present: bool
    binary_present: bool
    binary_linked: bool
    config_present: bool
    unit_file_present: bool
    account_exists: bool
    unit_enabled: bool
    unit_active: bool
    catalog_stale: bool

    @classmethod
    def observe(cls, target: Any, manager: Any) -> "HostState":
        status = manager.status(target.unit_name)
        unit_file_present = os.path.isfile(target.unit_path)
        return cls(install_dir_present=os.path.isdir(target.install_dir),
                   config_dir_present=os.path.isdir(target.config_dir),
                   binary_present=os.path.isfile(target.binary_path),
                   binary_linked=fs.symlink_matches(target.binary_link, target.binary_path),
                   config_present=os.path.isfile(target.config_path),
                   unit_file_present=unit_file_present,
                   account_exists=unix.account_exists(target.account),
                   unit_enabled=status.enabled,
                   unit_active=status.active,
                   catalog_stale=status.stale or (unit_file_present and not status.loaded))

    @property
    def installed(self) -> bool:
        return all(value for key, value in self._asdict().items() if key != "catalog_stale")

    @property
    def absent(self) -> bool:
        return not any(self)

    def __str__(self) -> str:
        return "\n".join("{}: {}".format(key.replace("_", " "), "yes" if value else "no")
                         for key, value in self._asdict().items())


class Step:
    """
    One idempotent unit of a plan.

    - `done` is the postcondition: if it already holds, the step is skipped.
    - `ready` is the precondition, checked before the action runs.
    - `after` lists steps whose inclusion in a plan forces this one in too, even if `done` holds
      when planning (e.g. a catalog reload following a unit change).
    - `changes_artifact` marks steps whose changes should be picked up by restarting the unit.
    """

    def __init__(self, label: str, action: Callable[[], Result[Any]], done: Callable[[], bool],
                 ready: Optional[Callable[[], bool]] = None, after: Iterable["Step"] = (),
                 changes_artifact: bool = False):
        self.label = label
        self.action = action
        self.done = done
        self.ready = ready
        self.after = tuple(after)
        self.changes_artifact = changes_artifact

    def __repr__(self) -> str:
        return "<{}: {}>".format(self.__class__.__name__, self.label)

    def check(self) -> bool:
        """
        Evaluate the postcondition, tagging any failure with this step.
        """
        with self._tagged():
            return self.done()

    def run(self) -> Result[Any]:
        with self._tagged():
            if self.done():
                result = Result(State.unchanged)
            else:
                if self.ready and not self.ready():
                    raise PreconditionFailed("Prerequisites not in place")
                result = self.action()
                if not self.done():
                    raise PostconditionFailed("Host state doesn't match after applying")
        result.caller = self.label
        return result

    @contextmanager
    def _tagged(self) -> Iterator[None]:
        try:
            yield
        except ProvisionError as ex:
            ex.step = self.label
            raise
        except CalledProcessError as ex:
            error = CommandFailed("{} exited with status {}".format(ex.cmd[0], ex.returncode))
            error.step = self.label
            raise error from ex
        except OSError as ex:
            error = ProvisionError(str(ex))
            error.step = self.label
            raise error from ex


class ProvisionPlan:
    """
    Ordered steps computed for a single run.
    """

    def __init__(self, steps: Iterable[Step] = ()):
        self.steps: List[Step] = list(steps)
        self.artifacts_changed = False

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    @property
    def labels(self) -> List[str]:
        return [step.label for step in self.steps]

    def select(self, candidates: Iterable[Step]) -> "ProvisionPlan":
        """
        Keep the candidate steps whose postcondition doesn't already hold, along with any that
        follow a kept step.
        """
        for step in candidates:
            if not step.check() or any(dep in self.steps for dep in step.after):
                self.steps.append(step)
            else:
                LOG.debug("Already satisfied: %s", step.label)
        return self

    @Result.collect
    def apply(self, report: Optional[Report] = None) -> Collect[None]:
        """
        Run each step in order, stopping at the first failure.  There is no rollback: every step
        is idempotent, so running a fresh plan again resumes from the failed step.
        """
        total = len(self.steps)
        for index, step in enumerate(self.steps, 1):
            LOG.debug("Step %d/%d: %s", index, total, step.label)
            result = step.run()
            if result and step.changes_artifact:
                self.artifacts_changed = True
            if report:
                report(index, total, step, result)
            yield result
