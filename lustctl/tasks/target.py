"""
Description of the desired installation, as supplied by the caller.
"""

import configparser
import os.path
import re
from typing import Any, Dict, NamedTuple, Optional, Tuple


NAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

SECTION = "service"


class TargetSpec(NamedTuple):
    """
    Paths, account and source artifacts for one installation of the service.

    Build instances with `TargetSpec.build` or `TargetSpec.from_config`, which validate the values
    and resolve relative source paths against an explicit base directory.
    """

    name: str = "lust"
    account: str = "lust"
    install_dir: str = "/opt/lust"
    config_dir: str = "/etc/lust"
    bin_dir: str = "/usr/local/bin"
    unit_dir: str = "/etc/systemd/system"
    binary_source: str = "target/release/lust"
    config_source: str = "examples/configs/example.yaml"
    unit_source: str = "lust.service"
    config_name: str = "config.yaml"
    audit_roots: Tuple[str, ...] = ("/etc", "/home", "/opt", "/srv", "/var")

    @classmethod
    def build(cls, base_dir: str, **options: Any) -> "TargetSpec":
        """
        Create a validated target.  Relative source paths are taken from `base_dir`.
        """
        if not os.path.isabs(base_dir):
            raise ValueError("Base directory {!r} must be absolute".format(base_dir))
        for key in ("binary_source", "config_source", "unit_source"):
            path = options.get(key, cls._field_defaults[key])
            options[key] = os.path.normpath(os.path.join(base_dir, path))
        if isinstance(options.get("audit_roots"), str):
            options["audit_roots"] = tuple(options["audit_roots"].split())
        target = cls(**options)
        target.validate()
        return target

    @classmethod
    def from_config(cls, path: Optional[str], base_dir: str,
                    **overrides: Any) -> "TargetSpec":
        """
        Read settings from the `[service]` section of an INI file, with keys named after fields.
        """
        options: Dict[str, Any] = {}
        if path:
            parser = configparser.ConfigParser()
            with open(path) as config:
                parser.read_file(config)
            if parser.has_section(SECTION):
                unknown = set(parser[SECTION]) - set(cls._fields)
                if unknown:
                    raise ValueError("Unknown settings in {}: {}"
                                     .format(path, ", ".join(sorted(unknown))))
                options.update(parser[SECTION])
        options.update((key, value) for key, value in overrides.items() if value is not None)
        return cls.build(base_dir, **options)

    def validate(self) -> None:
        for key in ("name", "account"):
            if not NAME_RE.match(getattr(self, key)):
                raise ValueError("Invalid {}: {!r}".format(key, getattr(self, key)))
        for key in ("install_dir", "config_dir", "bin_dir", "unit_dir", "binary_source",
                    "config_source", "unit_source"):
            if not os.path.isabs(getattr(self, key)):
                raise ValueError("{} must be an absolute path: {!r}"
                                 .format(key, getattr(self, key)))
        for root in self.audit_roots:
            if not os.path.isabs(root):
                raise ValueError("Audit root must be an absolute path: {!r}".format(root))
        if "/" in self.config_name or not self.config_name:
            raise ValueError("Invalid config_name: {!r}".format(self.config_name))
        if os.path.normpath(self.install_dir) == os.path.normpath(self.config_dir):
            raise ValueError("install_dir and config_dir must differ")

    @property
    def binary_path(self) -> str:
        return os.path.join(self.install_dir, self.name)

    @property
    def binary_link(self) -> str:
        return os.path.join(self.bin_dir, self.name)

    @property
    def config_path(self) -> str:
        return os.path.join(self.config_dir, self.config_name)

    @property
    def unit_name(self) -> str:
        return "{}.service".format(self.name)

    @property
    def unit_path(self) -> str:
        return os.path.join(self.unit_dir, self.unit_name)

    @property
    def managed_paths(self) -> Tuple[str, str]:
        """
        Directories owned by the service account as part of the installation.
        """
        return (self.install_dir, self.config_dir)

    def template_context(self) -> Dict[str, str]:
        """
        Placeholders available to the unit definition.
        """
        return {"service": self.name,
                "account": self.account,
                "binary": self.binary_link,
                "install_dir": self.install_dir,
                "config": self.config_path}
