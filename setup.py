import os.path
import re

from setuptools import find_packages, setup


README = os.path.join(os.path.abspath(os.path.dirname(__file__)), "README.rst")

# Keep in sync with ENTRYPOINTS as populated by `lustctl.scripts.utils.entrypoint`.
ENTRYPOINTS = ["lustctl-install=lustctl.scripts.service:install",
               "lustctl-uninstall=lustctl.scripts.service:uninstall",
               "lustctl-status=lustctl.scripts.service:status"]


def version():
    with open(os.path.join(os.path.dirname(README), "debian", "changelog")) as log:
        first = next(l for l in log if l.strip())
    return re.split("[()]", first)[1].replace("~", "")


setup(name="lustctl",
      version=version(),
      description="Idempotent installation and removal of the Lust daemon as a systemd service.",
      long_description=open(README).read(),
      long_description_content_type="text/x-rst",
      platforms=["Linux"],
      python_requires=">=3.6",
      install_requires=["docopt", "jinja2"],
      packages=find_packages(exclude=["tests", "tests.*"]),
      entry_points={"console_scripts": ENTRYPOINTS})
