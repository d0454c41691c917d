"""Command line interface for brew-updater."""

from importlib.metadata import version as get_package_version

__version__ = get_package_version("brew-updater")
