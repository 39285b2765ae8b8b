"""Resolve, download, verify and launch game versions from remote manifests."""

LAUNCHER_NAME = 'mcprovision'
LAUNCHER_VERSION = '0.1.0'
__version__ = LAUNCHER_VERSION
