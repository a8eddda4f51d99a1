"""
Adapters — the boundary between the installer and external tools.

Stages never call ``subprocess`` directly; they go through a
``CommandRunner`` so the whole pipeline can run against a mock.
"""

from incus_installer.adapters.base import CommandResult, CommandRunner, CommandStatus  # noqa: F401
