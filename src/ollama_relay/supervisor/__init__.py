"""Tunnel supervisor - brings up, watches and tears down the relay chain."""

from .supervisor import Supervisor
from .launcher import StageLauncher
from .cleanup import CleanupCoordinator

__all__ = ["Supervisor", "StageLauncher", "CleanupCoordinator"]
