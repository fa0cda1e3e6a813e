"""
PadCtrl - Walking Pad Dashboard

Keeps a local session state in sync with a walking pad control API and issues
commands to it, with a CLI and REPL on top.
"""

__version__ = "0.1.0"
__description__ = "CLI and REPL dashboard for a walking pad control API"

from .client import DeviceClient
from .controller import PadController
from .display import DisplayManager
from .poller import StatusPoller
from .store import SessionStore

__all__ = [
    "DeviceClient",
    "DisplayManager",
    "PadController",
    "SessionStore",
    "StatusPoller",
]
