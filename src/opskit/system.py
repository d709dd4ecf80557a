"""Host introspection: privilege level, user and machine identity."""

import ctypes
import getpass
import logging
import os
import platform

logger = logging.getLogger(__name__)


def is_elevated() -> bool:
    """Whether the current process runs with administrator/root privileges."""
    if os.name == "nt":
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError) as e:
            logger.warning(f"Failed to check admin status: {e}")
            return False
    return os.geteuid() == 0


def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def machine_name() -> str:
    return platform.node() or "unknown"
