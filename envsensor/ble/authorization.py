"""Authorization checks consulted before any scan or connection operation.

An authorization check is a zero-argument callable answering whether the
Bluetooth capability required by the core has been granted.
"""

import os
import sys
from typing import Callable

from envsensor.ble.constants import logger

AuthorizationCheck = Callable[[], bool]

BLUETOOTH_GROUP = "bluetooth"


def always_authorized() -> bool:
    """Default check for platforms where the OS prompts on first use."""
    return True


def bluetooth_group_authorized() -> bool:
    """
    Return True if the current process may talk to BlueZ.

    On Linux this means running as root or being a member of the
    ``bluetooth`` group; other platforms are always authorized.
    """
    if not sys.platform.startswith("linux"):
        return True
    if os.geteuid() == 0:
        return True
    import grp  # pylint: disable=import-outside-toplevel

    try:
        gid = grp.getgrnam(BLUETOOTH_GROUP).gr_gid
    except KeyError:
        logger.debug("No '%s' group on this system", BLUETOOTH_GROUP)
        return True
    granted = gid in os.getgroups()
    logger.debug("Membership of '%s' group: %s", BLUETOOTH_GROUP, granted)
    return granted
