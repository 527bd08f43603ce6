"""Process-wide connection gating.

Only one sensor connection may be owned at a time in a process. The state
machine claims the slot before creating a transport session and releases it
when the session is closed.
"""

from threading import RLock
from typing import Optional

from envsensor.util import sanitize_address

_REGISTRY_LOCK = RLock()
_OWNER: Optional[object] = None
_OWNED_ADDR: Optional[str] = None


def _addr_key(addr: Optional[str]) -> Optional[str]:
    """Normalize a BLE address for registry lookups."""
    sanitized = sanitize_address(addr)
    return sanitized if sanitized else None


def _claim_connection(owner: object, addr: Optional[str]) -> bool:
    """
    Record ``owner`` as the holder of the process-wide connection slot.

    Returns False when another owner already holds it. Re-claiming by the
    current owner succeeds and updates the address.
    """
    global _OWNER, _OWNED_ADDR  # pylint: disable=global-statement
    with _REGISTRY_LOCK:
        if _OWNER is not None and _OWNER is not owner:
            return False
        _OWNER = owner
        _OWNED_ADDR = _addr_key(addr)
        return True


def _release_connection(owner: object) -> None:
    """Release the slot if ``owner`` holds it; no-op otherwise."""
    global _OWNER, _OWNED_ADDR  # pylint: disable=global-statement
    with _REGISTRY_LOCK:
        if _OWNER is owner:
            _OWNER = None
            _OWNED_ADDR = None


def _current_connection() -> Optional[str]:
    """Return the normalized address of the connection currently owned, if any."""
    with _REGISTRY_LOCK:
        return _OWNED_ADDR
