"""Device registration state, derived from which provisioning outputs are present."""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional


class RegistrationState(str, Enum):
    UNREGISTERED = "unregistered"
    PARTIALLY_REGISTERED = "partially_registered"
    REGISTERED = "registered"


def classify_registration(credentials: Mapping[str, Optional[str]]) -> RegistrationState:
    """
    Classify a set of expected credential fields.

    None present -> UNREGISTERED, all present -> REGISTERED, anything else is
    PARTIALLY_REGISTERED (provisioning output still arriving). Empty strings
    count as absent. An empty mapping has nothing to wait for and is UNREGISTERED.
    """
    present = sum(1 for v in credentials.values() if v)
    if present == 0:
        return RegistrationState.UNREGISTERED
    if present == len(credentials):
        return RegistrationState.REGISTERED
    return RegistrationState.PARTIALLY_REGISTERED
