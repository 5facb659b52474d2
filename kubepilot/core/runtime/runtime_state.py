from enum import StrEnum


class RuntimeState(StrEnum):
    UNINITIALIZED = 'uninitialized'
    BOOTSTRAPPING = 'bootstrapping'
    STABLE = 'stable'
    JOINING = 'joining'
    LEAVING = 'leaving'
    UPGRADING = 'upgrading'
    RESETTING = 'resetting'
    RESET = 'reset'
