"""Exception types raised by the layer engine."""


class NetworkError(Exception):
    """Base class for every error raised by clear_net."""


class ConfigurationError(NetworkError, ValueError):
    """
    Raised at wiring time when the layer hyperparameters cannot produce a valid
    network, e.g. a filter/stride/padding combination that gives a non-integer
    output map size, or a layers list mixing sizes and layer specs.
    """


class UsageError(NetworkError, RuntimeError):
    """Raised when the network is called before wiring or without data."""


class ShapeMismatchError(NetworkError, ValueError):
    """
    Raised during import when the given parameters do not match the live
    parameter shapes. Raised before anything is overwritten.
    """
