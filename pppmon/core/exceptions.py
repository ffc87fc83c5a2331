"""Error taxonomy shared by the device adapter, the services and the API layer."""


class PPPMonitorError(Exception):
    """Base class for all errors raised by pppmon."""


class DeviceError(PPPMonitorError):
    """A router could not serve the request. Transient, never fatal to a sync cycle."""


class DeviceUnreachable(DeviceError):
    """Network, timeout or authentication failure while talking to a router."""


class DeviceProtocolError(DeviceError):
    """The router answered with a !trap/!fatal reply or a malformed sentence."""


class ConfigurationError(PPPMonitorError):
    """The router is missing settings an operation depends on (e.g. isolate profile)."""


class NotFound(PPPMonitorError):
    """Unknown router or subscriber."""
