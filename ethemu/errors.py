"""
Error taxonomy for ethemu.
"""


class EmulatorError(Exception):
    """Base class for every failure the harness reports to the user."""


class ConfigurationError(EmulatorError):
    """Infeasible generation or workload parameters. Always fatal."""


class StartupError(EmulatorError):
    """A node failed to start or a peer could not be wired. Always fatal."""


class TransientWorkloadError(EmulatorError):
    """A single submission failed; the workload retries on its next pass."""


class ConvergenceTimeout(EmulatorError):
    """A benchmark barrier did not converge within the allotted time."""


class DescriptorNotFound(EmulatorError):
    """No run descriptor has been stored in the data directory."""


class DescriptorDecodeError(EmulatorError):
    """The stored run descriptor is corrupt or incomplete."""


class AddressNotFound(EmulatorError, KeyError):
    """No node in the roster carries the requested name."""
