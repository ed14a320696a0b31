"""
ethemu: Ethereum network emulation harness.
"""

from .controller import RunController
from .models import NodeDescriptor, PeeringParams, RunDescriptor
from .orchestrator import Orchestrator
from .store import load_descriptor, store_descriptor
from .topology import DegreeBoundedPolicy, DensityPolicy, generate_descriptor
from .workload import BenchmarkDriver, ContinuousDriver

__all__ = [
    "RunController",
    "NodeDescriptor",
    "PeeringParams",
    "RunDescriptor",
    "Orchestrator",
    "load_descriptor",
    "store_descriptor",
    "DegreeBoundedPolicy",
    "DensityPolicy",
    "generate_descriptor",
    "BenchmarkDriver",
    "ContinuousDriver",
]
