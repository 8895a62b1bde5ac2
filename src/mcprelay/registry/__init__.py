"""Capability registry and host API."""

from mcprelay.registry.base import CapabilityDefinition, InvocationResult
from mcprelay.registry.host import CapabilityHost, LocalCapabilityHost, Registration
from mcprelay.registry.registry import CapabilityRegistry, make_host_id

__all__ = [
    "CapabilityDefinition",
    "CapabilityHost",
    "CapabilityRegistry",
    "InvocationResult",
    "LocalCapabilityHost",
    "Registration",
    "make_host_id",
]
