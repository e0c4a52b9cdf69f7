"""
Exception hierarchy shared by the parser, resolver, drivers and orchestrator.
"""
from typing import List, Optional, Sequence


class ConvoyError(Exception):
    """
    Base class for all errors raised by convoy.
    """


class ManifestError(ConvoyError):
    """
    The manifest is malformed or fails validation.
    Raised before any runtime action takes place.
    """


class CycleError(ManifestError):
    """
    The dependency graph contains at least one cycle.

    :param services: Every service lying on a cycle, in declaration order.
    """
    def __init__(self, services: Sequence[str]):
        self.services = list(services)
        super().__init__(f"Circular dependency detected between services: {', '.join(self.services)}")


class ContainerRuntimeError(ConvoyError, RuntimeError):
    """
    A call into the container runtime failed for a given service.

    :param service: Name of the service the call was made for.
    :param cause: The underlying runtime exception, or a description of it.
    """
    def __init__(self, service: Optional[str], cause):
        self.service = service
        self.cause = cause
        where = f"[{service}] " if service else ""
        super().__init__(f"{where}{cause}")


class OrchestrationError(ConvoyError):
    """
    An ``up`` run failed and has been torn down.

    :param primary: The failure that aborted the run.
    :param warnings: Secondary errors collected while tearing down.
    """
    def __init__(self, primary: Exception, warnings: Optional[List[Exception]] = None):
        self.primary = primary
        self.warnings = list(warnings or [])
        super().__init__(str(primary))


class OrchestrationCancelled(OrchestrationError):
    """
    An ``up`` run was cancelled and the services it started were torn down.
    """
    def __init__(self, warnings: Optional[List[Exception]] = None):
        super().__init__(ConvoyError("Orchestration cancelled"), warnings)


class InvalidTransition(ConvoyError):
    """
    A service status change that the lifecycle state machine does not allow.
    """
