from __future__ import annotations


class SdpError(Exception):
    """Base class for every error the pipeline reports on a run."""

    kind = "Error"


# Configuration: always fatal, raised before any stage runs.


class ConfigurationError(SdpError):
    kind = "ConfigurationError"


class DuplicateService(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f"Service '{name}' is declared more than once.")
        self.name = name


class UnknownDependency(ConfigurationError):
    def __init__(self, service: str, dependency: str):
        super().__init__(f"Service '{service}' depends on unknown service '{dependency}'.")
        self.service = service
        self.dependency = dependency


class CyclicDependency(ConfigurationError):
    def __init__(self, cycle: list[str]):
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")
        self.cycle = cycle


class PortConflict(ConfigurationError):
    def __init__(self, port: int, first: str, second: str):
        super().__init__(f"Host port {port} is published by both '{first}' and '{second}'.")
        self.port = port


class UnroutableTarget(ConfigurationError):
    def __init__(self, prefix: str, service: str):
        super().__init__(f"Route '{prefix}' targets unknown service '{service}'.")
        self.prefix = prefix
        self.service = service


class InvalidRoute(ConfigurationError):
    pass


class OverlappingRoute(ConfigurationError):
    def __init__(self, first: str, second: str):
        super().__init__(f"Route prefixes '{first}' and '{second}' overlap.")
        self.prefixes = (first, second)


class InvalidImageReference(ConfigurationError):
    pass


class MissingCredentials(ConfigurationError):
    pass


# Stage failures


class BuildError(SdpError):
    kind = "BuildError"


class PublishError(SdpError):
    kind = "PublishError"


class RemoteConnectionError(SdpError, ConnectionError):
    """Transient transport failure; callers may retry."""

    kind = "ConnectionError"

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class RemoteCommandError(SdpError):
    kind = "RemoteCommandError"

    def __init__(self, command: str, exit_code: int, stderr: str):
        super().__init__(f"Remote command exited with {exit_code}: {stderr.strip() or '(no stderr)'}")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


# Run lifecycle


class RunCancelled(SdpError):
    kind = "Cancelled"

    def __init__(self, message: str, next_state=None):
        super().__init__(message)
        self.next_state = next_state


class CancellationRejected(SdpError):
    kind = "CancellationRejected"


class PipelineBusy(SdpError):
    kind = "PipelineBusy"


class UnknownRun(SdpError, KeyError):
    kind = "UnknownRun"
