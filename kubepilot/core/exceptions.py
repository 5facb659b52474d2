class KubePilotError(Exception):
    pass


class ClusterConfigurationError(KubePilotError):
    pass


class ScaleArgumentsError(ClusterConfigurationError):
    pass


class RemoteConnectionError(KubePilotError):
    def __init__(self, host: str, message: str) -> None:
        self.host = host
        super().__init__(message)


class RemoteCommandError(KubePilotError):
    def __init__(self, host: str, command: str, exit_status: int | None = None, stderr: str = '') -> None:
        self.host = host
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr

        super().__init__(f'[{host}] command "{command}" failed with exit status {exit_status}: {stderr.strip()}')


class MalformedOutputError(KubePilotError):
    pass


class FanOutError(KubePilotError):
    def __init__(self, operation: str, failures: dict[str, Exception]) -> None:
        self.operation = operation
        self.failures = failures

        details = '; '.join(f'{host}: {error}' for host, error in failures.items())
        super().__init__(f'{operation} failed on {len(failures)} host(s): {details}')


class InvalidStateTransitionError(KubePilotError):
    pass
