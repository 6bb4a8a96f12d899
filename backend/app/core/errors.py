from __future__ import annotations


class EndpointConfigError(RuntimeError):
    def __init__(self, *, endpoint_id: int, detail: str):
        self.endpoint_id = endpoint_id
        self.detail = detail
        super().__init__(f"endpoint {endpoint_id} misconfigured: {detail}")


class EndpointNotConnectedError(RuntimeError):
    def __init__(self, *, endpoint_id: int, status: str):
        self.endpoint_id = endpoint_id
        self.status = status
        super().__init__(f"endpoint {endpoint_id} is not connected (status={status})")


class ReadingParseError(ValueError):
    pass


class TelemetryStoreError(RuntimeError):
    def __init__(self, *, device_id: int, detail: str):
        self.device_id = device_id
        self.detail = detail
        super().__init__(f"telemetry store failed for device {device_id}: {detail}")


class NotifierError(RuntimeError):
    def __init__(self, *, message: str, http_status: int | None = None):
        self.http_status = http_status
        super().__init__(message)


class EndpointNotFoundError(LookupError):
    def __init__(self, *, endpoint_id: int):
        self.endpoint_id = endpoint_id
        super().__init__(f"endpoint {endpoint_id} not found")


class WarningNotFoundError(LookupError):
    def __init__(self, *, warning_id: int):
        self.warning_id = warning_id
        super().__init__(f"warning {warning_id} not found")


class WarningStateError(RuntimeError):
    def __init__(self, *, warning_id: int, status: str, target: str):
        self.warning_id = warning_id
        self.status = status
        self.target = target
        super().__init__(f"warning {warning_id} is {status}, cannot change to {target}")
