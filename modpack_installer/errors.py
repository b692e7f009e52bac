class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.message = message


class InstallationValidationError(ServiceError):
    status_code = 422

    def __init__(self, message: str, errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class PermissionDenied(ServiceError):
    status_code = 403


class ServerNotFound(ServiceError):
    status_code = 404


class ProfileNotFound(ServiceError):
    status_code = 404


class AlreadyInstalling(ServiceError):
    status_code = 409


class DaemonError(ServiceError):
    status_code = 502


class OfflineTimeout(ServiceError):
    status_code = 504


class PurgeFailure(ServiceError):
    status_code = 502


class ReinstallTriggerFailure(ServiceError):
    status_code = 502


class RevertWriteFailure(ServiceError):
    pass


class RevertVerificationMismatch(ServiceError):
    pass
