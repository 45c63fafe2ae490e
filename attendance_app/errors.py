class AttendanceError(Exception):
    """Base error; ``status_code`` is the HTTP status the API answers with."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AttendanceError):
    status_code = 400


class NoFaceDetectedError(AttendanceError):
    status_code = 400


class NotFoundError(AttendanceError):
    status_code = 404


class SessionConflictError(AttendanceError):
    status_code = 409


class SessionClosedError(AttendanceError):
    status_code = 409


class CameraUnavailableError(AttendanceError):
    status_code = 503
