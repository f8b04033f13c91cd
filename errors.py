"""Error types shared by the service modules.

Each error carries the HTTP status and short machine-readable code that the
Flask error handler in backend.py renders as ``{"error": code, "message": ...}``.
"""


class DiveLogError(Exception):
    status_code = 400
    code = 'error'

    def __init__(self, message=None, code=None):
        super().__init__(message or self.code)
        if code:
            self.code = code

    def to_dict(self):
        return {'error': self.code, 'message': str(self)}


class ValidationError(DiveLogError):
    status_code = 400
    code = 'invalid_input'


class InvalidDisplayNameError(ValidationError):
    code = 'invalid_display_name'


class ConflictError(DiveLogError):
    status_code = 409
    code = 'conflict'


class DisplayNameTakenError(ConflictError):
    code = 'display_name_taken'


class AuthorizationError(DiveLogError):
    status_code = 401
    code = 'not_logged_in'


class ForbiddenError(AuthorizationError):
    status_code = 403
    code = 'forbidden'


class NotFoundError(DiveLogError):
    status_code = 404
    code = 'not_found'
