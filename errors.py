"""Error types raised by the route layer and rendered by the app's error handlers."""


class HubError(Exception):
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message=None, details=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self):
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(HubError):
    status_code = 400
    default_message = 'Invalid request'


class Unauthorized(HubError):
    status_code = 401
    default_message = 'Authentication required. Please login.'


class Forbidden(HubError):
    status_code = 403
    default_message = 'Admin access required'


class NotFound(HubError):
    status_code = 404
    default_message = 'Not found'


class Conflict(HubError):
    status_code = 409
    default_message = 'Already exists'


class TooManyRequests(HubError):
    status_code = 429
    default_message = 'Too many requests. Please slow down.'


class StorageError(HubError):
    status_code = 500
    default_message = 'Storage unavailable. Please try again.'
