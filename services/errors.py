class FleetError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        self.message = message or self.message

class Unauthorized(FleetError):
    status_code = 401
    message = "Unauthorized"

class Forbidden(FleetError):
    status_code = 403
    message = "Forbidden"

class BadRequest(FleetError):
    status_code = 400
    message = "Bad request"

class InvalidCommandType(BadRequest):
    message = "Invalid command type"

class InvalidPayload(BadRequest):
    message = "Invalid command payload"

class NotFound(FleetError):
    status_code = 404
    message = "Not found"

class DeviceNotFound(NotFound):
    message = "Device not found"

class Conflict(FleetError):
    status_code = 409
    message = "Conflict"

class InternalError(FleetError):
    pass
