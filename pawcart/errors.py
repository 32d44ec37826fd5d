"""Domain errors. The HTTP layer turns these into {"ok": False, "error": code, ...}."""


class ShopError(Exception):
    status = 400

    def __init__(self, code, message=None, status=None, **details):
        super().__init__(message or code)
        self.code = code
        self.message = message or code.replace("_", " ")
        if status is not None:
            self.status = status
        self.details = details

    def to_dict(self):
        out = {"ok": False, "error": self.code, "message": self.message}
        out.update(self.details)
        return out


class NotFound(ShopError):
    status = 404


class Forbidden(ShopError):
    status = 403


class Conflict(ShopError):
    status = 409
