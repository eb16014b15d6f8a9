from __future__ import annotations


class FleetError(Exception):
    pass


class ValidationError(FleetError):
    pass


class ForbiddenError(FleetError):
    pass


class NotFoundError(FleetError):
    pass


class ConflictError(FleetError):
    pass


class AuthError(FleetError):
    pass
