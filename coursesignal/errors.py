"""Domain errors raised by the attribution services.

Routers translate these into HTTP responses; workers log and report them.
Duplicate deliveries and unmatched purchases are outcomes, not errors, and
never appear here.
"""


class CourseSignalError(Exception):
    """Base class for recoverable domain errors."""


class UnknownTenant(CourseSignalError):
    """The site key (or workspace) does not resolve to an active tenant."""


class InvalidTouch(CourseSignalError):
    """A tracking ping carried malformed attribution fields."""


class InvalidIdentity(CourseSignalError):
    """An identify() call carried an unusable visitor key or email."""


class InvalidPurchase(CourseSignalError):
    """A purchase event is missing required fields or references a foreign launch."""


class InvalidLaunch(CourseSignalError):
    """Launch payload failed validation (e.g. end_date not after start_date)."""


class LaunchNotFound(CourseSignalError):
    """No launch with that id exists in the workspace."""


class ShareAccessDenied(CourseSignalError):
    """Public recap is disabled, expired, unknown, or password protected.

    `password_required` tells the caller whether prompting for a password
    could succeed.
    """

    def __init__(self, message: str, password_required: bool = False):
        super().__init__(message)
        self.password_required = password_required
