"""Exception taxonomy for fragcache.

Identity and attribute errors are raised synchronously to the caller, which
is usually a rendering path. Replay errors propagate out of the job handler
so the job worker's own retry policy applies.
"""

from __future__ import annotations


class FragcacheError(Exception):
    """Base class for all fragcache errors."""


class MissingAttributeError(FragcacheError, ValueError):
    """A variant requires an identity attribute that was not supplied."""

    def __init__(self, variant: str, attribute: str):
        self.variant = variant
        self.attribute = attribute
        super().__init__(f"Fragment type {variant} needs a {attribute}")


class IdentityMismatchError(FragcacheError, ValueError):
    """A supplied fragment does not sit where the caller claims it does."""


class UnknownVariantError(FragcacheError, LookupError):
    """A type tag names no mapped fragment variant."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown fragment type: {name!r}")


class UnknownRecordTypeError(FragcacheError, LookupError):
    """A record class name has not been registered with the registry."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown record type: {name!r}")


class DuplicateRegistrationError(FragcacheError):
    """A user class was redefined with different credentials."""

    def __init__(self, user_type: str):
        self.user_type = user_type
        super().__init__(f"You can't redefine an existing session user: {user_type!r}")


class SignInError(FragcacheError):
    """The replay session's sign-in POST did not redirect."""

    def __init__(self, user_type: str, status_code: int):
        self.user_type = user_type
        self.status_code = status_code
        super().__init__(f"Sign in failed for user type {user_type!r} (status {status_code})")


class TransportError(FragcacheError):
    """An HTTP-level failure while replaying a request."""
