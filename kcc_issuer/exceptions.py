class KccError(Exception):
    """Base class for errors raised by the issuer service."""


class NotRegisteredError(KccError):
    """No issuer DID has been registered in the local state store yet."""


class BootstrapError(KccError):
    pass


class IssuanceError(KccError):
    pass


class RecordQueryError(KccError):
    pass


class AuthorizationError(KccError):
    pass


class DidResolutionError(KccError):
    pass


class CredentialError(KccError):
    pass


class DwnError(KccError):
    """A DWN endpoint rejected a message or could not be reached."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status
