class CrownError(Exception):
    """Base class for every failure raised by the engine"""

    reason = "error"

    def __init__(self, message="", account_id=None):
        super().__init__(message)
        self.message = message
        self.account_id = account_id

    def __str__(self):
        if self.account_id is not None:
            return f"[account {self.account_id}] {self.message}"
        return self.message


class TransportError(CrownError):
    """Network failure or timeout after every candidate host was tried"""

    reason = "transport_error"


class LoginTimeout(TransportError):
    """An authentication stage did not reach a known state within its wait budget"""

    reason = "login_timeout"


class ProtocolError(CrownError):
    """The platform answered with something we could not interpret"""

    reason = "protocol_error"


class SessionEvicted(CrownError):
    """The platform invalidated the session (doubleLogin or an eviction dialog)"""

    reason = "session_evicted"


class AuthenticationFailed(CrownError):
    """Bad credentials or a locked account; never retried automatically"""

    reason = "authentication_failed"

    def __init__(self, message="", account_id=None, code=None):
        super().__init__(message, account_id)
        self.code = code


class PasscodeUnresolvable(CrownError):
    """The secondary passcode could not be entered and needs an operator"""

    reason = "passcode_unresolvable"

    def __init__(self, message="", account_id=None, variant=None):
        super().__init__(message, account_id)
        self.variant = variant


class CredentialChangeRequired(CrownError):
    """The platform forces a rotation but no target credential is configured"""

    reason = "credential_change_required"

    def __init__(self, message="", account_id=None, step=None):
        super().__init__(message, account_id)
        self.step = step


class CredentialChangeFailed(CrownError):
    """A rotation sub-step (login id or password) was rejected"""

    reason = "credential_change_failed"

    def __init__(self, message="", account_id=None, step=None, code=None):
        super().__init__(message, account_id)
        self.step = step
        self.code = code


class BetRejected(CrownError):
    """The platform refused an order; code is the raw platform code when known"""

    reason = "bet_rejected"

    def __init__(self, message="", account_id=None, code=None):
        super().__init__(message, account_id)
        self.code = code


class LineConflict(CrownError):
    """Another account on the same line already holds the slot for this match"""

    reason = "line_conflicted"

    def __init__(self, message="", account_id=None, line_key=None):
        super().__init__(message, account_id)
        self.line_key = line_key
