from __future__ import annotations

from landtoken.errors import ErrorKind, LandTokenError


class SignerError(LandTokenError):
    kind = ErrorKind.SIGNER_FAILURE


class UserCancelledError(SignerError):
    kind = ErrorKind.USER_CANCELLED


class SignerNotInstalledError(SignerError):
    kind = ErrorKind.SIGNER_NOT_INSTALLED


class SignerInsufficientFundsError(SignerError):
    kind = ErrorKind.INSUFFICIENT_FUNDS
