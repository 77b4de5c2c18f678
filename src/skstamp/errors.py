"""Exception taxonomy for SKStamp.

Every failure that stops a timestamp from being built, fetched, decoded or
checked is raised as a subclass of :class:`TimestampError`. The one outcome
that is *not* an exception is a message-imprint mismatch: the verifier
reports it as :attr:`~skstamp.models.RejectionReason.DIGEST_MISMATCH` on a
normal result, because "this document was not timestamped as claimed" is a
legitimate answer rather than a broken system.
"""

from __future__ import annotations

from typing import Optional


class TimestampError(Exception):
    """Base class for all SKStamp errors."""


class InvalidDigestLength(TimestampError, ValueError):
    """The digest does not have the size its algorithm produces."""

    def __init__(self, algorithm: str, expected: int, actual: int) -> None:
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{algorithm} digest must be {expected} bytes, got {actual}"
        )


class MalformedEncoding(TimestampError, ValueError):
    """DER input is truncated, mis-tagged or otherwise not decodable."""


class UnsupportedTimeFormat(MalformedEncoding):
    """A GeneralizedTime value is not expressed in UTC (``Z`` suffix)."""


class TsaRejected(TimestampError):
    """The TSA answered with a status other than granted / grantedWithMods.

    Attributes:
        status: PKIStatus integer from the response.
        status_string: Free text supplied by the TSA, if any.
        fail_info: Names of the PKIFailureInfo bits that were set.
    """

    def __init__(
        self,
        status: int,
        status_string: Optional[str] = None,
        fail_info: Optional[list[str]] = None,
    ) -> None:
        self.status = status
        self.status_string = status_string
        self.fail_info = fail_info or []
        detail = f"TSA rejected the request (status {status})"
        if status_string:
            detail += f": {status_string}"
        if self.fail_info:
            detail += f" [{', '.join(self.fail_info)}]"
        super().__init__(detail)


class TimestampNotFound(TimestampError):
    """A granted response carries no usable genTime."""


class TransportFailure(TimestampError):
    """The HTTP exchange with the TSA failed or returned no usable body."""

    def __init__(self, message: str, http_status: Optional[int] = None) -> None:
        self.http_status = http_status
        super().__init__(message)


class TransportTimeout(TransportFailure):
    """The TSA did not answer within the configured timeout."""


class VerificationError(TimestampError):
    """A token could not be verified for a reason other than its imprint."""


class NonceMismatch(VerificationError):
    """The nonce echoed in the token differs from the one that was sent."""


class SignatureInvalid(VerificationError):
    """The CMS signature over the token does not verify."""


class ChainUntrusted(VerificationError):
    """The signing certificate does not chain to a trusted certificate."""
