"""Webhook payload signing and verification.

Signature schemes:

* ``hmac``: HMAC over the raw body, hex (or base64) encoded in a single header,
  optionally prefixed (``sha256=...``).
* ``timestamp``: ``t=<unix-seconds>,v1=<hex>`` computed over
  ``"<t>.<raw body>"``. Signatures outside the tolerance window are rejected.
* ``header_alias``: plain HMAC read from a primary header, falling back to a
  legacy header name.
* ``header_timestamp``: ``v0=<hex>`` over ``"v0:<t>:<raw body>"`` with the
  timestamp carried in its own header (Slack style).
* ``apikey``: shared key compared against a header.
* ``basic``: HTTP Basic credentials (``user:password``) compared against the secret.
* ``jwt``: HMAC-signed JWT (HS256/384/512), optionally bound to the body hash.

Verification never raises for a malformed header; it only raises
:class:`MissingRawBody` when there are no raw body bytes to check.
"""

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Type, Union

import httpx
import jwt
import structlog

from .exceptions import MissingRawBody

logger = structlog.get_logger(__name__)

RawBody = Union[bytes, str]
HeaderMap = Union[Mapping[str, str], httpx.Headers]


class SignatureVariant(str, Enum):
    """Known signature schemes."""

    HMAC = "hmac"
    TIMESTAMP = "timestamp"
    HEADER_ALIAS = "header_alias"
    HEADER_TIMESTAMP = "header_timestamp"
    API_KEY = "apikey"
    BASIC = "basic"
    JWT = "jwt"


def _as_bytes(raw_body: Optional[RawBody]) -> bytes:
    if raw_body is None:
        raise MissingRawBody("Raw request body is required for signature verification")
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    return bytes(raw_body)


def _header(headers: HeaderMap, name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    if not isinstance(headers, httpx.Headers):
        headers = httpx.Headers(dict(headers))
    value = headers.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _constant_time_equals(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def compute_hmac(
    secret: str,
    message: bytes,
    algorithm: str = "sha256",
    encoding: str = "hex",
) -> str:
    """Compute an HMAC digest of ``message`` with ``secret``."""
    digest = hmac.new(secret.encode("utf-8"), message, getattr(hashlib, algorithm))
    if encoding == "base64":
        return base64.b64encode(digest.digest()).decode("ascii")
    return digest.hexdigest()


def generate_secret(length: int = 32) -> str:
    """
    Generate a random webhook secret.

    Args:
        length: Length of the secret in bytes

    Returns:
        Hex-encoded secret string
    """
    return secrets.token_hex(length)


class SignatureValidator(ABC):
    """Verifies inbound signatures and produces outbound ones."""

    variant: SignatureVariant
    header: str

    @abstractmethod
    def verify(self, raw_body: Optional[RawBody], headers: HeaderMap, secret: str) -> bool:
        """Return True when the request carries a valid signature for ``secret``."""

    @abstractmethod
    def sign(self, raw_body: RawBody, secret: str, timestamp: Optional[int] = None) -> str:
        """Return the signature header value for ``raw_body``."""


class HmacSignatureValidator(SignatureValidator):
    """HMAC over the raw body in a single header."""

    variant = SignatureVariant.HMAC

    def __init__(
        self,
        header: str = "X-Webhook-Signature",
        prefix: str = "",
        algorithm: str = "sha256",
        encoding: str = "hex",
    ):
        if encoding not in ("hex", "base64"):
            raise ValueError(f"Unsupported signature encoding: {encoding}")
        if not hasattr(hashlib, algorithm):
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        self.header = header
        self.prefix = prefix
        self.algorithm = algorithm
        self.encoding = encoding

    def _check(self, body: bytes, provided: Optional[str], secret: str) -> bool:
        if not provided or not secret:
            return False
        if self.prefix:
            if not provided.startswith(self.prefix):
                return False
            provided = provided[len(self.prefix):]
        expected = compute_hmac(secret, body, self.algorithm, self.encoding)
        if self.encoding == "hex":
            provided = provided.lower()
        return _constant_time_equals(expected, provided)

    def verify(self, raw_body: Optional[RawBody], headers: HeaderMap, secret: str) -> bool:
        body = _as_bytes(raw_body)
        return self._check(body, _header(headers, self.header), secret)

    def sign(self, raw_body: RawBody, secret: str, timestamp: Optional[int] = None) -> str:
        digest = compute_hmac(secret, _as_bytes(raw_body), self.algorithm, self.encoding)
        return f"{self.prefix}{digest}"


class TimestampSignatureValidator(SignatureValidator):
    """
    Timestamp-qualified HMAC-SHA256.

    Signature format:
        t=<timestamp>,v1=<signature>[,v1=<signature>...]

    The signature is computed as:
        HMAC-SHA256(secret, "<timestamp>.<payload>")

    Several ``v1`` entries may be present (secret rotation); any match is
    accepted.
    """

    variant = SignatureVariant.TIMESTAMP
    SIGNATURE_VERSION = "v1"
    DEFAULT_TOLERANCE_SECONDS = 300

    def __init__(
        self,
        header: str = "X-Webhook-Signature",
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.header = header
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def _parse(self, value: str) -> Optional[tuple]:
        timestamp: Optional[int] = None
        signatures: List[str] = []
        for item in value.split(","):
            key, sep, part = item.strip().partition("=")
            if not sep:
                continue
            if key == "t":
                try:
                    timestamp = int(part)
                except ValueError:
                    return None
            elif key == self.SIGNATURE_VERSION and part:
                signatures.append(part.lower())
        if timestamp is None or not signatures:
            return None
        return timestamp, signatures

    def _compute(self, body: bytes, timestamp: int, secret: str) -> str:
        return compute_hmac(secret, str(timestamp).encode("ascii") + b"." + body)

    def verify(self, raw_body: Optional[RawBody], headers: HeaderMap, secret: str) -> bool:
        body = _as_bytes(raw_body)
        value = _header(headers, self.header)
        if not value or not secret:
            return False

        parsed = self._parse(value)
        if parsed is None:
            return False
        timestamp, signatures = parsed

        if abs(self._clock() - timestamp) > self.tolerance_seconds:
            logger.debug("signature_timestamp_out_of_tolerance", timestamp=timestamp)
            return False

        expected = self._compute(body, timestamp, secret)
        # Check every candidate so timing does not reveal which one matched
        matched = False
        for candidate in signatures:
            if _constant_time_equals(expected, candidate):
                matched = True
        return matched

    def sign(self, raw_body: RawBody, secret: str, timestamp: Optional[int] = None) -> str:
        if timestamp is None:
            timestamp = int(self._clock())
        signature = self._compute(_as_bytes(raw_body), timestamp, secret)
        return f"t={timestamp},{self.SIGNATURE_VERSION}={signature}"


class HeaderAliasSignatureValidator(HmacSignatureValidator):
    """HMAC read from a primary header, or a legacy header when the primary is absent."""

    variant = SignatureVariant.HEADER_ALIAS

    def __init__(
        self,
        header: str = "X-Webhook-Signature",
        legacy_header: str = "X-Signature",
        prefix: str = "",
        algorithm: str = "sha256",
        encoding: str = "hex",
    ):
        super().__init__(header=header, prefix=prefix, algorithm=algorithm, encoding=encoding)
        self.legacy_header = legacy_header

    def verify(self, raw_body: Optional[RawBody], headers: HeaderMap, secret: str) -> bool:
        body = _as_bytes(raw_body)
        provided = _header(headers, self.header) or _header(headers, self.legacy_header)
        return self._check(body, provided, secret)


class HeaderTimestampSignatureValidator(SignatureValidator):
    """
    HMAC-SHA256 with the timestamp in a separate header (Slack style).

    Signature format:
        v0=<hex>

    computed over ``"v0:<timestamp>:<payload>"``.
    """

    variant = SignatureVariant.HEADER_TIMESTAMP
    VERSION = "v0"

    def __init__(
        self,
        header: str = "X-Slack-Signature",
        timestamp_header: str = "X-Slack-Request-Timestamp",
        tolerance_seconds: int = TimestampSignatureValidator.DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.header = header
        self.timestamp_header = timestamp_header
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def _compute(self, body: bytes, timestamp: int, secret: str) -> str:
        base = f"{self.VERSION}:{timestamp}:".encode("ascii") + body
        return f"{self.VERSION}={compute_hmac(secret, base)}"

    def verify(self, raw_body: Optional[RawBody], headers: HeaderMap, secret: str) -> bool:
        body = _as_bytes(raw_body)
        provided = _header(headers, self.header)
        raw_timestamp = _header(headers, self.timestamp_header)
        if not provided or not raw_timestamp or not secret:
            return False
        try:
            timestamp = int(raw_timestamp)
        except ValueError:
            return False

        if abs(self._clock() - timestamp) > self.tolerance_seconds:
            logger.debug("signature_timestamp_out_of_tolerance", timestamp=timestamp)
            return False

        return _constant_time_equals(self._compute(body, timestamp, secret), provided.lower())

    def sign(self, raw_body: RawBody, secret: str, timestamp: Optional[int] = None) -> str:
        if timestamp is None:
            timestamp = int(self._clock())
        return self._compute(_as_bytes(raw_body), timestamp, secret)


class ApiKeyValidator(SignatureValidator):
    """Shared API key sent verbatim in a header."""

    variant = SignatureVariant.API_KEY

    def __init__(self, header: str = "X-API-Key"):
        self.header = header

    def verify(self, raw_body: Optional[RawBody], headers: HeaderMap, secret: str) -> bool:
        provided = _header(headers, self.header)
        if not provided or not secret:
            return False
        return _constant_time_equals(secret, provided)

    def sign(self, raw_body: RawBody, secret: str, timestamp: Optional[int] = None) -> str:
        return secret


class BasicAuthValidator(SignatureValidator):
    """HTTP Basic credentials; the secret is ``"<user>:<password>"``."""

    variant = SignatureVariant.BASIC
    SCHEME = "Basic "

    def __init__(self, header: str = "Authorization"):
        self.header = header

    def verify(self, raw_body: Optional[RawBody], headers: HeaderMap, secret: str) -> bool:
        value = _header(headers, self.header)
        if not value or not secret:
            return False
        if value[: len(self.SCHEME)].lower() != self.SCHEME.lower():
            return False
        try:
            credentials = base64.b64decode(value[len(self.SCHEME):].strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return False
        return _constant_time_equals(secret, credentials)

    def sign(self, raw_body: RawBody, secret: str, timestamp: Optional[int] = None) -> str:
        return self.SCHEME + base64.b64encode(secret.encode("utf-8")).decode("ascii")


class JwtSignatureValidator(SignatureValidator):
    """
    HMAC-signed JWT bearer token.

    Tokens produced by :meth:`sign` carry ``iat``, ``exp``, ``iss`` and a
    ``body_sha256`` claim. On verification the body hash is checked only
    when the claim is present, so plain bearer tokens from other senders
    are accepted as long as the signature and expiry hold.
    """

    variant = SignatureVariant.JWT
    ALGORITHMS = ("HS256", "HS384", "HS512")
    BODY_CLAIM = "body_sha256"

    def __init__(
        self,
        header: str = "Authorization",
        algorithm: str = "HS256",
        issuer: str = "hookrelay",
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        if algorithm not in self.ALGORITHMS:
            raise ValueError(f"Unsupported JWT algorithm: {algorithm}")
        self.header = header
        self.algorithm = algorithm
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _token(self, headers: HeaderMap) -> Optional[str]:
        value = _header(headers, self.header)
        if value and value[:7].lower() == "bearer ":
            value = value[7:].strip()
        return value or None

    def verify(self, raw_body: Optional[RawBody], headers: HeaderMap, secret: str) -> bool:
        token = self._token(headers)
        if not token or not secret:
            return False
        try:
            # Time claims are checked below against the injected clock
            claims = jwt.decode(
                token,
                secret,
                algorithms=list(self.ALGORITHMS),
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except jwt.InvalidTokenError as exc:
            logger.debug("jwt_rejected", error=str(exc))
            return False

        now = self._clock()
        exp = claims.get("exp")
        if isinstance(exp, (int, float)) and now >= exp:
            logger.debug("jwt_expired", exp=exp)
            return False
        nbf = claims.get("nbf")
        if isinstance(nbf, (int, float)) and now < nbf:
            return False

        expected_hash = claims.get(self.BODY_CLAIM)
        if expected_hash is not None:
            actual = hashlib.sha256(_as_bytes(raw_body)).hexdigest()
            return _constant_time_equals(str(expected_hash), actual)
        return True

    def sign(self, raw_body: RawBody, secret: str, timestamp: Optional[int] = None) -> str:
        if timestamp is None:
            timestamp = int(self._clock())
        claims = {
            "iat": timestamp,
            "exp": timestamp + self.ttl_seconds,
            "iss": self.issuer,
            self.BODY_CLAIM: hashlib.sha256(_as_bytes(raw_body)).hexdigest(),
        }
        return jwt.encode(claims, secret, algorithm=self.algorithm)


_VALIDATORS: Dict[SignatureVariant, Type[SignatureValidator]] = {
    SignatureVariant.HMAC: HmacSignatureValidator,
    SignatureVariant.TIMESTAMP: TimestampSignatureValidator,
    SignatureVariant.HEADER_ALIAS: HeaderAliasSignatureValidator,
    SignatureVariant.HEADER_TIMESTAMP: HeaderTimestampSignatureValidator,
    SignatureVariant.API_KEY: ApiKeyValidator,
    SignatureVariant.BASIC: BasicAuthValidator,
    SignatureVariant.JWT: JwtSignatureValidator,
}

# Variants taking tolerance_seconds and clock
_TOLERANCE_VARIANTS = (SignatureVariant.TIMESTAMP, SignatureVariant.HEADER_TIMESTAMP)


def get_validator(variant: Union[str, SignatureVariant], **options) -> SignatureValidator:
    """Build a validator for ``variant``; ``options`` go to its constructor."""
    try:
        cls = _VALIDATORS[SignatureVariant(variant)]
    except ValueError:
        raise ValueError(f"Unknown signature variant: {variant}") from None
    return cls(**options)


def build_validator(
    variant: Union[str, SignatureVariant],
    header: Optional[str] = None,
    tolerance_seconds: int = TimestampSignatureValidator.DEFAULT_TOLERANCE_SECONDS,
    clock: Callable[[], float] = time.time,
) -> SignatureValidator:
    """Build a validator from source settings, passing only the options ``variant`` accepts."""
    try:
        variant = SignatureVariant(variant)
    except ValueError:
        raise ValueError(f"Unknown signature variant: {variant}") from None
    options: Dict[str, object] = {}
    if header:
        options["header"] = header
    if variant in _TOLERANCE_VARIANTS:
        options.update(tolerance_seconds=tolerance_seconds, clock=clock)
    elif variant == SignatureVariant.JWT:
        options["clock"] = clock
    return get_validator(variant, **options)


def verify_signature(
    raw_body: Optional[RawBody],
    headers: HeaderMap,
    secret: str,
    variant: Union[str, SignatureVariant] = SignatureVariant.HMAC,
    **options,
) -> bool:
    """Verify a request against one of the known signature schemes."""
    return get_validator(variant, **options).verify(raw_body, headers, secret)
