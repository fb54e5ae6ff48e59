"""Capability tokens for report downloads.

A token is a self-contained, expiring claim that its holder may download one
report file:

    base64url(payload_json) + "." + base64url(hmac_sha256(secret, payload_json))

The payload names the agency, client and filename, plus an absolute expiry in
epoch seconds. Nothing is persisted: verification only needs the signing
secret, and rotating the secret invalidates every outstanding token.

Security notes:
- The MAC is checked against the exact payload bytes carried in the token,
  never a re-serialization
- Signatures are compared in constant time, on the canonical encoding, so a
  flipped character in the MAC segment is always a bad signature
- Filenames are validated at issuance and again at download; they become
  part of a storage key, so anything path-like is rejected
"""

import base64
import binascii
import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from client_reporting.core.errors import ErrorCode

# Defensive ceiling on what we are willing to decode
MAX_TOKEN_LENGTH = 2048

_B64URL_SEGMENT = re.compile(r"[A-Za-z0-9_-]+")
_REPORT_FILENAME = re.compile(r"[A-Za-z0-9_-]+\.[pP][dD][fF]")


class TokenFailure(str, Enum):
    """Why a token failed to decode."""

    MALFORMED = "MALFORMED"
    BAD_SIGNATURE = "BAD_SIGNATURE"
    EXPIRED = "EXPIRED"


class TokenError(Exception):
    """Raised by ``decode_token``; ``reason`` is a TokenFailure."""

    def __init__(self, reason: TokenFailure, message: str):
        self.reason = reason
        super().__init__(message)


class FilenameError(ValueError):
    """Raised by ``validate_report_filename``; ``code`` is the API error code."""

    def __init__(self, code: ErrorCode, message: str):
        self.code = code
        super().__init__(message)


@dataclass(frozen=True)
class TokenPayload:
    """Claims carried by a report download token."""

    agency_id: str
    client_id: str
    filename: str
    exp: int

    def to_json_bytes(self) -> bytes:
        return json.dumps(
            {
                "agencyId": self.agency_id,
                "clientId": self.client_id,
                "filename": self.filename,
                "exp": self.exp,
            },
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> "TokenPayload":
        """Build from decoded JSON, raising ValueError on any shape problem."""
        if not isinstance(data, dict):
            raise ValueError("payload is not an object")

        fields = {}
        for key in ("agencyId", "clientId", "filename"):
            value = data.get(key)
            if not isinstance(value, str) or not value:
                raise ValueError(f"payload field {key} missing or not a string")
            fields[key] = value

        exp = data.get("exp")
        # bool is an int subclass; reject it explicitly
        if not isinstance(exp, int) or isinstance(exp, bool):
            raise ValueError("payload field exp missing or not an integer")

        return cls(
            agency_id=fields["agencyId"],
            client_id=fields["clientId"],
            filename=fields["filename"],
            exp=exp,
        )


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(payload_bytes: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()
    return _b64url_encode(mac)


def encode_token(payload: TokenPayload, secret: str) -> str:
    """Serialize and sign ``payload``. Pure function."""
    payload_bytes = payload.to_json_bytes()
    return f"{_b64url_encode(payload_bytes)}.{_sign(payload_bytes, secret)}"


def decode_token(token: str, secret: str, now: float) -> TokenPayload:
    """Decode and verify a token.

    Checks run in a fixed order: structure, then signature, then expiry.
    A token is expired when ``exp <= now``.

    Raises:
        TokenError: with reason MALFORMED, BAD_SIGNATURE or EXPIRED
    """
    if not isinstance(token, str) or len(token) > MAX_TOKEN_LENGTH:
        raise TokenError(TokenFailure.MALFORMED, "Token is not a string of acceptable length")

    parts = token.split(".")
    if len(parts) != 2:
        raise TokenError(TokenFailure.MALFORMED, "Token must have exactly two segments")
    payload_segment, signature_segment = parts

    if not _B64URL_SEGMENT.fullmatch(payload_segment):
        raise TokenError(TokenFailure.MALFORMED, "Payload segment is not base64url")
    try:
        payload_bytes = _b64url_decode(payload_segment)
        payload = TokenPayload.from_dict(json.loads(payload_bytes.decode("utf-8")))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        # json.JSONDecodeError is a ValueError
        raise TokenError(TokenFailure.MALFORMED, f"Payload does not decode: {e}") from e

    if not _B64URL_SEGMENT.fullmatch(signature_segment):
        raise TokenError(TokenFailure.BAD_SIGNATURE, "Signature segment is not base64url")
    expected = _sign(payload_bytes, secret)
    if not hmac.compare_digest(signature_segment, expected):
        raise TokenError(TokenFailure.BAD_SIGNATURE, "Signature does not match payload")

    if payload.exp <= now:
        raise TokenError(TokenFailure.EXPIRED, "Token has expired")

    return payload


def validate_report_filename(filename: str) -> str:
    """Validate a report filename and return it unchanged.

    Rules, in order:
    1. Must end in ".pdf", case-insensitively (else INVALID_FILE_TYPE)
    2. No "/", "\\" or ".." anywhere (else INVALID_FILENAME)
    3. Whole name matches ``[A-Za-z0-9_-]+.pdf`` (else INVALID_FILENAME)

    The stem is case-sensitive and compared exactly against the request path
    later, so no normalization happens here.

    Raises:
        FilenameError
    """
    if not isinstance(filename, str) or not filename.lower().endswith(".pdf"):
        raise FilenameError(ErrorCode.INVALID_FILE_TYPE, "Only PDF files can be shared")

    if "/" in filename or "\\" in filename or ".." in filename:
        raise FilenameError(ErrorCode.INVALID_FILENAME, "Filename contains path characters")

    if not _REPORT_FILENAME.fullmatch(filename):
        raise FilenameError(
            ErrorCode.INVALID_FILENAME,
            "Filename may only contain letters, digits, '-' and '_' before '.pdf'",
        )

    return filename
