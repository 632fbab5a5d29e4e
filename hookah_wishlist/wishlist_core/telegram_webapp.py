"""Telegram Mini App init-data verification.

Checks the ``initData`` string a Mini App sends with every request: the
HMAC-SHA256 signature derived from the bot token, the ``auth_date``
freshness window and the embedded ``user`` payload.

Reference: https://core.telegram.org/bots/webapps#validating-data-received-via-the-mini-app
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union
from urllib.parse import unquote

logger = logging.getLogger(__name__)

INIT_DATA_HEADER = "X-Telegram-Init-Data"
INIT_DATA_QUERY_PARAM = "initData"
WEBAPP_DATA_LABEL = b"WebAppData"
MAX_AUTH_AGE_SECONDS = 86_400

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_HASH_PATTERN = re.compile(r"[0-9a-fA-F]{64}")
# Digit counts are capped so int() never sees an oversized string.
_AUTH_DATE_PATTERN = re.compile(r"[0-9]{1,12}")
_INTEGER_PATTERN = re.compile(r"-?[0-9]{1,19}")
_BROKEN_ESCAPE_PATTERN = re.compile(r"%(?![0-9a-fA-F]{2})")


class AuthErrorCode(str, Enum):
    MISSING_INIT_DATA = "MISSING_INIT_DATA"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    EXPIRED_AUTH_DATA = "EXPIRED_AUTH_DATA"
    MISSING_USER_DATA = "MISSING_USER_DATA"
    INVALID_USER_DATA = "INVALID_USER_DATA"
    MISSING_BOT_TOKEN = "MISSING_BOT_TOKEN"

    @property
    def http_status(self) -> int:
        if self is AuthErrorCode.MISSING_BOT_TOKEN:
            return 500
        return 401

    @property
    def message(self) -> str:
        return _ERROR_MESSAGES[self]


_ERROR_MESSAGES = {
    AuthErrorCode.MISSING_INIT_DATA: "Unauthorized: Missing Telegram init data",
    AuthErrorCode.INVALID_SIGNATURE: "Unauthorized: Invalid signature",
    AuthErrorCode.EXPIRED_AUTH_DATA: "Unauthorized: Expired authentication data",
    AuthErrorCode.MISSING_USER_DATA: "Unauthorized: Missing user data",
    AuthErrorCode.INVALID_USER_DATA: "Unauthorized: Invalid user data",
    AuthErrorCode.MISSING_BOT_TOKEN: "Server configuration error",
}


class InitDataParseError(ValueError):
    """Raised when init-data has no usable ``hash`` field."""


class InitDataDecodeError(ValueError):
    """Raised when a parameter value is not valid percent-encoded UTF-8."""


class UserDataError(ValueError):
    def __init__(self, code: AuthErrorCode, detail: str) -> None:
        super().__init__(detail)
        self.code = code


@dataclass(frozen=True)
class ParsedInitData:
    params: Dict[str, str]
    hash: str


@dataclass(frozen=True)
class TelegramIdentity:
    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    language_code: Optional[str] = None
    photo_url: Optional[str] = None
    is_bot: Optional[bool] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_user_param(cls, value: Optional[str]) -> "TelegramIdentity":
        """Decode the (already percent-decoded) ``user`` parameter.

        Fails closed: anything without a usable 64-bit ``id`` is rejected.
        """
        if value is None or not value.strip():
            raise UserDataError(AuthErrorCode.MISSING_USER_DATA, "user parameter is missing or empty")

        try:
            payload = json.loads(value)
        except (ValueError, RecursionError) as exc:
            raise UserDataError(AuthErrorCode.INVALID_USER_DATA, "user parameter is not valid JSON") from exc

        if not isinstance(payload, dict):
            raise UserDataError(AuthErrorCode.INVALID_USER_DATA, "user parameter is not a JSON object")

        user_id = _coerce_user_id(payload.get("id"))
        if user_id is None:
            raise UserDataError(AuthErrorCode.INVALID_USER_DATA, "user.id is missing or invalid")

        is_bot = payload.get("is_bot")
        return cls(
            id=user_id,
            username=_optional_text(payload.get("username")),
            first_name=_optional_text(payload.get("first_name")),
            last_name=_optional_text(payload.get("last_name")),
            language_code=_optional_text(payload.get("language_code")),
            photo_url=_optional_text(payload.get("photo_url")),
            is_bot=is_bot if isinstance(is_bot, bool) else None,
            raw=payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "language_code": self.language_code,
            "photo_url": self.photo_url,
            "is_bot": self.is_bot,
        }


@dataclass(frozen=True)
class Authenticated:
    user_id: int
    identity: TelegramIdentity
    init_data: str = field(repr=False)

    ok = True


@dataclass(frozen=True)
class Rejected:
    code: AuthErrorCode

    ok = False

    @property
    def message(self) -> str:
        return self.code.message

    @property
    def http_status(self) -> int:
        return self.code.http_status


AuthDecision = Union[Authenticated, Rejected]


def _coerce_user_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        user_id = value
    elif isinstance(value, str) and _INTEGER_PATTERN.fullmatch(value.strip()):
        user_id = int(value.strip())
    else:
        return None
    if user_id == 0 or not INT64_MIN <= user_id <= INT64_MAX:
        return None
    return user_id


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def parse_init_data(init_data: str) -> ParsedInitData:
    """Split raw init-data into still-encoded params plus the ``hash`` value.

    Duplicate keys: the last occurrence wins.
    """
    raw = (init_data or "").strip()
    if not raw:
        raise InitDataParseError("init data is empty")

    params: Dict[str, str] = {}
    provided_hash: Optional[str] = None
    for segment in raw.split("&"):
        if not segment:
            continue
        key, sep, value = segment.partition("=")
        if key == "hash":
            if not sep:
                raise InitDataParseError("hash segment has no value")
            provided_hash = value
            continue
        if not key or not sep:
            continue
        params[key] = value

    if provided_hash is None:
        raise InitDataParseError("hash is missing")
    if not _HASH_PATTERN.fullmatch(provided_hash):
        raise InitDataParseError("hash is not a 64-character hex digest")
    return ParsedInitData(params=params, hash=provided_hash.lower())


def percent_decode(value: str) -> str:
    if _BROKEN_ESCAPE_PATTERN.search(value):
        raise InitDataDecodeError("malformed percent escape")
    try:
        return unquote(value, encoding="utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise InitDataDecodeError("value is not valid UTF-8") from exc


def build_data_check_string(params: Mapping[str, str]) -> bytes:
    # Sort on the raw keys first, decode values afterwards.
    lines = []
    for key in sorted(key for key in params if key != "hash"):
        lines.append(f"{key}={percent_decode(params[key])}")
    return "\n".join(lines).encode("utf-8")


def derive_secret_key(bot_token: str) -> bytes:
    return hmac.new(WEBAPP_DATA_LABEL, bot_token.encode("utf-8"), hashlib.sha256).digest()


def compute_signature(secret_key: bytes, data_check_string: bytes) -> str:
    return hmac.new(secret_key, data_check_string, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.lower().encode("ascii"), provided.lower().encode("ascii"))


def check_auth_date(raw_auth_date: Optional[str], now: int, max_age_seconds: int = MAX_AUTH_AGE_SECONDS) -> bool:
    """Return True iff ``0 <= now - auth_date <= max_age_seconds``."""
    if raw_auth_date is None or not _AUTH_DATE_PATTERN.fullmatch(raw_auth_date):
        return False
    age = now - int(raw_auth_date)
    return 0 <= age <= max_age_seconds


def extract_init_data(headers: Mapping[str, str], query_params: Mapping[str, str]) -> str:
    """Pick init-data from the request, header first, then query string."""
    from_header = (headers.get(INIT_DATA_HEADER) or "").strip()
    if from_header:
        return from_header
    return (query_params.get(INIT_DATA_QUERY_PARAM) or "").strip()


class TelegramInitDataAuthenticator:
    """Verifies init-data for one bot token.

    The secret key is derived once here; ``authenticate`` is pure and safe
    to call concurrently.
    """

    def __init__(
        self,
        bot_token: str,
        *,
        max_age_seconds: int = MAX_AUTH_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        token = (bot_token or "").strip()
        self._secret_key: Optional[bytes] = derive_secret_key(token) if token else None
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        if self._secret_key is None:
            logger.error("TELEGRAM_BOT_TOKEN is not configured; Mini App requests will be refused")

    @property
    def is_configured(self) -> bool:
        return self._secret_key is not None

    def authenticate(self, init_data: Optional[str]) -> AuthDecision:
        raw = (init_data or "").strip()
        if not raw:
            return Rejected(AuthErrorCode.MISSING_INIT_DATA)
        if self._secret_key is None:
            return Rejected(AuthErrorCode.MISSING_BOT_TOKEN)

        try:
            parsed = parse_init_data(raw)
            data_check_string = build_data_check_string(parsed.params)
        except (InitDataParseError, InitDataDecodeError) as exc:
            logger.debug("Rejecting init data: %s", exc)
            return Rejected(AuthErrorCode.INVALID_SIGNATURE)

        expected = compute_signature(self._secret_key, data_check_string)
        if not signatures_match(expected, parsed.hash):
            return Rejected(AuthErrorCode.INVALID_SIGNATURE)

        # Values already decoded cleanly while building the check string.
        auth_date = parsed.params.get("auth_date")
        if auth_date is not None:
            auth_date = percent_decode(auth_date)
        if not check_auth_date(auth_date, int(self._clock()), self.max_age_seconds):
            return Rejected(AuthErrorCode.EXPIRED_AUTH_DATA)

        user_raw = parsed.params.get("user")
        try:
            identity = TelegramIdentity.from_user_param(percent_decode(user_raw) if user_raw is not None else None)
        except UserDataError as exc:
            logger.debug("Rejecting init data: %s", exc)
            return Rejected(exc.code)

        return Authenticated(user_id=identity.id, identity=identity, init_data=raw)
