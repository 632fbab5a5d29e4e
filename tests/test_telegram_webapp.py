import hashlib
import hmac
import json
import unittest
from urllib.parse import quote, urlencode

from hookah_wishlist.wishlist_core.telegram_webapp import (
    INIT_DATA_HEADER,
    AuthErrorCode,
    Authenticated,
    InitDataDecodeError,
    InitDataParseError,
    Rejected,
    TelegramInitDataAuthenticator,
    build_data_check_string,
    check_auth_date,
    compute_signature,
    derive_secret_key,
    extract_init_data,
    parse_init_data,
    percent_decode,
)

BOT_TOKEN = "test-bot-token"
NOW = 1_700_000_000


def _build_init_data(payload: dict, bot_token: str = BOT_TOKEN, safe: str = "") -> str:
    data = {key: value for key, value in payload.items() if key != "hash"}
    check_lines = [f"{key}={value}" for key, value in sorted(data.items())]
    data_check_string = "\n".join(check_lines)
    secret_key = hmac.new(b"WebAppData", bot_token.encode("utf-8"), hashlib.sha256).digest()
    digest = hmac.new(secret_key, data_check_string.encode("utf-8"), hashlib.sha256).hexdigest()
    data["hash"] = digest
    return urlencode(data, safe=safe, quote_via=quote)


def _user_json(**overrides) -> str:
    user = {"id": 123456789, "first_name": "Test", "username": "testuser", "language_code": "en"}
    user.update(overrides)
    return json.dumps(user, ensure_ascii=False)


def _payload(**overrides) -> dict:
    payload = {"query_id": "AAHdF6IQAAAAAN0XohDhrOrc", "user": _user_json(), "auth_date": str(NOW)}
    payload.update(overrides)
    return payload


def _authenticator(bot_token: str = BOT_TOKEN, now: int = NOW) -> TelegramInitDataAuthenticator:
    return TelegramInitDataAuthenticator(bot_token, clock=lambda: now)


class AuthenticatorTests(unittest.TestCase):
    def test_valid_init_data_is_authenticated(self) -> None:
        decision = _authenticator().authenticate(_build_init_data(_payload()))

        self.assertIsInstance(decision, Authenticated)
        self.assertTrue(decision.ok)
        self.assertEqual(decision.user_id, 123456789)
        self.assertEqual(decision.identity.username, "testuser")
        self.assertEqual(decision.identity.first_name, "Test")
        self.assertEqual(decision.identity.language_code, "en")

    def test_param_order_does_not_matter(self) -> None:
        payload = _payload()
        init_data = _build_init_data(payload)
        pairs = init_data.split("&")
        reordered = "&".join(reversed(pairs))

        decision = _authenticator().authenticate(reordered)

        self.assertIsInstance(decision, Authenticated)

    def test_tampered_user_is_rejected(self) -> None:
        init_data = _build_init_data(_payload())
        tampered = init_data.replace("123456789", "987654321")

        decision = _authenticator().authenticate(tampered)

        self.assertIsInstance(decision, Rejected)
        self.assertEqual(decision.code, AuthErrorCode.INVALID_SIGNATURE)
        self.assertEqual(decision.http_status, 401)

    def test_tampered_auth_date_is_rejected(self) -> None:
        init_data = _build_init_data(_payload())
        tampered = init_data.replace(f"auth_date={NOW}", f"auth_date={NOW - 5}")

        decision = _authenticator().authenticate(tampered)

        self.assertEqual(decision.code, AuthErrorCode.INVALID_SIGNATURE)

    def test_wrong_bot_token_is_rejected(self) -> None:
        init_data = _build_init_data(_payload(), bot_token="another-token")

        decision = _authenticator().authenticate(init_data)

        self.assertEqual(decision.code, AuthErrorCode.INVALID_SIGNATURE)

    def test_uppercase_hash_is_accepted(self) -> None:
        init_data = _build_init_data(_payload())
        prefix, digest = init_data.rsplit("hash=", 1)

        decision = _authenticator().authenticate(f"{prefix}hash={digest.upper()}")

        self.assertIsInstance(decision, Authenticated)

    def test_auth_date_exactly_at_window_edge_is_accepted(self) -> None:
        init_data = _build_init_data(_payload(auth_date=str(NOW - 86_400)))

        decision = _authenticator().authenticate(init_data)

        self.assertIsInstance(decision, Authenticated)

    def test_auth_date_one_second_past_window_is_expired(self) -> None:
        init_data = _build_init_data(_payload(auth_date=str(NOW - 86_401)))

        decision = _authenticator().authenticate(init_data)

        self.assertEqual(decision.code, AuthErrorCode.EXPIRED_AUTH_DATA)
        self.assertEqual(decision.message, "Unauthorized: Expired authentication data")

    def test_auth_date_in_the_future_is_expired(self) -> None:
        init_data = _build_init_data(_payload(auth_date=str(NOW + 1)))

        decision = _authenticator().authenticate(init_data)

        self.assertEqual(decision.code, AuthErrorCode.EXPIRED_AUTH_DATA)

    def test_missing_auth_date_is_expired(self) -> None:
        payload = _payload()
        payload.pop("auth_date")

        decision = _authenticator().authenticate(_build_init_data(payload))

        self.assertEqual(decision.code, AuthErrorCode.EXPIRED_AUTH_DATA)

    def test_non_numeric_auth_date_is_expired(self) -> None:
        for raw in ("17e8", "-5", " 1700000000", "now"):
            with self.subTest(auth_date=raw):
                decision = _authenticator().authenticate(_build_init_data(_payload(auth_date=raw)))
                self.assertEqual(decision.code, AuthErrorCode.EXPIRED_AUTH_DATA)

    def test_oversized_auth_date_is_expired(self) -> None:
        for raw in ("9" * 5000, "1" * 13):
            with self.subTest(digits=len(raw)):
                decision = _authenticator().authenticate(_build_init_data(_payload(auth_date=raw)))
                self.assertEqual(decision.code, AuthErrorCode.EXPIRED_AUTH_DATA)

    def test_oversized_user_id_string_is_invalid(self) -> None:
        for user_id in ("1" * 5000, "1" * 20):
            with self.subTest(digits=len(user_id)):
                init_data = _build_init_data(_payload(user=json.dumps({"id": user_id})))
                decision = _authenticator().authenticate(init_data)
                self.assertEqual(decision.code, AuthErrorCode.INVALID_USER_DATA)

    def test_oversized_numeric_user_id_is_invalid(self) -> None:
        init_data = _build_init_data(_payload(user='{"id": ' + "1" * 5000 + "}"))

        decision = _authenticator().authenticate(init_data)

        self.assertEqual(decision.code, AuthErrorCode.INVALID_USER_DATA)

    def test_deeply_nested_user_is_invalid(self) -> None:
        init_data = _build_init_data(_payload(user="[" * 100_000))

        decision = _authenticator().authenticate(init_data)

        self.assertEqual(decision.code, AuthErrorCode.INVALID_USER_DATA)

    def test_is_bot_keeps_only_real_booleans(self) -> None:
        cases = {"false": None, "true": None, 1: None, True: True, False: False}
        for raw, expected in cases.items():
            with self.subTest(is_bot=raw):
                user = _user_json(is_bot=raw)
                decision = _authenticator().authenticate(_build_init_data(_payload(user=user)))
                self.assertIsInstance(decision, Authenticated)
                self.assertIs(decision.identity.is_bot, expected)

    def test_expired_check_runs_after_signature_check(self) -> None:
        init_data = _build_init_data(_payload(auth_date="1"), bot_token="another-token")

        decision = _authenticator().authenticate(init_data)

        self.assertEqual(decision.code, AuthErrorCode.INVALID_SIGNATURE)

    def test_missing_init_data_variants(self) -> None:
        for raw in (None, "", "   "):
            with self.subTest(init_data=raw):
                decision = _authenticator().authenticate(raw)
                self.assertEqual(decision.code, AuthErrorCode.MISSING_INIT_DATA)
                self.assertEqual(decision.message, "Unauthorized: Missing Telegram init data")

    def test_missing_hash_is_invalid_signature(self) -> None:
        init_data = f"auth_date={NOW}&user={quote(_user_json(), safe='')}"

        decision = _authenticator().authenticate(init_data)

        self.assertEqual(decision.code, AuthErrorCode.INVALID_SIGNATURE)

    def test_malformed_hash_is_invalid_signature(self) -> None:
        base = f"auth_date={NOW}&user={quote(_user_json(), safe='')}"
        for suffix in ("&hash=abc", "&hash", "&hash=" + "z" * 64, "&hash=" + "a" * 65):
            with self.subTest(suffix=suffix):
                decision = _authenticator().authenticate(base + suffix)
                self.assertEqual(decision.code, AuthErrorCode.INVALID_SIGNATURE)

    def test_bad_percent_encoding_is_invalid_signature(self) -> None:
        for value in ("%ZZ", "%E0%A4%A", "%FF%FE", "abc%"):
            with self.subTest(value=value):
                init_data = f"auth_date={NOW}&user={value}&hash={'a' * 64}"
                decision = _authenticator().authenticate(init_data)
                self.assertEqual(decision.code, AuthErrorCode.INVALID_SIGNATURE)

    def test_missing_user_is_reported(self) -> None:
        payload = _payload()
        payload.pop("user")

        decision = _authenticator().authenticate(_build_init_data(payload))

        self.assertEqual(decision.code, AuthErrorCode.MISSING_USER_DATA)
        self.assertEqual(decision.http_status, 401)

    def test_empty_user_is_reported_as_missing(self) -> None:
        decision = _authenticator().authenticate(_build_init_data(_payload(user="")))

        self.assertEqual(decision.code, AuthErrorCode.MISSING_USER_DATA)

    def test_unusable_user_payloads_are_invalid(self) -> None:
        cases = {
            "not-json": "{not json",
            "array": "[1, 2]",
            "no-id": json.dumps({"first_name": "Ghost"}),
            "zero-id": json.dumps({"id": 0}),
            "bool-id": json.dumps({"id": True}),
            "float-id": json.dumps({"id": 12.5}),
            "too-large-id": json.dumps({"id": 2**63}),
            "text-id": json.dumps({"id": "abc"}),
        }
        for label, user in cases.items():
            with self.subTest(case=label):
                decision = _authenticator().authenticate(_build_init_data(_payload(user=user)))
                self.assertEqual(decision.code, AuthErrorCode.INVALID_USER_DATA)

    def test_digit_string_user_id_is_accepted(self) -> None:
        init_data = _build_init_data(_payload(user=json.dumps({"id": "42"})))

        decision = _authenticator().authenticate(init_data)

        self.assertIsInstance(decision, Authenticated)
        self.assertEqual(decision.user_id, 42)

    def test_unicode_and_extra_user_fields_pass_through(self) -> None:
        user = _user_json(first_name="Алексей 🍃", last_name="O'Brien & Co", is_premium=True)

        decision = _authenticator().authenticate(_build_init_data(_payload(user=user)))

        self.assertIsInstance(decision, Authenticated)
        self.assertEqual(decision.identity.first_name, "Алексей 🍃")
        self.assertEqual(decision.identity.last_name, "O'Brien & Co")
        self.assertTrue(decision.identity.raw["is_premium"])

    def test_plus_sign_is_kept_literal(self) -> None:
        init_data = _build_init_data(_payload(query_id="AA+BB"), safe="+")
        self.assertIn("query_id=AA+BB", init_data)

        decision = _authenticator().authenticate(init_data)

        self.assertIsInstance(decision, Authenticated)

    def test_duplicate_keys_last_occurrence_wins(self) -> None:
        signed = _build_init_data(_payload())
        forged_user = quote(_user_json(id=555), safe="")

        first_wins_attempt = _authenticator().authenticate(f"{signed}&user={forged_user}")
        last_wins = _authenticator().authenticate(f"user={forged_user}&{signed}")

        self.assertEqual(first_wins_attempt.code, AuthErrorCode.INVALID_SIGNATURE)
        self.assertIsInstance(last_wins, Authenticated)
        self.assertEqual(last_wins.user_id, 123456789)

    def test_signature_param_is_treated_as_signed_field(self) -> None:
        init_data = _build_init_data(_payload(signature="ed25519-signature-value"))

        decision = _authenticator().authenticate(init_data)
        tampered = _authenticator().authenticate(init_data.replace("ed25519", "ed25518"))

        self.assertIsInstance(decision, Authenticated)
        self.assertEqual(tampered.code, AuthErrorCode.INVALID_SIGNATURE)

    def test_missing_bot_token_is_server_error(self) -> None:
        with self.assertLogs("hookah_wishlist.wishlist_core.telegram_webapp", level="ERROR"):
            authenticator = TelegramInitDataAuthenticator("  ", clock=lambda: NOW)

        decision = authenticator.authenticate(_build_init_data(_payload()))

        self.assertFalse(authenticator.is_configured)
        self.assertEqual(decision.code, AuthErrorCode.MISSING_BOT_TOKEN)
        self.assertEqual(decision.http_status, 500)
        self.assertEqual(decision.message, "Server configuration error")

    def test_missing_init_data_reported_before_missing_bot_token(self) -> None:
        with self.assertLogs("hookah_wishlist.wishlist_core.telegram_webapp", level="ERROR"):
            authenticator = TelegramInitDataAuthenticator("", clock=lambda: NOW)

        self.assertEqual(authenticator.authenticate("").code, AuthErrorCode.MISSING_INIT_DATA)

    def test_authenticated_repr_hides_raw_init_data(self) -> None:
        init_data = _build_init_data(_payload())

        decision = _authenticator().authenticate(init_data)

        self.assertNotIn(init_data, repr(decision))
        self.assertNotIn(BOT_TOKEN, repr(decision))


class InitDataHelpersTests(unittest.TestCase):
    def test_parse_init_data_keeps_encoded_values_and_extracts_hash(self) -> None:
        parsed = parse_init_data(f"a=x%20y&b=1=2&&noval&=orphan&hash={'AB' * 32}")

        self.assertEqual(parsed.params, {"a": "x%20y", "b": "1=2"})
        self.assertEqual(parsed.hash, "ab" * 32)

    def test_parse_init_data_requires_hash(self) -> None:
        with self.assertRaises(InitDataParseError):
            parse_init_data("auth_date=1")
        with self.assertRaises(InitDataParseError):
            parse_init_data("auth_date=1&hash")

    def test_build_data_check_string_sorts_keys_and_decodes_values(self) -> None:
        result = build_data_check_string({"user": "%7B%22id%22%3A1%7D", "auth_date": "1", "hash": "ignored"})

        self.assertEqual(result, b'auth_date=1\nuser={"id":1}')

    def test_percent_decode_is_strict(self) -> None:
        self.assertEqual(percent_decode("a+b%20c"), "a+b c")
        self.assertEqual(percent_decode("%F0%9F%8D%83"), "🍃")
        with self.assertRaises(InitDataDecodeError):
            percent_decode("%G1")
        with self.assertRaises(InitDataDecodeError):
            percent_decode("%C3%28")

    def test_compute_signature_matches_reference_hmac(self) -> None:
        secret = derive_secret_key(BOT_TOKEN)
        expected_secret = hmac.new(b"WebAppData", BOT_TOKEN.encode("utf-8"), hashlib.sha256).digest()
        expected = hmac.new(expected_secret, b"auth_date=1", hashlib.sha256).hexdigest()

        self.assertEqual(secret, expected_secret)
        self.assertEqual(compute_signature(secret, b"auth_date=1"), expected)

    def test_check_auth_date_boundaries(self) -> None:
        self.assertTrue(check_auth_date(str(NOW), NOW))
        self.assertTrue(check_auth_date(str(NOW - 86_400), NOW))
        self.assertFalse(check_auth_date(str(NOW - 86_401), NOW))
        self.assertFalse(check_auth_date(str(NOW + 1), NOW))
        self.assertFalse(check_auth_date(None, NOW))
        self.assertFalse(check_auth_date("", NOW))

    def test_extract_init_data_prefers_header(self) -> None:
        self.assertEqual(extract_init_data({INIT_DATA_HEADER: "from-header"}, {"initData": "from-query"}), "from-header")
        self.assertEqual(extract_init_data({INIT_DATA_HEADER: "  "}, {"initData": "from-query"}), "from-query")
        self.assertEqual(extract_init_data({}, {}), "")


if __name__ == "__main__":
    unittest.main()
