"""Unit tests for audit/masking.py.

Covers:
- Each masking rule (email, IPv4, IPv6, code, phone, name)
- mask_details(): PII keys, secrets, nested structures, inline emails
- Unmaskable values are redacted, never passed through raw
"""

from __future__ import annotations

import pytest

from audit.masking import (
    REDACTED,
    mask_code,
    mask_details,
    mask_email,
    mask_ip,
    mask_name,
    mask_phone,
    safe_mask_ip,
    scrub_text,
)


class TestRules:
    def test_email(self) -> None:
        assert mask_email("johndoe@example.com") == "jo***@example.com"

    def test_email_without_domain_raises(self) -> None:
        with pytest.raises(ValueError):
            mask_email("johndoe")

    def test_ipv4_zeroes_last_octet(self) -> None:
        assert mask_ip("203.0.113.57") == "203.0.113.0"

    def test_ipv6_keeps_network_prefix(self) -> None:
        assert mask_ip("2001:db8:1:2:3:4:5:6") == "2001:db8:1:2::"

    def test_code(self) -> None:
        assert mask_code("AB12CD34") == "AB******"

    def test_phone(self) -> None:
        assert mask_phone("010-1234-5678") == "*********5678"
        assert mask_phone("123") == "***"

    def test_name(self) -> None:
        assert mask_name("Jane Doe") == "J***"

    def test_scrub_text(self) -> None:
        assert scrub_text("invite sent to alice@example.org today") == "invite sent to al***@example.org today"

    @pytest.mark.parametrize("value", ["unknown", "testclient", "", None, 42])
    def test_safe_mask_ip_redacts_unparseable(self, value) -> None:
        assert safe_mask_ip(value) == REDACTED


class TestMaskDetails:
    def test_known_keys(self) -> None:
        masked = mask_details(
            {
                "email": "johndoe@example.com",
                "ip_address": "198.51.100.23",
                "code": "AB12CD34",
                "phone_number": "010-1234-5678",
                "customer_name": "Jane Doe",
                "max_uses": 10,
            }
        )
        assert masked == {
            "email": "jo***@example.com",
            "ip_address": "198.51.100.0",
            "code": "AB******",
            "phone_number": "*********5678",
            "customer_name": "J***",
            "max_uses": 10,
        }

    @pytest.mark.parametrize("key", ["password", "token", "Authorization", "api_key"])
    def test_secrets_redacted(self, key: str) -> None:
        assert mask_details({key: "hunter2"}) == {key: REDACTED}

    def test_nested_mapping_and_list(self) -> None:
        masked = mask_details({"invitee": {"contact_email": "bob@example.com"}, "codes": [{"code": "ZX7Q4K9M"}]})
        assert masked["invitee"]["contact_email"] == "bo***@example.com"
        assert masked["codes"][0]["code"] == "ZX******"

    def test_inline_email_in_free_text(self) -> None:
        masked = mask_details({"note": "ask carol@example.com"})
        assert masked["note"] == "ask ca***@example.com"

    def test_unmaskable_pii_value_is_redacted(self) -> None:
        assert mask_details({"email": "not-an-email"}) == {"email": REDACTED}
        assert mask_details({"ip_address": "unknown"}) == {"ip_address": REDACTED}

    def test_unknown_object_is_redacted(self) -> None:
        class Opaque:
            def __repr__(self) -> str:
                return "secret=hunter2"

        assert mask_details({"thing": Opaque()}) == {"thing": REDACTED}

    def test_input_not_mutated(self) -> None:
        details = {"email": "johndoe@example.com"}
        mask_details(details)
        assert details == {"email": "johndoe@example.com"}

    def test_empty(self) -> None:
        assert mask_details(None) == {}
        assert mask_details({}) == {}
