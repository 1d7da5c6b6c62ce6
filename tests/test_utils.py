import pytest

from wa_relay.utils import format_phone, jid_to_phone, to_jid


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("(11) 99999-8888", "5511999998888"),
        ("1133334444", "551133334444"),
        ("+55 11 99999-8888", "5511999998888"),
        ("14155550123", "5514155550123"),
        ("441234567890", "441234567890"),
        ("", None),
        (None, None),
        ("abc", None),
    ],
)
def test_format_phone(raw, expected):
    assert format_phone(raw) == expected


def test_format_phone_other_country_code():
    assert format_phone("2025550123", country_code="1") == "12025550123"


def test_to_jid():
    assert to_jid("11 99999-8888") == "5511999998888@s.whatsapp.net"
    assert to_jid("120363000000@g.us") == "120363000000@g.us"
    assert to_jid("") is None
    assert to_jid("---") is None


def test_jid_to_phone():
    assert jid_to_phone("5511999998888@s.whatsapp.net") == "5511999998888"
    assert jid_to_phone("5511999998888:12@s.whatsapp.net") == "5511999998888"
    assert jid_to_phone("5511999998888") == "5511999998888"
    assert jid_to_phone(None) is None
