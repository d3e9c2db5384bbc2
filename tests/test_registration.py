import pytest

from motcheck.errors import ValidationError
from motcheck.registration import is_valid_registration, mask_registration, normalize_registration


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("AB12 CDE", "AB12CDE"),
        (" ab12cde ", "AB12CDE"),
        ("A123 BCD", "A123BCD"),
        ("ABC 123D", "ABC123D"),
        ("AB 1234", "AB1234"),
        ("1234 AB", "1234AB"),
        ("A 1", "A1"),
    ],
)
def test_normalize_valid_registrations(raw, expected):
    assert normalize_registration(raw) == expected


@pytest.mark.parametrize("raw", ["AB12 CDE", "a123bcd", "abc 123 d", "X 9", "ab\t12\ncde"])
def test_normalize_is_idempotent(raw):
    once = normalize_registration(raw)
    assert normalize_registration(once) == once


@pytest.mark.parametrize(
    "raw",
    ["", "A", "   ", "12345678", "ABCD1234", "AB12CDEFG", "AB12-CDE", "AB12CD!", "ABCDEFG"],
)
def test_normalize_rejects_malformed(raw):
    with pytest.raises(ValidationError) as exc_info:
        normalize_registration(raw)
    assert exc_info.value.status_code == 400
    assert exc_info.value.kind == "malformed_identifier"
    assert not is_valid_registration(raw)


def test_mask_registration():
    assert mask_registration("ab12 cde") == "AB12***"
    assert mask_registration("A1") == "A*"
