import pytest

from conftest import GENESIS, ISSUER
from xrpl_donations.core import check_id
from xrpl_donations.core.errors import InvalidAddress, InvalidInput, InvalidSequence


def test_generate_check_id_matches_ledger_vector():
    # CheckID recorded on the ledger for this account and CheckCreate sequence.
    expected = "49647F0D748DC3FE26BDACBC57F251AADEFFF391403EC9BF87C97F67E9977FB0"
    assert check_id.generate_check_id("rUn84CUYbNjRoTQ6mSW7BVJPSVJNLb1QLo", 2) == expected


def test_generate_check_id_is_deterministic_uppercase_hex():
    first = check_id.generate_check_id(GENESIS, 1)
    assert first == check_id.generate_check_id(GENESIS, 1)
    assert len(first) == 64
    assert first == first.upper()
    assert check_id.validate_check_id(first).valid


def test_generate_check_id_changes_with_sequence_and_account():
    base = check_id.generate_check_id(GENESIS, 1)
    assert check_id.generate_check_id(GENESIS, 2) != base
    assert check_id.generate_check_id(ISSUER, 1) != base


def test_generate_check_id_accepts_sequence_bounds():
    assert len(check_id.generate_check_id(GENESIS, 0)) == 64
    assert len(check_id.generate_check_id(GENESIS, 0xFFFFFFFF)) == 64


@pytest.mark.parametrize("sequence", [-1, 2**32, 1.5, "3", True, None])
def test_generate_check_id_rejects_bad_sequence(sequence):
    with pytest.raises(InvalidSequence) as excinfo:
        check_id.generate_check_id(GENESIS, sequence)
    assert excinfo.value.status_code == 400


@pytest.mark.parametrize("account", ["", "not-an-address", GENESIS[:-1] + "x"])
def test_generate_check_id_rejects_bad_address(account):
    with pytest.raises(InvalidAddress) as excinfo:
        check_id.generate_check_id(account, 1)
    assert isinstance(excinfo.value, InvalidInput)


def test_validate_empty_reports_required():
    result = check_id.validate_check_id("")
    assert not result.valid
    assert check_id.ERR_REQUIRED in result.errors


def test_validate_short_hex_reports_length_only():
    result = check_id.validate_check_id("A" * 33)
    assert result.errors == [check_id.ERR_LENGTH]


def test_validate_non_hex_of_right_length_reports_hex_only():
    result = check_id.validate_check_id("0" * 63 + "G")
    assert result.errors == [check_id.ERR_HEX]


def test_validate_short_non_hex_reports_both():
    result = check_id.validate_check_id("XYZ")
    assert result.errors == [check_id.ERR_LENGTH, check_id.ERR_HEX]


def test_validate_accepts_lowercase():
    assert check_id.validate_check_id("ab" * 32).valid


def test_validate_never_raises_on_non_strings():
    assert not check_id.validate_check_id(None).valid
    assert not check_id.validate_check_id(12345).valid


@pytest.mark.parametrize("suffix", ["\n", " ", "\t"])
def test_validate_rejects_trailing_whitespace(suffix):
    result = check_id.validate_check_id("A" * 63 + suffix)
    assert result.errors == [check_id.ERR_HEX]
