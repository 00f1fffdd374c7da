"""Tests for the flag-injection guard."""

import pytest

from clirun_mcp.errors import InputRejectedError
from clirun_mcp.guard import INPUT_LIMITS, assert_max_length, assert_no_flag_injection


@pytest.mark.parametrize(
    "value",
    ["--proxy-command=x", " -o ProxyCommand=y", "-f", "\t--force", "--", "-"],
)
def test_flag_like_values_rejected(value):
    with pytest.raises(InputRejectedError) as exc_info:
        assert_no_flag_injection(value, "host")

    message = str(exc_info.value)
    assert "host" in message
    assert "must not start with" in message
    assert exc_info.value.field_name == "host"


@pytest.mark.parametrize(
    "value",
    ["server.example.com", "deploy", "", "feature/a-b", "v1.0-rc1", "a --b"],
)
def test_plain_values_accepted(value):
    assert_no_flag_injection(value, "ref")


def test_rejection_is_a_value_error():
    with pytest.raises(ValueError):
        assert_no_flag_injection("--upload-pack=evil", "remote")


def test_max_length():
    assert_max_length("x" * INPUT_LIMITS["short_string"], "name", INPUT_LIMITS["short_string"])
    with pytest.raises(InputRejectedError, match="exceeds maximum"):
        assert_max_length("x" * 256, "name", INPUT_LIMITS["short_string"])
