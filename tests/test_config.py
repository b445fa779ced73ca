"""Tests for settings validation."""

import pytest
from pydantic import ValidationError

from guestpass.core.config import Settings
from guestpass.core.timezone import parse_cutoff


@pytest.mark.parametrize("value", ["11pm", "25:00", "23:75", "late"])
def test_malformed_nightly_cutoff_is_rejected(value):
    with pytest.raises(ValidationError):
        Settings(NIGHTLY_CUTOFF=value)


@pytest.mark.parametrize("value,expected", [("", ""), (" 22:30 ", "22:30"), ("23", "23")])
def test_nightly_cutoff_is_normalized(value, expected):
    settings = Settings(NIGHTLY_CUTOFF=value)

    assert settings.NIGHTLY_CUTOFF == expected
    parse_cutoff(settings.NIGHTLY_CUTOFF)
