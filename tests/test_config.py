"""Tests for environment parsing helpers in config."""

import os
from unittest.mock import patch

from config import TRANSCODE_PROFILES, get_bool_env, get_float_env, get_int_env


class TestGetIntEnv:
    """Tests for get_int_env."""

    def test_missing_uses_default(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("VFORGE_TEST_INT", None)
            assert get_int_env("VFORGE_TEST_INT", 7) == 7

    def test_valid_value(self):
        with patch.dict(os.environ, {"VFORGE_TEST_INT": "42"}):
            assert get_int_env("VFORGE_TEST_INT", 7) == 42

    def test_invalid_value_uses_default(self):
        with patch.dict(os.environ, {"VFORGE_TEST_INT": "many"}):
            assert get_int_env("VFORGE_TEST_INT", 7) == 7

    def test_below_minimum_uses_default(self):
        """Test a max-concurrency of 0 is rejected rather than deadlocking the scheduler."""
        with patch.dict(os.environ, {"VFORGE_TEST_INT": "0"}):
            assert get_int_env("VFORGE_TEST_INT", 2, min_val=1) == 2

    def test_above_maximum_uses_default(self):
        with patch.dict(os.environ, {"VFORGE_TEST_INT": "70000"}):
            assert get_int_env("VFORGE_TEST_INT", 9100, max_val=65535) == 9100


class TestGetFloatEnv:
    """Tests for get_float_env."""

    def test_valid_value(self):
        with patch.dict(os.environ, {"VFORGE_TEST_FLOAT": "2.5"}):
            assert get_float_env("VFORGE_TEST_FLOAT", 1.0) == 2.5

    def test_special_values_rejected(self):
        for value in ("inf", "-inf", "nan"):
            with patch.dict(os.environ, {"VFORGE_TEST_FLOAT": value}):
                assert get_float_env("VFORGE_TEST_FLOAT", 1.0) == 1.0

    def test_range_checked(self):
        with patch.dict(os.environ, {"VFORGE_TEST_FLOAT": "1.5"}):
            assert get_float_env("VFORGE_TEST_FLOAT", 0.5, min_val=0.0, max_val=1.0) == 0.5


class TestGetBoolEnv:
    """Tests for get_bool_env."""

    def test_false_values(self):
        for value in ("false", "0", "no", "FALSE"):
            with patch.dict(os.environ, {"VFORGE_TEST_BOOL": value}):
                assert get_bool_env("VFORGE_TEST_BOOL", True) is False

    def test_other_values_enable(self):
        with patch.dict(os.environ, {"VFORGE_TEST_BOOL": "yes"}):
            assert get_bool_env("VFORGE_TEST_BOOL", False) is True


class TestTranscodeProfiles:
    def test_profiles_have_required_fields(self):
        for label, profile in TRANSCODE_PROFILES.items():
            assert label.endswith("p")
            assert profile["height"] == int(label[:-1])
            assert profile["bitrate"].endswith("k")
            assert profile["asset_type"].startswith("TRANSCODE_")
