"""
Tests for terminal output cleanup and ONU identifier normalization.
"""

import pytest

from linkdiag.normalizers import contains_pager_prompt, normalize_onu_id, strip_ansi, strip_pager_prompts


class TestStripAnsi:
    def test_color_codes_removed(self):
        assert strip_ansi("\x1b[1;31mCRITICAL\x1b[0m gpon-1/1/1/1") == "CRITICAL gpon-1/1/1/1"

    def test_carriage_returns_normalized(self):
        assert strip_ansi("line1\r\nline2\rX") == "line1\nline2X"

    def test_backspaces_applied(self):
        assert strip_ansi("abc\x08\x08d") == "ad"

    def test_osc_title_removed(self):
        assert strip_ansi("\x1b]0;OLT\x07OLT# ") == "OLT# "

    def test_empty(self):
        assert strip_ansi("") == ""
        assert strip_ansi(None) == ""


class TestPagerPrompts:
    @pytest.mark.parametrize("text", [
        "--More--",
        " --More-- ",
        "---- More ( Press 'Q' to break ) ----",
        "<--- More --->",
        "Press any key to continue",
    ])
    def test_detected(self, text):
        assert contains_pager_prompt(text)

    def test_plain_output_not_detected(self):
        assert not contains_pager_prompt("2025-12-15 05:43:59 CRITICAL gpon-1/1/1/14 Active GPON_LOSi")

    def test_stripped(self):
        assert strip_pager_prompts("row1\n--More--row2") == "row1\nrow2"


class TestNormalizeOnuId:
    @pytest.mark.parametrize("raw", [
        "gpon-olt_1/1/3:116",
        "gpon-onu_1/1/3:116",
        "GPON-1/1/3/116",
        "1/1/3/116",
        "1/1/3 116",
        "/1/1/3//116/",
        "epon-onu_1/1/3:116",
    ])
    def test_vendor_forms_converge(self, raw):
        assert normalize_onu_id(raw) == "1/1/3/116"

    @pytest.mark.parametrize("raw", [
        "gpon-olt_1/1/3:116",
        "gpon-gpon-onu_0/1/0:5",
        "olt_onu_1:2:3",
        " xgpon-1/2 ",
        "",
    ])
    def test_idempotent(self, raw):
        once = normalize_onu_id(raw)
        assert normalize_onu_id(once) == once

    def test_repeated_prefixes_stripped(self):
        assert normalize_onu_id("gpon-gpon-onu_0/1/0:5") == "0/1/0/5"

    def test_none(self):
        assert normalize_onu_id(None) == ""
