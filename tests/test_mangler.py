"""Tests for the branch name mangler."""

from __future__ import annotations

import re

import pytest

from multibranch.constants import MAX_SAFE_LENGTH
from multibranch.mangler import mangle, name_digest, raw_decode


class TestSafeNames:
    def test_unchanged(self):
        assert mangle("foo") == "foo"
        assert mangle("foo-bar") == "foo-bar"
        assert mangle("Espana") == "Espana"

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("foo bar", "foo-bar.074vf0"),
            ("foo/bar", "foo-bar.nj9av9"),
            ("foo\\bar", "foo-bar.730n59"),
        ],
    )
    def test_separators_fold_to_dash(self, name, expected):
        assert mangle(name) == expected

    def test_leading_dash_is_mangled(self):
        result = mangle("-foo")
        assert result != "-foo"
        assert result.startswith("-foo.")


class TestReservedNames:
    @pytest.mark.parametrize(
        "name,expected",
        [
            (".", "0-.tkvgu3"),
            ("..", "0--.mpdh40"),
            ("con", "con.lkb1gc"),
            ("prn", "prn.n7ievs"),
            ("aux", "aux.75carl"),
            ("nul", "nul.3r8i6h"),
            ("com1", "com1.k0564q"),
            ("com2", "com2.ni698t"),
            ("com3", "com3.8ad2lm"),
            ("com4", "com4.j2s67g"),
            ("com5", "com5.8fdiog"),
            ("com6", "com6.v0rf0v"),
            ("com7", "com7.v5tsfp"),
            ("com8", "com8.o02opt"),
            ("com9", "com9.3bmuo4"),
            ("lpt1", "lpt1.cstki2"),
            ("lpt2", "lpt2.136d1i"),
            ("lpt3", "lpt3.cvdm8e"),
            ("lpt4", "lpt4.upc9bu"),
            ("lpt5", "lpt5.u2mmru"),
            ("lpt6", "lpt6.n50rnj"),
            ("lpt7", "lpt7.9eh7vi"),
            ("lpt8", "lpt8.gm9r02"),
            ("lpt9", "lpt9.55srnr"),
        ],
    )
    def test_reserved(self, name, expected):
        assert mangle(name) == expected

    def test_reserved_check_ignores_case(self):
        assert mangle("CON") != "CON"
        assert mangle("Lpt1") != "Lpt1"


class TestSlashNames:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("foo/bar/fu manchu", "foo-bar-fu-manchu.k630nd"),
            ("foo/bar/fu manchu/1", "foo-bar-fu-manchu-1.vgnr4j"),
            ("foo/bar/fu manchu/12", "foo-bar-fu-manchu-12.6urklv"),
            ("foo/bar/fu manchu/123", "foo-bar-fu-manchu-123.nap1h9"),
            ("foo/bar/fu manchu/1234", "foo-bar-fu-manchu-1234.kstl5e"),
            ("foo/bar/fu manchu/12345", "foo-bar-fu-manchu-12345.i2apnp"),
            ("foo/bar/fu manchu/123456", "foo-bar-fu-manchu-123456.8vabkm"),
            ("foo/bar/fu manchu/1234567", "foo-bar-fu-manchu-1234567.5h1u4c"),
            ("foo/bar/fu manchu/12345678", "foo-bar-fu-m.vrohpg.chu-12345678"),
            ("foo/bar/fu manchu/123456789", "foo-bar-fu-m.403j04.hu-123456789"),
            ("foo/bar/fu manchu/1234567890", "foo-bar-fu-m.jrvb2f.u-1234567890"),
            ("foo/bar/fu manchu/1234567890a", "foo-bar-fu-m.1dcfvj.-1234567890a"),
            ("foo/bar/fu manchu/1234567890ab", "foo-bar-fu-m.mdl920.1234567890ab"),
            ("foo/bar/fu manchu/1234567890abc", "foo-bar-fu-m.aql4gn.234567890abc"),
            ("foo/bar/fu manchu/1234567890abce", "foo-bar-fu-m.bt3j2r.34567890abce"),
            ("foo/bar/fu manchu/1234567890abcef", "foo-bar-fu-m.jjum74.4567890abcef"),
            ("foo/bar/fu manchu/1234567890abcefg", "foo-bar-fu-m.vddees.567890abcefg"),
        ],
    )
    def test_slash(self, name, expected):
        assert mangle(name) == expected


class TestLongNames:
    def test_exactly_threshold_kept(self):
        name = "cafebabedeadbeefcafebabedeadbeef"
        assert len(name) == MAX_SAFE_LENGTH
        assert mangle(name) == name

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("cafebabedeadbeefcafebabedeadbeefcafebabedeadbeef", "cafebabed.98h82o58mhfo.edeadbeef"),
            ("cafebabedeadbeefcafebabeDeadbeefcafebabedeadbeef", "cafebabed.a67pve49oi0n.edeadbeef"),
            ("cafebabedeadbeefcafebabedeadbeef1", "cafebabedead.dfcoms.abedeadbeef1"),
            ("cafebabedeadbeefcafebabedeadbeef2", "cafebabedead.m0u50r.abedeadbeef2"),
        ],
    )
    def test_hash_spliced_in_middle(self, name, expected):
        assert mangle(name) == expected


class TestNonSafeNames:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Is maith liom criospaí", "Is-maith-liom-criospa_ed.0g5uh9"),
            ("Ich liebe Fußball", "Ich-liebe-Fu_dfball.fp53tq"),
            ("我喜欢披萨", "0_11_62_9c_5.f9c1g4._ab_62_28_84"),
            ("特征/新", "0_79_72_81_5f-_b0_65.nt1m48"),
            ("특색/새로운", "0_b9_d2_c9_c.ps50ht._5c_b8_b4_c6"),
            ("gné/nua", "gn_e9-nua.updi5h"),
            ("característica/nuevo", "caracter_edstica-nuevo.h5da9f"),
            ("особенность/новый", "0_3e_04_4.n168ksdsksof._04_39_04"),
        ],
    )
    def test_non_safe(self, name, expected):
        assert mangle(name) == expected

    def test_spain(self):
        assert mangle("España") == "Espa_f1a.9jabqu"
        assert mangle("España") == "Espan_03_03a.eqqe01"

    def test_weird_feature_branch_is_safe(self):
        result = mangle("feature/☠weird name")
        assert len(result) <= MAX_SAFE_LENGTH
        assert re.fullmatch(r"[A-Za-z0-9_.\-]+", result)
        assert re.search(r"\.[0-9a-v]{6,12}(\.|$)", result)


class TestProperties:
    def test_deterministic(self):
        for name in ["main", "feature/x", "特征/新", "a" * 100]:
            assert mangle(name) == mangle(name)

    def test_distinct_names_stay_distinct(self):
        names = [
            "foo bar", "foo/bar", "foo\\bar", "foo.bar", "foo_bar", "foo-bar",
            "Foo/bar", "foo/Bar", "con", "CON", ".", "..", "a" * 40, "a" * 41,
            "España", "España", "Espana",
        ]
        encoded = [mangle(n) for n in names]
        assert len(set(encoded)) == len(names)

    def test_digest_alphabet(self):
        digest = name_digest("foo/bar")
        assert len(digest) == 32
        assert set(digest) <= set("0123456789abcdefghijklmnopqrstuv")
        assert digest.endswith("nj9av9")


class TestRawDecode:
    def test_percent_encoded(self):
        assert raw_decode("feature%2Fx") == "feature/x"

    def test_plain_name_untouched(self):
        assert raw_decode("feature-x") == "feature-x"

    def test_invalid_sequence_untouched(self):
        assert raw_decode("100%") == "100%"
        assert raw_decode("%zz") == "%zz"
        assert raw_decode("%ff%fe") == "%ff%fe"
