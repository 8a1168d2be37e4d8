"""Version ranges, feed parsing, index refresh and the blocking policy."""

from __future__ import annotations

import pytest
import requests

from conftest import FakeResponse, FakeSession
from sapkg.errors import VulnerabilityFeedError
from sapkg.installation.security import SecurityPolicy, VulnerabilityIndex, parse_feed, version_matches
from sapkg.models import SecurityVulnerability, Severity

FEED_URL = "https://feed.example.org/db.json"


def _vuln(vid: str, package: str, version_range: str, severity: str = "high") -> SecurityVulnerability:
    return SecurityVulnerability(
        id=vid, package=package, version_range=version_range, severity=severity, description=f"{vid} issue"
    )


class TestVersionMatches:
    @pytest.mark.parametrize(
        "version, version_range, expected",
        [
            ("2.0", ">=1.5", True),
            ("1.4", ">=1.5", False),
            ("1.0", "<1.0", False),
            ("0.9", "<1.0", True),
            ("1.0", "<=1.0", True),
            ("1.1", ">1.0", True),
            ("1.2.3", "1.2.3", True),
            ("1.2.3", "==1.2.3", True),
            ("1.2.4", "1.2.3", False),
            ("anything", "*", True),
            ("1.5", ">=1.0,<2.0", True),
            ("2.0", ">=1.0,<2.0", False),
        ],
    )
    def test_ranges(self, version: str, version_range: str, expected: bool) -> None:
        assert version_matches(version, version_range) is expected

    def test_numeric_not_lexicographic_ordering(self) -> None:
        assert version_matches("1.10.0", ">=1.9")

    def test_unparseable_versions_fall_back_to_string_order(self) -> None:
        assert version_matches("latest", ">=1.0")


class TestParseFeed:
    def test_one_record_per_spec(self) -> None:
        payload = {
            "$meta": {"advisory": "ignored"},
            "django": [
                {"id": "pyup.io-1", "advisory": "XSS", "specs": ["<1.11.29", ">=2.0,<2.2.10"]},
            ],
            "flask": [{"id": "pyup.io-2", "advisory": "DoS", "specs": ["<0.12.3"], "severity": "critical"}],
        }

        records = parse_feed(payload)

        assert len(records) == 3
        assert {r.package for r in records} == {"django", "flask"}
        flask = next(r for r in records if r.package == "flask")
        assert flask.level == Severity.CRITICAL
        django = [r for r in records if r.package == "django"]
        assert all(r.level == Severity.MEDIUM for r in django)

    def test_severity_from_cvss_blocks(self) -> None:
        payload = {
            "pkg-v3": [{"id": "A", "specs": ["*"], "cvssv3": {"base_score": 9.8, "base_severity": "CRITICAL"}}],
            "pkg-v3-score": [{"id": "B", "specs": ["*"], "cvssv3": {"base_score": 7.5}}],
            "pkg-v2": [{"id": "C", "specs": ["*"], "cvssv2": {"base_score": 5.0}, "cvssv3": None}],
            "pkg-none": [{"id": "D", "specs": ["*"]}],
        }

        levels = {r.id: r.level for r in parse_feed(payload)}

        assert levels == {
            "A": Severity.CRITICAL,
            "B": Severity.HIGH,
            "C": Severity.MEDIUM,
            "D": Severity.MEDIUM,
        }
        assert [v.id for v in SecurityPolicy().blocking(parse_feed(payload))] == ["A"]

    def test_package_names_are_canonicalized(self) -> None:
        records = parse_feed({"Zope.Interface": [{"id": "Z", "specs": ["*"]}]})
        assert records[0].package == "zope-interface"

    @pytest.mark.parametrize("payload", [[], "text", {"pkg": "not-a-list"}])
    def test_malformed_payload(self, payload) -> None:
        with pytest.raises(ValueError):
            parse_feed(payload)


class TestVulnerabilityIndex:
    def test_scan_matches_package_and_range(self, vulnerability_index: VulnerabilityIndex) -> None:
        vulnerability_index.replace(
            [
                _vuln("V-1", "urllib3", "<1.26.5"),
                _vuln("V-2", "urllib3", ">=2.0"),
                _vuln("V-3", "requests", "*"),
            ]
        )

        assert [v.id for v in vulnerability_index.scan("urllib3", "1.25.0")] == ["V-1"]
        assert vulnerability_index.scan("urllib3", "1.26.18") == []
        assert [v.id for v in vulnerability_index.scan("requests", "2.31.0")] == ["V-3"]

    def test_scan_matches_published_name_spellings(self, vulnerability_index: VulnerabilityIndex) -> None:
        vulnerability_index.replace(parse_feed({"zope.interface": [{"id": "Z-1", "specs": ["*"]}]}))

        assert [v.id for v in vulnerability_index.scan("zope-interface", "5.0")] == ["Z-1"]
        assert [v.id for v in vulnerability_index.scan("Zope_Interface", "5.0")] == ["Z-1"]

    def test_scan_reports_each_advisory_once(self, vulnerability_index: VulnerabilityIndex) -> None:
        vulnerability_index.replace([_vuln("V-1", "pkg", "<2.0"), _vuln("V-1", "pkg", ">=1.0")])
        assert len(vulnerability_index.scan("pkg", "1.5")) == 1

    def test_replace_persists(self, vulnerability_index: VulnerabilityIndex, tmp_path) -> None:
        vulnerability_index.replace([_vuln("V-1", "pkg", "*")])

        reloaded = VulnerabilityIndex(tmp_path / "vulndb", feed_url=FEED_URL, session=FakeSession())
        assert [v.id for v in reloaded.vulnerabilities] == ["V-1"]

    def test_refresh_replaces_index(
        self, vulnerability_index: VulnerabilityIndex, fake_session: FakeSession
    ) -> None:
        vulnerability_index.replace([_vuln("OLD", "pkg", "*")])
        fake_session.routes[FEED_URL] = FakeResponse(
            200, {"pkg": [{"id": "NEW", "advisory": "bad", "specs": ["<1.0"]}]}
        )

        assert vulnerability_index.refresh() == 1
        assert [v.id for v in vulnerability_index.vulnerabilities] == ["NEW"]

    @pytest.mark.parametrize(
        "answer",
        [
            FakeResponse(500),
            FakeResponse(200, ValueError("not json")),
            FakeResponse(200, ["wrong", "shape"]),
            requests.ConnectionError("offline"),
        ],
    )
    def test_failed_refresh_keeps_previous_index(
        self, vulnerability_index: VulnerabilityIndex, fake_session: FakeSession, answer
    ) -> None:
        vulnerability_index.replace([_vuln("OLD", "pkg", "*")])
        fake_session.routes[FEED_URL] = answer

        with pytest.raises(VulnerabilityFeedError):
            vulnerability_index.refresh()

        assert [v.id for v in vulnerability_index.vulnerabilities] == ["OLD"]

    def test_scan_many(self, vulnerability_index: VulnerabilityIndex) -> None:
        vulnerability_index.replace([_vuln("V-1", "a", "*")])
        results = vulnerability_index.scan_many({"a": "1.0", "b": "1.0"})
        assert [v.id for v in results["a"]] == ["V-1"]
        assert results["b"] == []


class TestSecurityPolicy:
    def test_default_blocks_only_critical(self) -> None:
        policy = SecurityPolicy()
        findings = [_vuln("H", "p", "*", "high"), _vuln("C", "p", "*", "critical")]
        assert [v.id for v in policy.blocking(findings)] == ["C"]

    def test_threshold_is_inclusive(self) -> None:
        policy = SecurityPolicy("high")
        findings = [_vuln("M", "p", "*", "medium"), _vuln("H", "p", "*", "high")]
        assert [v.id for v in policy.blocking(findings)] == ["H"]

    def test_any_blocks_everything(self) -> None:
        policy = SecurityPolicy("any")
        assert len(policy.blocking([_vuln("L", "p", "*", "low")])) == 1

    def test_unknown_threshold_rejected(self) -> None:
        with pytest.raises(ValueError):
            SecurityPolicy("apocalyptic")

    def test_unknown_advisory_severity_is_medium(self) -> None:
        assert _vuln("X", "p", "*", "weird").level == Severity.MEDIUM
