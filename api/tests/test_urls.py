from __future__ import annotations

import pytest

from jobsync.core.urls import normalize_source_url


def test_normalize_source_url_strips_tracking_and_fragment() -> None:
    normalized = normalize_source_url(
        "HTTPS://Boards.Greenhouse.io:443/Acme/jobs/123/?utm_source=feed&gh_src=abc&b=2&a=1#apply"
    )
    assert normalized == "https://boards.greenhouse.io/Acme/jobs/123?a=1&b=2"


def test_normalize_source_url_keeps_non_default_port_and_root_path() -> None:
    assert normalize_source_url("http://example.com:8080") == "http://example.com:8080/"
    assert normalize_source_url("http://example.com:80/jobs") == "http://example.com/jobs"


def test_normalize_source_url_is_stable_for_equivalent_urls() -> None:
    first = normalize_source_url("https://jobs.lever.co/acme/abc-123?lever-source=linkedin")
    second = normalize_source_url("https://jobs.lever.co/acme/abc-123/")
    assert first == second


def test_normalize_source_url_rejects_relative_urls() -> None:
    with pytest.raises(ValueError):
        normalize_source_url("/jobs/123")
    with pytest.raises(ValueError):
        normalize_source_url("")
