"""Tests for the git API value types."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from buildsentinel.git_api.models import PullRequestEvent, parse_timestamp
from buildsentinel.git_api.url import RepositoryRef


class TestParseTimestamp:
    def test_zulu(self):
        assert parse_timestamp("2024-03-01T10:00:00Z") == datetime(
            2024, 3, 1, 10, 0, tzinfo=timezone.utc
        )

    def test_offset_is_converted_to_utc(self):
        dt = parse_timestamp("2024-03-01T12:00:00.000+02:00")
        assert dt == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert dt.utcoffset() == timedelta(0)

    def test_naive_datetime_is_assumed_utc(self):
        dt = parse_timestamp(datetime(2024, 3, 1, 10, 0))
        assert dt.tzinfo is not None

    def test_empty_and_garbage(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("yesterday") is None


class TestPullRequest:
    def test_key_and_accessors(self, make_pr):
        pr = make_pr("git@github.com:rock-core/base-types.git", 12)
        assert pr.key == (RepositoryRef("github.com", "rock-core/base-types"), 12)
        assert pr.open
        assert pr.repository_url == "https://github.com/rock-core/base-types"

    def test_dependencies_do_not_affect_equality(self, make_pr):
        now = datetime.now(timezone.utc)
        a = make_pr(number=1, updated_at=now)
        b = make_pr(number=1, updated_at=now)
        b.dependencies.append(make_pr(number=2))
        assert a == b
        assert hash(a) == hash(b)

    def test_closed_event_may_carry_no_pull_request(self):
        repo = RepositoryRef("github.com", "a/b")
        event = PullRequestEvent("closed", repo, 3)
        assert event.pull_request is None
