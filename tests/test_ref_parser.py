"""Tests for "Depends on" task list parsing."""

from __future__ import annotations

from buildsentinel.git_api.ref_parser import parse_task_list


class TestParseTaskList:
    def test_open_tasks_only(self):
        body = (
            "Some description\n\n"
            "Depends on:\n"
            "- [ ] rock-core/tools-syskit#12\n"
            "- [x] rock-core/base-types#3\n"
            "- [ ] https://github.com/rock-core/base-orogen-types/pull/42\n"
            "- [ ] #7\n"
        )
        assert parse_task_list(body) == [
            "rock-core/tools-syskit#12",
            "https://github.com/rock-core/base-orogen-types/pull/42",
            "#7",
        ]

    def test_heading_variants(self):
        for heading in ("depends on", "Depend on:", "DEPENDS:", "depends"):
            assert parse_task_list(f"{heading}\n- [ ] #1") == ["#1"]

    def test_list_stops_at_first_non_item_line(self):
        body = "Depends on:\n- [ ] #1\n\n- [ ] #2\nunrelated text\n- [ ] #3\n"
        assert parse_task_list(body) == ["#1", "#2"]

    def test_gitlab_refs(self):
        body = "Depends on:\r\n- [ ] !4\r\n- [ ] sibling!5\r\n- [ ] group/sub/repo!6\r\n"
        assert parse_task_list(body) == ["!4", "sibling!5", "group/sub/repo!6"]

    def test_no_heading(self):
        assert parse_task_list("- [ ] #1") == []
        assert parse_task_list("") == []
        assert parse_task_list(None) == []
