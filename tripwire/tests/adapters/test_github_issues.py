"""Tests for the GitHub issue creator."""

import json
from dataclasses import replace

import httpx
import pytest

from tripwire.adapters.notification import GitHubIssueCreator
from tripwire.core.models import RequestSnapshot
from tripwire.tests.builders import make_group, make_occurrence


def creator_with(handler, **kwargs) -> GitHubIssueCreator:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://api.github.com"
    )
    return GitHubIssueCreator("acme/shop", "ghp_token", client=client, **kwargs)


@pytest.fixture
def group():
    return make_group(occurrences_count=12, message="x" * 120)


class TestCreateIssue:
    async def test_created(self, group):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                201, json={"number": 31, "html_url": "https://github.com/acme/shop/issues/31"}
            )

        creator = creator_with(handler, labels=["bug", "tripwire"])
        result = await creator.create_issue(group, make_occurrence(group))

        assert result.success
        assert result.issue_number == 31
        assert result.issue_url == "https://github.com/acme/shop/issues/31"
        assert seen[0].url.path == "/repos/acme/shop/issues"
        body = json.loads(seen[0].content)
        assert body["labels"] == ["bug", "tripwire"]
        assert body["title"] == f"[tripwire] ZeroDivisionError: {'x' * 77}..."

    async def test_api_error(self, group):
        creator = creator_with(lambda request: httpx.Response(422, text="Validation Failed"))
        result = await creator.create_issue(group, None)
        assert not result.success
        assert result.error == "GitHub API error: 422 - Validation Failed"

    async def test_transport_error(self, group):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        result = await creator_with(handler).create_issue(group, None)
        assert result.error.startswith("Failed to create issue:")

    async def test_not_configured(self, group):
        creator = GitHubIssueCreator("", "")
        assert not creator.configured
        result = await creator.create_issue(group, None)
        assert result.error == "GitHub not configured"


class TestFormatBody:
    def test_sections_with_occurrence(self, group):
        occurrence = replace(
            make_occurrence(
                group,
                request=RequestSnapshot(
                    method="GET", url="https://shop.example.com/x", user_agent="curl/8"
                ),
            ),
            local_variables={"amount": 10, "note": "hi", "items": [1, 2]},
        )
        body = GitHubIssueCreator("acme/shop", "t").format_body(group, occurrence)

        assert body.startswith("## Error Details")
        assert "| **Occurrences** | 12 |" in body
        assert "/srv/app/app/services/billing.py:42:in charge" in body
        assert "## Local Variables" in body
        assert "amount: 10" in body
        assert "note: 'hi'" in body
        assert "items: [1, 2]" in body
        assert "| **URL** | `GET https://shop.example.com/x` |" in body
        assert body.endswith("_Created by tripwire_")

    def test_without_occurrence(self, group):
        body = GitHubIssueCreator("acme/shop", "t").format_body(group, None)
        assert "No backtrace available" in body
        assert "## Local Variables" not in body
        assert "## Request Context" not in body

    def test_source_context(self, group, tmp_path):
        source = tmp_path / "app" / "services" / "billing.py"
        source.parent.mkdir(parents=True)
        source.write_text("\n".join(f"line {n}" for n in range(1, 61)))

        body = GitHubIssueCreator("acme/shop", "t", app_root=str(tmp_path)).format_body(
            group, None
        )

        assert "## Source Context" in body
        assert "→   42: line 42" in body
        assert "    37: line 37" in body
        assert "    47: line 47" in body
        assert "line 48" not in body

    def test_missing_source_file_is_skipped(self, group, tmp_path):
        body = GitHubIssueCreator("acme/shop", "t", app_root=str(tmp_path)).format_body(
            group, None
        )
        assert "## Source Context" not in body
