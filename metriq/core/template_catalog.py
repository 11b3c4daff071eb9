"""METRIQ — Metric Template Catalog.

Static registry of trackable source endpoints. Each template names the
endpoint, HTTP method, parameters the user supplies and whether the
source reports a time series or a point-in-time snapshot.
Register new integrations here; the pipeline only ever calls
``get_template``.
"""

import json
from typing import Dict, Optional

from metriq.models.transform_models import TemplateDefinition, TemplateParam

_OWNER = TemplateParam(name="OWNER", label="Repository Owner", placeholder="facebook")
_REPO = TemplateParam(name="REPO", label="Repository Name", placeholder="react")
_PROJECT_ID = TemplateParam(name="PROJECT_ID", label="Project")
_EVENT_NAME = TemplateParam(name="EVENT_NAME", label="Event")
_SPREADSHEET_ID = TemplateParam(
    name="SPREADSHEET_ID",
    label="Spreadsheet ID",
    description="The ID from the spreadsheet URL",
)
_SHEET_NAME = TemplateParam(name="SHEET_NAME", label="Sheet Name")
_VIDEO_ID = TemplateParam(name="VIDEO_ID", label="Video")


# ─────────────────────────────────────────────
# GITHUB
# ─────────────────────────────────────────────

GITHUB_TEMPLATES = [
    TemplateDefinition(
        template_id="github-followers-count",
        label="Followers",
        integration_id="github",
        metric_endpoint="/user",
        description="Total number of GitHub followers",
        is_time_series=False,
    ),
    TemplateDefinition(
        template_id="github-repo-stars",
        label="Repository Stars",
        integration_id="github",
        metric_endpoint="/repos/{OWNER}/{REPO}",
        description="Star count for a specific repository",
        required_params=[_OWNER, _REPO],
        is_time_series=False,
    ),
    TemplateDefinition(
        template_id="github-commit-activity",
        label="Weekly Commit Activity",
        integration_id="github",
        metric_endpoint="/repos/{OWNER}/{REPO}/stats/commit_activity",
        description="Commits per week over the last year",
        required_params=[_OWNER, _REPO],
        extraction_prompt=(
            "Each entry has a unix-seconds 'week' field and a 'total' count. "
            "Put the per-weekday 'days' array into dimensions."
        ),
    ),
]

# ─────────────────────────────────────────────
# POSTHOG
# ─────────────────────────────────────────────

POSTHOG_TEMPLATES = [
    TemplateDefinition(
        template_id="posthog-event-count",
        label="Event Count (Time Series)",
        integration_id="posthog",
        metric_endpoint="/api/projects/{PROJECT_ID}/query/",
        method="POST",
        request_body=json.dumps(
            {
                "query": {
                    "kind": "HogQLQuery",
                    "query": (
                        "SELECT formatDateTime(timestamp, '%Y-%m-%d') as date, "
                        "count() as count FROM events WHERE event = '{EVENT_NAME}' "
                        "AND timestamp > now() - INTERVAL 30 DAY "
                        "GROUP BY date ORDER BY date"
                    ),
                }
            }
        ),
        description="Count occurrences of a specific event over time",
        required_params=[_PROJECT_ID, _EVENT_NAME],
    ),
]

# ─────────────────────────────────────────────
# YOUTUBE
# ─────────────────────────────────────────────

YOUTUBE_TEMPLATES = [
    TemplateDefinition(
        template_id="youtube-channel-subscribers",
        label="Channel Subscribers",
        integration_id="youtube",
        metric_endpoint="/youtube/v3/channels?part=statistics&mine=true",
        description="Total subscriber count for your channel",
        is_time_series=False,
    ),
    TemplateDefinition(
        template_id="youtube-video-daily-views",
        label="Video Views (Daily)",
        integration_id="youtube",
        metric_endpoint=(
            "https://youtubeanalytics.googleapis.com/v2/reports"
            "?ids=channel==MINE&startDate=28daysAgo&endDate=today"
            "&metrics=views,likes,comments&dimensions=day&filters=video=={VIDEO_ID}"
        ),
        description="Daily views for one video, with likes and comments",
        required_params=[_VIDEO_ID],
        extraction_prompt=(
            "Rows are [day, views, likes, comments]. Views is the primary value; "
            "likes and comments go into dimensions."
        ),
    ),
]

# ─────────────────────────────────────────────
# GOOGLE SHEETS: shape differs per spreadsheet
# ─────────────────────────────────────────────

GSHEETS_TEMPLATES = [
    TemplateDefinition(
        template_id="gsheets-column-data",
        label="Column Data (Full Dataset)",
        integration_id="google-sheet",
        metric_endpoint="/v4/spreadsheets/{SPREADSHEET_ID}/values/{SHEET_NAME}",
        description="Track all values in a sheet for visualization",
        required_params=[_SPREADSHEET_ID, _SHEET_NAME],
        is_time_series=False,
        per_metric_cache=True,
    ),
]


TEMPLATES: Dict[str, TemplateDefinition] = {
    t.template_id: t
    for t in [
        *GITHUB_TEMPLATES,
        *POSTHOG_TEMPLATES,
        *YOUTUBE_TEMPLATES,
        *GSHEETS_TEMPLATES,
    ]
}


def get_template(template_id: str) -> Optional[TemplateDefinition]:
    """Look up a template by ID. Returns None if unknown."""
    return TEMPLATES.get(template_id)


class TemplateCatalog:
    """Lookup boundary the pipeline depends on. Swappable in tests."""

    def __init__(self, templates: Optional[Dict[str, TemplateDefinition]] = None):
        self._templates = TEMPLATES if templates is None else templates

    def get_template(self, template_id: str) -> Optional[TemplateDefinition]:
        return self._templates.get(template_id)
