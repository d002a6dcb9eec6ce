"""Jinja2 rendering of the HTML error notification."""

from jinja2 import Environment, PackageLoader, select_autoescape

from tripwire.core.models import IssueGroup, Occurrence

TEMPLATE_NAME = "error_notification.html"
BACKTRACE_PREVIEW_LINES = 8


class ErrorEmailRenderer:
    """Renders subject and HTML body for email-style channels."""

    def __init__(self, app_name: str = "tripwire", app_root: str | None = None):
        self.app_name = app_name
        self.app_root = app_root.rstrip("/") if app_root else None
        self.env = Environment(
            loader=PackageLoader("tripwire.adapters.notification", "templates"),
            autoescape=select_autoescape(["html"]),
        )

    def subject(self, group: IssueGroup) -> str:
        prefix = "[REOPENED]" if group.recently_reopened else "[ERROR]"
        return f"{prefix} {self.app_name}: {group.exception_class}"

    def backtrace_preview(self, occurrence: Occurrence) -> list[str]:
        lines = occurrence.app_backtrace_lines(self.app_root)[:BACKTRACE_PREVIEW_LINES]
        if self.app_root:
            lines = [line.replace(self.app_root + "/", "", 1) for line in lines]
        return lines

    def html(self, group: IssueGroup, occurrence: Occurrence) -> str:
        template = self.env.get_template(TEMPLATE_NAME)
        return template.render(
            app_name=self.app_name,
            group=group,
            occurrence=occurrence,
            backtrace=self.backtrace_preview(occurrence),
        )
