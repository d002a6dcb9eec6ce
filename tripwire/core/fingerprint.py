"""Fingerprinting logic for normalizing and grouping exceptions.

This module provides the core algorithm for converting a raised exception
into a stable fingerprint that identifies a failure pattern across
multiple occurrences, along with the backtrace helpers it relies on.
"""

import builtins
import hashlib
import re
import traceback
from collections.abc import Iterable, Sequence

from .models import GroupDraft, SourceLocation

VENDOR_MARKERS: tuple[str, ...] = ("site-packages", "dist-packages", ".venv", "/gems/")

# "path:line:in function" as produced by format_backtrace
_FRAME_WITH_METHOD = re.compile(r"^(.+):(\d+):in [`']?(.+?)'?$")
# "path:line" with no method
_FRAME_WITHOUT_METHOD = re.compile(r"^(.+?):(\d+)")
# Python traceback text
_PYTHON_FRAME = re.compile(r'^\s*File "(.+)", line (\d+), in (.+)$')

_UUID = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b",
    re.IGNORECASE,
)
_INTEGER = re.compile(r"\b\d+\b")
_HEX_ID = re.compile(r"\b[0-9a-f]{24}\b", re.IGNORECASE)
_OBJECT_ADDRESS = re.compile(r"#<.*?:0x[0-9a-f]+>", re.IGNORECASE)
_OBJECT_REPR = re.compile(r"<([\w.]+) object at 0x[0-9a-f]+>", re.IGNORECASE)
_ID_ASSIGNMENT = re.compile(r"\bid=\d+", re.IGNORECASE)


def exception_class_name(exception: BaseException) -> str:
    """Qualified class name; builtins keep their bare name."""
    cls = type(exception)
    if cls.__module__ == "builtins" or getattr(builtins, cls.__name__, None) is cls:
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def format_backtrace(exception: BaseException) -> list[str]:
    """Frames of an exception's traceback, innermost first.

    Each frame renders as ``"{filename}:{lineno}:in {function}"``.
    """
    if exception.__traceback__ is None:
        return []
    frames = traceback.extract_tb(exception.__traceback__)
    return [f"{frame.filename}:{frame.lineno}:in {frame.name}" for frame in reversed(frames)]


def parse_frame(line: str) -> SourceLocation | None:
    """Split a backtrace line into path, line number and method."""
    match = _PYTHON_FRAME.match(line)
    if match:
        return SourceLocation(match.group(1), int(match.group(2)), match.group(3).strip())
    match = _FRAME_WITH_METHOD.match(line)
    if match:
        return SourceLocation(match.group(1), int(match.group(2)), match.group(3))
    match = _FRAME_WITHOUT_METHOD.match(line)
    if match:
        return SourceLocation(match.group(1), int(match.group(2)), None)
    return None


def is_app_frame(
    line: str,
    app_root: str | None,
    vendor_markers: Iterable[str] = VENDOR_MARKERS,
) -> bool:
    """Whether a backtrace line points into application code."""
    if any(marker in line for marker in vendor_markers):
        return False
    return app_root is None or app_root in line


class Fingerprinter:
    """Produces stable fingerprints from exceptions.

    No external dependencies: pure functions over domain objects. The
    application root and vendor markers are the only state.
    """

    def __init__(
        self,
        app_root: str | None = None,
        vendor_markers: Sequence[str] = VENDOR_MARKERS,
    ):
        self.app_root = app_root.rstrip("/") if app_root else None
        self.vendor_markers = tuple(vendor_markers)

    @staticmethod
    def sanitize_message(message: str | None) -> str:
        """Replace variable parts of a message with placeholders.

        Substitutions, in order:
        - integers -> N
        - 24-hex-digit ids -> ID
        - UUIDs -> UUID
        - object addresses (``#<Foo:0x1a2b>``, ``<foo.Bar object at 0x1a2b>``)
          -> ``#<Object>``
        - ``id=123`` -> ``id=N``

        Examples:
        'User 42 not found' -> 'User N not found'
        'Order id=7 missing' -> 'Order id=N missing'

        Digit runs inside UUID-shaped tokens are left for the UUID step so
        that every UUID collapses the same way.
        """
        if not message:
            return ""

        protected = [m.span() for m in _UUID.finditer(message)]

        def _integer(match: re.Match) -> str:
            start, end = match.span()
            if any(lo <= start and end <= hi for lo, hi in protected):
                return match.group(0)
            return "N"

        message = _INTEGER.sub(_integer, message)
        message = _HEX_ID.sub("ID", message)
        message = _UUID.sub("UUID", message)
        message = _OBJECT_ADDRESS.sub("#<Object>", message)
        message = _OBJECT_REPR.sub("#<Object>", message)
        message = _ID_ASSIGNMENT.sub("id=N", message)
        return message

    def extract_location(self, backtrace: Sequence[str]) -> SourceLocation:
        """Pick the frame that best identifies where the failure happened.

        The first application frame wins; when there is none the first frame
        is used. Paths under the application root are made relative.
        """
        if not backtrace:
            return SourceLocation()

        chosen = next(
            (
                line
                for line in backtrace
                if is_app_frame(line, self.app_root, self.vendor_markers)
            ),
            backtrace[0],
        )
        location = parse_frame(chosen)
        if location is None:
            return SourceLocation()
        return SourceLocation(
            self._relative(location.file_path), location.line_number, location.method_name
        )

    def _relative(self, path: str | None) -> str | None:
        if path and self.app_root and path.startswith(self.app_root + "/"):
            return path[len(self.app_root) + 1 :]
        return path

    @staticmethod
    def fingerprint(
        exception_class: str,
        message: str | None,
        location: SourceLocation,
        extra_components: Iterable[object] = (),
    ) -> str:
        """Create a stable hash that identifies this class of error.

        Same bug, different occurrence -> same fingerprint.

        Combines (empty components skipped):
        - Exception class
        - Sanitized message
        - File path
        - Line number
        - Extra components supplied by a custom fingerprint hook
        """
        components = [
            exception_class,
            Fingerprinter.sanitize_message(message),
            location.file_path,
            location.line_number,
            *extra_components,
        ]
        fingerprint_input = "::".join(str(c) for c in components if c not in (None, ""))
        return hashlib.sha256(fingerprint_input.encode()).hexdigest()

    def draft_for(
        self,
        exception: BaseException,
        backtrace: Sequence[str] | None = None,
        extra_components: Iterable[object] = (),
    ) -> GroupDraft:
        """Build the group draft (fingerprint plus descriptive fields)."""
        if backtrace is None:
            backtrace = format_backtrace(exception)
        exception_class = exception_class_name(exception)
        message = str(exception)
        location = self.extract_location(backtrace)
        return GroupDraft(
            fingerprint=self.fingerprint(exception_class, message, location, extra_components),
            exception_class=exception_class,
            sanitized_message=self.sanitize_message(message),
            location=location,
        )

    def fingerprint_exception(
        self,
        exception: BaseException,
        backtrace: Sequence[str] | None = None,
        extra_components: Iterable[object] = (),
    ) -> str:
        return self.draft_for(exception, backtrace, extra_components).fingerprint
