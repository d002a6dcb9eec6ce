"""Occurrence recording.

Turns a raised exception plus its surrounding request, user and custom
context into an Occurrence row. Request extraction is best-effort: a
failure there never prevents the occurrence from being stored.
"""

import json
import logging
import os
import socket
import uuid
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from .fingerprint import exception_class_name, format_backtrace
from .models import (
    Actor,
    ContextEntry,
    HostInfo,
    IssueGroup,
    Occurrence,
    RequestSnapshot,
    TrackingPolicy,
    utcnow,
)
from .ports import IssueStorePort, RequestPort
from .serializer import FILTERED

logger = logging.getLogger(__name__)

MAX_URL_LENGTH = 2000
MAX_USER_AGENT_LENGTH = 500
MAX_HEADER_VALUE_LENGTH = 500
MAX_PARAMS_JSON_LENGTH = 50_000
MAX_CONTEXT_REPR_LENGTH = 5000
MAX_CONTEXT_VALUE_LENGTH = 10_000

ALLOWED_HEADERS = frozenset(
    {
        "accept",
        "accept-language",
        "host",
        "referer",
        "user-agent",
        "request-method",
        "x-forwarded-for",
        "x-real-ip",
        "content-type",
    }
)


def normalize_header_name(name: str) -> str:
    """Lower-case, dash-separated header name; CGI ``HTTP_`` prefix dropped."""
    normalized = name.strip().lower()
    if normalized.startswith("http_"):
        normalized = normalized[len("http_") :]
    return normalized.replace("_", "-")


def truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value[:limit]


def filter_params(params: Any, deny: Sequence[str]) -> Any:
    """Mask values whose key contains a denied substring, at any depth."""
    if isinstance(params, Mapping):
        filtered: dict[str, Any] = {}
        for key, value in params.items():
            name = str(key)
            lowered = name.lower()
            if any(pattern in lowered for pattern in deny):
                filtered[name] = FILTERED
            else:
                filtered[name] = filter_params(value, deny)
        return filtered
    if isinstance(params, (list, tuple)):
        return [filter_params(item, deny) for item in params]
    return params


def serialize_context_value(value: Any) -> str:
    """Render a custom-data value as text.

    Strings pass through; everything else is JSON-encoded, falling back to
    a truncated repr. Never raises.
    """
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, default=str)
        except (TypeError, ValueError, RecursionError):
            try:
                text = repr(value)[:MAX_CONTEXT_REPR_LENGTH]
            except Exception as e:
                text = f"[Error: {e}]"
    return text[:MAX_CONTEXT_VALUE_LENGTH]


def actor_from_user(user: Any) -> Actor | None:
    """Identify the user object attached to a tracking call."""
    if user is None:
        return None
    if isinstance(user, Actor):
        return user
    if isinstance(user, Mapping):
        user_id = user.get("id")
        user_type = user.get("type") or "User"
    else:
        user_id = getattr(user, "id", None)
        user_type = type(user).__name__
    if user_id is None:
        return None
    return Actor(id=str(user_id), type=str(user_type))


def current_host(environment: str) -> HostInfo:
    return HostInfo(
        environment=environment,
        hostname=socket.gethostname(),
        process_id=str(os.getpid()),
    )


class OccurrenceRecorder:
    """Builds and persists Occurrence rows.

    Host metadata is captured once at construction. The deny list for
    request parameters comes from the tracking policy.
    """

    def __init__(
        self,
        store: IssueStorePort,
        policy: TrackingPolicy,
        host_info: HostInfo | None = None,
    ):
        self.store = store
        self.policy = policy
        self.host_info = host_info or current_host(policy.environment)
        self._deny = tuple(p.lower() for p in policy.filter_parameters)

    def build_backtrace(self, exception: BaseException, limit: int | None = None) -> list[str]:
        """Innermost-first backtrace, capped to the configured length."""
        limit = limit or self.policy.backtrace_lines_limit
        return format_backtrace(exception)[:limit]

    def extract_request_data(self, request: RequestPort | None) -> RequestSnapshot | None:
        """Filtered snapshot of the request, or None when unavailable."""
        if request is None:
            return None
        try:
            return RequestSnapshot(
                method=request.method,
                url=truncate(request.url, MAX_URL_LENGTH),
                params=self._filtered_params(request.params),
                headers=self._allowed_headers(request.headers),
                user_agent=truncate(request.user_agent, MAX_USER_AGENT_LENGTH),
                ip_address=request.remote_ip,
                session_id=request.session_id,
            )
        except Exception as e:
            logger.debug(f"Could not extract request data: {e}")
            return None

    def _filtered_params(self, params: Mapping[str, Any] | None) -> dict[str, Any]:
        if not params:
            return {}
        filtered = filter_params(params, self._deny)
        try:
            encoded = json.dumps(filtered, default=str)
        except (TypeError, ValueError, RecursionError) as e:
            logger.debug(f"Could not encode request params: {e}")
            return {"_error": str(e)}
        if len(encoded) > MAX_PARAMS_JSON_LENGTH:
            return {"_truncated": True, "_preview": encoded[:MAX_PARAMS_JSON_LENGTH]}
        return json.loads(encoded)

    @staticmethod
    def _allowed_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
        if not headers:
            return {}
        allowed: dict[str, str] = {}
        for name, value in headers.items():
            normalized = normalize_header_name(str(name))
            if normalized in ALLOWED_HEADERS:
                allowed[normalized] = str(value)[:MAX_HEADER_VALUE_LENGTH]
        return allowed

    @staticmethod
    def context_entries(custom_data: Mapping[str, Any] | None) -> tuple[ContextEntry, ...]:
        entries = []
        for key, value in (custom_data or {}).items():
            name = str(key)
            if not name.strip():
                logger.debug("Skipping context entry with blank key")
                continue
            entries.append(ContextEntry(key=name, value=serialize_context_value(value)))
        return tuple(entries)

    async def create_from_exception(
        self,
        exception: BaseException,
        group: IssueGroup,
        request: RequestPort | None = None,
        user: Any = None,
        custom_data: Mapping[str, Any] | None = None,
        local_variables: Mapping[str, Any] | None = None,
        backtrace: Iterable[str] | None = None,
        now: datetime | None = None,
    ) -> Occurrence:
        """Persist one occurrence of ``exception`` under ``group``.

        Raises:
            StoreError: If the store rejects the occurrence.
        """
        if backtrace is None:
            lines = self.build_backtrace(exception)
        else:
            lines = list(backtrace)[: self.policy.backtrace_lines_limit]

        occurrence = Occurrence(
            id=str(uuid.uuid4()),
            group_id=group.id,
            exception_class=exception_class_name(exception),
            message=str(exception),
            backtrace=tuple(lines),
            created_at=now or utcnow(),
            environment=self.host_info.environment,
            hostname=self.host_info.hostname,
            process_id=self.host_info.process_id,
            local_variables=dict(local_variables) if local_variables is not None else None,
            request=self.extract_request_data(request),
            actor=actor_from_user(user),
            context=self.context_entries(custom_data),
        )
        return await self.store.record_occurrence(occurrence)
