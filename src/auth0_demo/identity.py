"""Read and attach the verified subject on a request's context."""

from __future__ import annotations

from .context import Request, RequestContext

_SUBJECT_KEY = object()


def context_with_subject(context: RequestContext, subject: str) -> RequestContext:
    return context.with_value(_SUBJECT_KEY, subject)


def current_subject(context: RequestContext) -> str | None:
    subject = context.value(_SUBJECT_KEY)
    return subject if isinstance(subject, str) else None


def request_subject(request: Request) -> str | None:
    return current_subject(request.context)
