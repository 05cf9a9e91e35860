"""Resolve the upstream URL from the request's query parameters."""

from urllib.parse import quote, urlsplit

from geoproxy.errors import ValidationError

MISSING_PARAMETER_MESSAGE = "Missing origin or id parameter"
INVALID_URL_MESSAGE = "Invalid origin URL"


def resolve_target(origin: str | None, file_id: str | None, template: str) -> str:
    """Return the absolute URL to proxy.

    ``origin`` takes precedence and is used verbatim. Otherwise ``file_id``
    is substituted into the origin download template, e.g.
    ``abc123`` → ``https://pixeldrain.com/api/file/abc123?download``.

    Raises:
        ValidationError: neither parameter given, or ``origin`` is not an
            absolute http(s) URL.
    """
    if origin:
        _validate_absolute_url(origin)
        return origin

    if file_id:
        return template.format(file_id=quote(file_id, safe=""))

    raise ValidationError(MISSING_PARAMETER_MESSAGE, reason="missing_parameter")


def _validate_absolute_url(url: str) -> None:
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        # Accessing .port validates the port component
        parts.port
    except ValueError:
        raise ValidationError(INVALID_URL_MESSAGE, reason="invalid_url")

    if parts.scheme not in ("http", "https") or not hostname:
        raise ValidationError(INVALID_URL_MESSAGE, reason="invalid_url")
