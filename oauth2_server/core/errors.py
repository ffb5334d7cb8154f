"""OAuth 2.0 error taxonomy.

Every failure the engine reports is an OAuth2Error subclass carrying the
RFC 6749 error code, a human-readable description and the HTTP status the
transport should use.

Errors raised by the authorization flow AFTER the redirect URI has been
verified also carry ``redirect_uri`` and ``state``: the transport sends
those back to the client as a redirect.  Errors without a redirect_uri are
shown to the user directly.  Never attach a redirect_uri that has not been
matched against the client's registration, or the authorize endpoint
becomes an open redirector.
"""

from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


def append_query(uri: str, params: dict[str, str]) -> str:
    """Add params to uri's query string, keeping any parameters already there."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


class OAuth2Error(Exception):
    error: str = "server_error"
    status_code: int = 400

    def __init__(
        self,
        description: str = "",
        *,
        redirect_uri: str | None = None,
        state: str | None = None,
    ) -> None:
        self.description = description
        self.redirect_uri = redirect_uri
        self.state = state
        super().__init__(f"{self.error}: {description}" if description else self.error)

    @property
    def is_redirectable(self) -> bool:
        return self.redirect_uri is not None

    def as_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body

    def redirect_url(self) -> str:
        """Client redirect carrying error, error_description and state."""
        if self.redirect_uri is None:
            raise ValueError(f"{self.error} is not redirectable")
        params = self.as_dict()
        if self.state is not None:
            params["state"] = self.state
        return append_query(self.redirect_uri, params)


class InvalidRequest(OAuth2Error):
    error = "invalid_request"


class InvalidClient(OAuth2Error):
    error = "invalid_client"
    status_code = 401


class InvalidGrant(OAuth2Error):
    error = "invalid_grant"


class UnauthorizedClient(OAuth2Error):
    error = "unauthorized_client"


class RedirectUriMismatch(OAuth2Error):
    error = "redirect_uri_mismatch"


class UnsupportedResponseType(OAuth2Error):
    error = "unsupported_response_type"


class UnsupportedGrantType(OAuth2Error):
    error = "unsupported_grant_type"


class InvalidScope(OAuth2Error):
    error = "invalid_scope"


class AccessDenied(OAuth2Error):
    error = "access_denied"
    status_code = 403


class ServerError(OAuth2Error):
    error = "server_error"
    status_code = 500


class EntropyUnavailable(ServerError):
    """The OS random source failed.  Fatal; not retried."""


# Resource-server errors (RFC 6750 section 3.1)


class InvalidToken(OAuth2Error):
    error = "invalid_token"
    status_code = 401


class InsufficientScope(OAuth2Error):
    error = "insufficient_scope"
    status_code = 403
