"""OAuth2 token exchange for claimed client credentials."""

from faktsflow.oauth.login import build_token_request, login

__all__ = ["build_token_request", "login"]
