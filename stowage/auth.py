"""
API authentication for Flask-Login.

The JSON API has no interactive login; every request carries
``Authorization: Bearer <API_TOKEN>`` and is resolved by a request loader.
"""

import hmac
from typing import Optional

from flask import current_app
from flask_login import UserMixin


class ApiClient(UserMixin):
    """
    Flask-Login identity for a caller holding the API token.
    """

    def get_id(self):
        """Return a stable ID as required by Flask-Login."""
        return 'api'


def extract_bearer_token(request) -> Optional[str]:
    """
    Pull the token out of an Authorization header.

    Args:
        request: Flask request

    Returns:
        Token string, or None if the header is missing or malformed
    """
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def load_api_client(request) -> Optional[ApiClient]:
    """
    Flask-Login request loader.

    Returns:
        ApiClient if the request carries the configured token, None otherwise
    """
    expected = current_app.config.get('API_TOKEN')
    if not expected:
        return None

    token = extract_bearer_token(request)
    if token and hmac.compare_digest(token, expected):
        return ApiClient()
    return None
