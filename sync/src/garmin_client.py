"""Garmin Connect session handling built on garminconnect + garth.

A session is a fresh ``Garmin`` instance per sync, built from one owner's
token pair. There is no shared client and no on-disk token cache. Retries
are the caller's job; every function here makes its calls exactly once.
"""

import json
import logging
from dataclasses import asdict
from datetime import date

from garminconnect import Garmin, GarminConnectAuthenticationError
from garth.auth_tokens import OAuth1Token, OAuth2Token
from garth.exc import GarthHTTPError

from errors import AuthenticationError
from models import TokenPair

logger = logging.getLogger(__name__)


def _http_status(exc: GarthHTTPError) -> int | None:
    response = getattr(getattr(exc, "error", None), "response", None)
    return getattr(response, "status_code", None)


def _token_dict(token) -> dict:
    # datetimes become ISO strings
    return json.loads(json.dumps(asdict(token), default=str))


def login(username: str, password: str) -> tuple[Garmin, TokenPair]:
    """Interactive login. Raises AuthenticationError on rejected credentials."""
    if not username or not password:
        raise AuthenticationError("Garmin email and password are required.")

    client = Garmin(email=username, password=password)
    try:
        client.login()
    except GarminConnectAuthenticationError as e:
        raise AuthenticationError("Invalid Garmin credentials.") from e
    except GarthHTTPError as e:
        if _http_status(e) in (401, 403):
            raise AuthenticationError("Invalid Garmin credentials.") from e
        raise

    tokens = current_tokens(client)
    logger.info("Garmin login succeeded for %s", client.display_name)
    return client, tokens


def resume(tokens: TokenPair) -> Garmin:
    """Rebuild a session from stored tokens without a fresh login."""
    client = Garmin()
    try:
        client.garth.oauth1_token = OAuth1Token(**tokens.oauth1)
        client.garth.oauth2_token = OAuth2Token(**tokens.oauth2)
    except (TypeError, ValueError) as e:
        raise AuthenticationError("Stored Garmin tokens are unusable.") from e

    # Several endpoints are keyed by the profile's display name
    try:
        profile = client.garth.profile
    except GarthHTTPError as e:
        if _http_status(e) in (401, 403):
            raise AuthenticationError("Garmin session expired.") from e
        raise
    client.display_name = profile.get("displayName")
    client.full_name = profile.get("fullName")
    return client


def refresh_tokens(session: Garmin) -> None:
    """Refresh an expired OAuth2 token before the session is used from several threads.

    The health fetches share one garth client and its token, so this must
    run before they fan out.
    """
    token = session.garth.oauth2_token
    if token is not None and not token.expired:
        return
    try:
        session.garth.refresh_oauth2()
    except GarthHTTPError as e:
        if _http_status(e) in (401, 403):
            raise AuthenticationError("Garmin session expired.") from e
        raise
    logger.info("Garmin OAuth2 token refreshed")


def current_tokens(session: Garmin) -> TokenPair:
    """Token pair currently held by the session; garth may have refreshed it."""
    return TokenPair(
        oauth1=_token_dict(session.garth.oauth1_token),
        oauth2=_token_dict(session.garth.oauth2_token),
    )


def fetch_activities(session: Garmin, offset: int = 0, limit: int = 20) -> list[dict]:
    """Most recent activities, newest first."""
    return session.get_activities(offset, limit) or []


def fetch_sleep(session: Garmin, day: date) -> dict:
    return session.get_sleep_data(day.isoformat())


def fetch_steps(session: Garmin, day: date):
    """Daily step summary list (one entry per calendar day)."""
    return session.get_daily_steps(day.isoformat(), day.isoformat())


def fetch_heart_rate(session: Garmin, day: date) -> dict:
    return session.get_heart_rates(day.isoformat())
