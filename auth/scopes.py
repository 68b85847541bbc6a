"""
Google Workspace OAuth Scopes

Scopes requested by the interactive consent flow. The stored token carries
whatever the user granted; refreshes never widen it.
"""

import logging

from core.errors import ServiceConfigurationError

logger = logging.getLogger(__name__)

USERINFO_EMAIL_SCOPE = "https://www.googleapis.com/auth/userinfo.email"
OPENID_SCOPE = "openid"

DRIVE_SCOPE = "https://www.googleapis.com/auth/drive"
DOCS_WRITE_SCOPE = "https://www.googleapis.com/auth/documents"
SHEETS_WRITE_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
GMAIL_MODIFY_SCOPE = "https://www.googleapis.com/auth/gmail.modify"
GMAIL_SEND_SCOPE = "https://www.googleapis.com/auth/gmail.send"

# Always requested so the token can be tied to an account
BASE_SCOPES = [OPENID_SCOPE, USERINFO_EMAIL_SCOPE]

SERVICE_SCOPES_MAP = {
    "drive": [DRIVE_SCOPE],
    "docs": [DOCS_WRITE_SCOPE],
    "sheets": [SHEETS_WRITE_SCOPE],
    "calendar": [CALENDAR_SCOPE],
    "gmail": [GMAIL_MODIFY_SCOPE, GMAIL_SEND_SCOPE],
}


def get_scopes_for_services(services: list[str] | None = None) -> list[str]:
    """
    Returns OAuth scopes for the given services.

    Args:
        services: Service names (keys of SERVICE_SCOPES_MAP). None or empty
                  means every supported service.

    Returns:
        Sorted list of unique scopes including the base scopes.

    Raises:
        ServiceConfigurationError: If a service name is unknown.
    """
    if not services:
        services = list(SERVICE_SCOPES_MAP)

    unknown = [name for name in services if name not in SERVICE_SCOPES_MAP]
    if unknown:
        raise ServiceConfigurationError(
            f"Unknown service(s): {', '.join(unknown)}. Choose from: {', '.join(SERVICE_SCOPES_MAP)}"
        )

    scopes = set(BASE_SCOPES)
    for name in services:
        scopes.update(SERVICE_SCOPES_MAP[name])

    logger.debug(f"Requesting {len(scopes)} scopes for services {services}")
    return sorted(scopes)
