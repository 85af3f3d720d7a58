"""HTTP transport and credentials for Notion's internal v3 API.

Every call is a JSON POST to ``https://www.notion.so/api/v3/<endpoint>``
authenticated by the browser session cookie ``token_v2``. When the account
belongs to several users (one per workspace login), the active user is sent
in ``x-notion-active-user-header``.

Token lookup order: ``--token-file`` > ``NOTION_TOKEN_V2`` > stored
credentials (``~/.config/notion-internal/credentials.json``).
"""

import json
import logging
import os
import random
import time
from pathlib import Path
from typing import Optional

import httpx

logger = logging.getLogger("notion-internal")

NOTION_API_BASE = "https://www.notion.so/api/v3"
TOKEN_ENV_VAR = "NOTION_TOKEN_V2"
CONFIG_DIR_ENV_VAR = "NOTION_INTERNAL_CONFIG_DIR"
REQUEST_TIMEOUT = 30.0

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)


class NotionAPIError(Exception):
    """Non-success response from the internal API."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        message = f"Notion internal API error: {status_code}"
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class NotAuthenticatedError(Exception):
    """No token_v2 could be found."""


# =============================================================================
# Transport
# =============================================================================

_active_user_id: Optional[str] = None


def set_active_user_id(user_id: Optional[str]) -> None:
    """Send ``user_id`` as the active user on subsequent requests."""
    global _active_user_id
    _active_user_id = user_id


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Exponential backoff delay with jitter for rate limiting.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Truncated response body of a failed request."""
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


def _make_client() -> httpx.Client:
    return httpx.Client(timeout=REQUEST_TIMEOUT)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def internal_request(token: str, endpoint: str, body: Optional[dict] = None) -> dict:
    """POST ``body`` to an internal API endpoint and return the JSON response.

    Rate-limited responses (429) are retried with backoff up to
    ``MAX_RETRIES`` attempts.

    Raises:
        NotionAPIError: On any other non-2xx status, or when retries run out.
    """
    headers = {
        "Content-Type": "application/json",
        "cookie": f"token_v2={token}",
    }
    if _active_user_id:
        headers["x-notion-active-user-header"] = _active_user_id

    url = f"{NOTION_API_BASE}/{endpoint}"
    logger.debug(f"POST {endpoint}")

    with _make_client() as client:
        for attempt in range(MAX_RETRIES):
            response = client.post(url, headers=headers, json=body or {})
            if response.status_code == 429 and attempt < MAX_RETRIES - 1:
                delay = _compute_retry_delay(attempt, _retry_after(response))
                logger.warning(f"Rate limited on {endpoint}, waiting {delay:.1f}s (attempt {attempt + 1})")
                time.sleep(delay)
                continue
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise NotionAPIError(e.response.status_code, _http_error_detail(e)) from e
            return response.json()

    raise NotionAPIError(429, f"Max retries ({MAX_RETRIES}) exceeded")


# =============================================================================
# Credential Management
# =============================================================================

def default_config_dir() -> Path:
    override = os.environ.get(CONFIG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "notion-internal"


class CredentialManager:
    """Stores ``{"credentials": {"token_v2", "user_id"}}`` as a 0600 JSON file."""

    def __init__(self, config_dir: Path | str | None = None):
        self.config_dir = Path(config_dir) if config_dir else default_config_dir()
        self.credentials_path = self.config_dir / "credentials.json"

    def load(self) -> dict:
        if not self.credentials_path.exists():
            return {}
        try:
            return json.loads(self.credentials_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(f"Ignoring unreadable credentials file: {self.credentials_path}")
            return {}

    def save(self, config: dict) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.credentials_path.write_text(json.dumps(config, indent=2), encoding="utf-8")
        os.chmod(self.credentials_path, 0o600)

    def get_credentials(self) -> Optional[dict]:
        credentials = self.load().get("credentials")
        if not isinstance(credentials, dict) or not credentials.get("token_v2"):
            return None
        return credentials

    def set_credentials(self, token_v2: str, user_id: str | None = None) -> None:
        config = self.load()
        config["credentials"] = {"token_v2": token_v2, "user_id": user_id}
        self.save(config)

    def remove(self) -> bool:
        """Delete stored credentials; returns False if there were none."""
        config = self.load()
        if "credentials" not in config:
            return False
        del config["credentials"]
        if config:
            self.save(config)
        else:
            self.credentials_path.unlink()
        return True


def resolve_token(token_file: str | None = None, manager: CredentialManager | None = None) -> str:
    """Find the session token.

    Raises:
        NotAuthenticatedError: If the token file is missing or empty, or no
            token is configured anywhere.
    """
    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            raise NotAuthenticatedError(f"Token file not found: {token_path}")
        token = token_path.read_text().strip()
        if not token:
            raise NotAuthenticatedError(f"Token file is empty: {token_path}")
        return token

    token = os.environ.get(TOKEN_ENV_VAR, "").strip()
    if token:
        return token

    credentials = (manager or CredentialManager()).get_credentials()
    if credentials:
        return credentials["token_v2"]
    raise NotAuthenticatedError("Not authenticated")


def mask_token(token: str) -> str:
    if len(token) <= 10:
        return "***"
    return f"{token[:6]}...{token[-4:]}"
