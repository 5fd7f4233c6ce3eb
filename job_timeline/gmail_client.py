"""Gmail mailbox provider: turns Gmail API messages into RawMessage pages."""

import base64
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import AccountConfig
from .errors import ConfigurationError, ProviderError
from .models import MessagePage, RawMessage
from .parser import strip_html

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]

PAGE_SIZE = 100

DEFAULT_TOKEN_DIR = Path(__file__).parent.parent / "config" / "tokens"

# Skip categories that never carry application mail
EXCLUDED_CATEGORIES = ["social", "forums"]


def load_credentials(token_path: Path) -> Credentials:
    """Load an already-authorized token file, refreshing it when expired."""
    if not token_path.exists():
        raise ConfigurationError(
            f"Token file not found: {token_path}. Authorize the account and save its token there."
        )

    creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)

    if not creds.valid:
        if creds.expired and creds.refresh_token:
            logger.info(f"Refreshing expired credentials in {token_path}")
            try:
                creds.refresh(Request())
            except RefreshError as e:
                raise ProviderError(f"Could not refresh credentials in {token_path}: {e}") from e
            with open(token_path, "w") as token:
                token.write(creds.to_json())
        else:
            raise ConfigurationError(f"Credentials in {token_path} are invalid and cannot be refreshed")

    return creds


def build_gmail_query(since: datetime) -> str:
    """Build the Gmail search query for messages received after ``since``."""
    after_epoch = int(since.timestamp())
    excluded = " ".join(f"-category:{category}" for category in EXCLUDED_CATEGORIES)
    return f"after:{after_epoch} {excluded}"


def _decode(data: str) -> str:
    return base64.urlsafe_b64decode(data).decode("utf-8", errors="replace")


def get_email_body(message: dict[str, Any]) -> str:
    """Extract the body as plain text, preferring text/plain over HTML."""
    payload = message.get("payload", {})
    plain: Optional[str] = None
    html_body: Optional[str] = None

    parts = [payload]
    while parts:
        part = parts.pop(0)
        data = part.get("body", {}).get("data", "")
        mime_type = part.get("mimeType", "")
        if data and mime_type == "text/plain" and plain is None:
            plain = _decode(data)
        elif data and mime_type == "text/html" and html_body is None:
            html_body = _decode(data)
        parts.extend(part.get("parts", []))

    if plain:
        return plain.strip()
    if html_body:
        return strip_html(html_body)

    body_data = payload.get("body", {}).get("data", "")
    return _decode(body_data).strip() if body_data else ""


def get_email_headers(message: dict[str, Any]) -> dict[str, str]:
    """Extract common headers from email message."""
    headers = {}
    for header in message.get("payload", {}).get("headers", []):
        name = header.get("name", "").lower()
        if name in ("from", "to", "subject", "date"):
            headers[name] = header.get("value", "")
    return headers


def get_received_at(message: dict[str, Any], headers: dict[str, str]) -> datetime:
    internal_date = message.get("internalDate")
    if internal_date:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
    if headers.get("date"):
        try:
            return parsedate_to_datetime(headers["date"])
        except (TypeError, ValueError):
            logger.debug(f"Unparseable Date header on {message.get('id')}: {headers['date']}")
    return datetime.now(timezone.utc)


def to_raw_message(account_id: str, message: dict[str, Any]) -> RawMessage:
    headers = get_email_headers(message)
    return RawMessage(
        account_id=account_id,
        provider_message_id=message["id"],
        thread_id=message.get("threadId"),
        subject=headers.get("subject", ""),
        from_address=headers.get("from", ""),
        received_at=get_received_at(message, headers),
        body_text=get_email_body(message),
    )


class GmailProvider:
    """Mailbox provider for one Gmail account."""

    def __init__(self, account_id: str, token_path: Path, service: Any = None):
        self.account_id = account_id
        self.token_path = Path(token_path)
        self._service = service

    @classmethod
    def from_account(cls, account: AccountConfig) -> "GmailProvider":
        token_path = account.token_path or DEFAULT_TOKEN_DIR / f"{account.account_id}.json"
        return cls(account.account_id, Path(token_path))

    @property
    def service(self) -> Any:
        if self._service is None:
            creds = load_credentials(self.token_path)
            self._service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        return self._service

    def fetch_page(self, since: datetime, page_token: Optional[str] = None) -> MessagePage:
        query = build_gmail_query(since)
        try:
            results = (
                self.service.users()
                .messages()
                .list(userId="me", q=query, pageToken=page_token, maxResults=PAGE_SIZE)
                .execute()
            )

            messages = []
            for msg_ref in results.get("messages", []):
                msg = (
                    self.service.users()
                    .messages()
                    .get(userId="me", id=msg_ref["id"], format="full")
                    .execute()
                )
                messages.append(to_raw_message(self.account_id, msg))
        except HttpError as e:
            raise ProviderError(f"Gmail request failed for {self.account_id}: {e}") from e

        logger.info(f"[{self.account_id}] Fetched page of {len(messages)} messages")
        return MessagePage(messages=messages, next_page_token=results.get("nextPageToken"))
